"""Week scoring: rank results and derive points.

``points = (N - rank + 1 + pr_bonus) * multiplier`` where ``N`` is the number
of athletes with a result in the week. Every recompute re-derives all rows of
the week from stored times, so running it twice changes nothing.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from ..db.database import session_scope
from ..db.schema import Activity, Result, SegmentEffort, Week
from ..errors import WeekNotFoundError
from ..models import ScoredResult, ScoringInput

LOGGER = logging.getLogger(__name__)

PARTICIPATION_BONUS = 1
PR_BONUS = 1

_week_locks: Dict[int, threading.Lock] = {}
_locks_lock = threading.Lock()


def _get_week_lock(week_id: int) -> threading.Lock:
    with _locks_lock:
        if week_id not in _week_locks:
            _week_locks[week_id] = threading.Lock()
        return _week_locks[week_id]


def _sort_key(entry: ScoringInput) -> tuple:
    # Equal times fall back to who rode first, then athlete id.
    start = entry.activity_start_at if entry.activity_start_at is not None else 0
    return (entry.total_time_seconds, start, entry.athlete_id)


def score_week(entries: Sequence[ScoringInput], multiplier: int = 1) -> List[ScoredResult]:
    """Rank ``entries`` by total time and compute their points."""

    multiplier = multiplier or 1
    ordered = sorted(entries, key=_sort_key)
    total = len(ordered)
    scored: List[ScoredResult] = []
    for rank, entry in enumerate(ordered, start=1):
        base = total - rank
        pr_bonus = PR_BONUS if entry.pr_achieved else 0
        scored.append(
            ScoredResult(
                athlete_id=entry.athlete_id,
                rank=rank,
                total_time_seconds=entry.total_time_seconds,
                base_points=base,
                participation_bonus=PARTICIPATION_BONUS,
                pr_bonus_points=pr_bonus,
                multiplier=multiplier,
                total_points=(base + PARTICIPATION_BONUS + pr_bonus) * multiplier,
            )
        )
    return scored


class ScoringService:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory
        self._log = logging.getLogger(self.__class__.__name__)

    def refresh_week(self, week_id: int) -> List[ScoredResult]:
        """Recompute ``week_id`` in its own transaction, serialised per week."""

        with _get_week_lock(week_id):
            with session_scope(self._session_factory) as session:
                return self.recompute_week(session, week_id)

    def recompute_week(self, session: Session, week_id: int) -> List[ScoredResult]:
        """Rewrite rank and points of every result in ``week_id``.

        Runs inside the caller's transaction.
        """

        week = session.get(Week, week_id)
        if week is None:
            raise WeekNotFoundError(f"Week {week_id} not found")

        rows = session.execute(
            select(Result, Activity.start_at)
            .join(Activity, Activity.id == Result.activity_id)
            .where(Result.week_id == week_id)
        ).all()
        pr_activity_ids = set(
            session.scalars(
                select(SegmentEffort.activity_id)
                .join(Activity, Activity.id == SegmentEffort.activity_id)
                .where(Activity.week_id == week_id, SegmentEffort.pr_achieved.is_(True))
            ).all()
        )
        by_athlete: Dict[int, Result] = {}
        entries: List[ScoringInput] = []
        for result, start_at in rows:
            by_athlete[result.strava_athlete_id] = result
            entries.append(
                ScoringInput(
                    athlete_id=result.strava_athlete_id,
                    total_time_seconds=result.total_time_seconds,
                    pr_achieved=result.activity_id in pr_activity_ids,
                    activity_start_at=start_at,
                )
            )

        scored = score_week(entries, week.multiplier)
        for item in scored:
            result = by_athlete[item.athlete_id]
            result.rank = item.rank
            result.base_points = item.base_points
            result.participation_bonus = item.participation_bonus
            result.pr_bonus_points = item.pr_bonus_points
            result.multiplier = item.multiplier
            result.total_points = item.total_points
        session.flush()

        self._log.info("Recomputed week=%s results=%s", week_id, len(scored))
        return scored


__all__ = ["ScoringService", "score_week", "PARTICIPATION_BONUS", "PR_BONUS"]
