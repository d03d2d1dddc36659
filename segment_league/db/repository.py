"""All writes to activities, efforts and results go through :class:`ResultStore`."""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from ..errors import WeekNotFoundError
from ..models import QualificationOutcome, QualifyingActivity, WeekWindow
from ..windows import is_within_window
from .database import session_scope
from .schema import Activity, Participant, ParticipantToken, Result, SegmentEffort, Week

LOGGER = logging.getLogger(__name__)

_key_locks: Dict[Tuple[int, int], threading.Lock] = {}
_locks_lock = threading.Lock()


def _get_key_lock(week_id: int, athlete_id: int) -> threading.Lock:
    """Get or create the lock guarding one (week, athlete) result."""
    key = (week_id, athlete_id)
    with _locks_lock:
        if key not in _key_locks:
            _key_locks[key] = threading.Lock()
        return _key_locks[key]


def week_window(week: Week) -> WeekWindow:
    return WeekWindow(
        id=week.id,
        strava_segment_id=week.strava_segment_id,
        required_laps=week.required_laps,
        start_at=week.start_at,
        end_at=week.end_at,
        multiplier=week.multiplier,
        name=week.week_name,
    )


def _load_activity(session: Session, week_id: int, athlete_id: int) -> Optional[Activity]:
    return session.scalars(
        select(Activity).where(
            Activity.week_id == week_id,
            Activity.strava_athlete_id == athlete_id,
        )
    ).one_or_none()


def _stored_time(activity: Activity) -> Optional[int]:
    if activity.result is not None:
        return activity.result.total_time_seconds
    return None


def _same_result(activity: Activity, best: QualifyingActivity) -> bool:
    if activity.strava_activity_id != best.activity_id:
        return False
    if _stored_time(activity) != best.total_seconds:
        return False
    stored = sorted(
        (e.effort_index, e.elapsed_seconds, bool(e.pr_achieved)) for e in activity.efforts
    )
    wanted = [
        (lap_index, effort.elapsed_seconds, effort.is_pr)
        for lap_index, effort in zip(best.lap_indices, best.efforts)
    ]
    return stored == wanted


def _remove(session: Session, activity: Activity) -> None:
    session.delete(activity)
    session.flush()


def _insert(
    session: Session, week_id: int, athlete_id: int, best: QualifyingActivity
) -> Activity:
    activity = Activity(
        week_id=week_id,
        strava_athlete_id=athlete_id,
        strava_activity_id=best.activity_id,
        start_at=best.start_time,
        device_name=best.device_name,
        validation_status="valid",
    )
    # Only the counted window is stored; effort_index is its lap position.
    for lap_index, effort in zip(best.lap_indices, best.efforts):
        activity.efforts.append(
            SegmentEffort(
                strava_segment_id=effort.segment_id,
                strava_effort_id=effort.effort_id,
                effort_index=lap_index,
                elapsed_seconds=effort.elapsed_seconds,
                start_at=effort.start_time,
                pr_achieved=effort.is_pr,
            )
        )
    session.add(activity)
    session.flush()
    session.add(
        Result(
            week_id=week_id,
            strava_athlete_id=athlete_id,
            activity_id=activity.id,
            total_time_seconds=best.total_seconds,
        )
    )
    session.flush()
    return activity


class ResultStore:
    """Persists qualification outcomes for (week, athlete) pairs.

    Each mutation runs in one transaction under a per-key lock, and the
    unique (week, athlete) constraints back that up across processes. Scores
    are not touched here; callers recompute affected weeks afterwards.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory
        self._log = logging.getLogger(self.__class__.__name__)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_week(self, week_id: int) -> WeekWindow:
        with session_scope(self._session_factory) as session:
            week = session.get(Week, week_id)
            if week is None:
                raise WeekNotFoundError(f"Week {week_id} not found")
            return week_window(week)

    def connected_participants(self) -> List[Tuple[int, str]]:
        """Return ``(athlete_id, name)`` for participants with stored tokens."""

        with session_scope(self._session_factory) as session:
            rows = session.execute(
                select(Participant.strava_athlete_id, Participant.name)
                .join(
                    ParticipantToken,
                    ParticipantToken.strava_athlete_id == Participant.strava_athlete_id,
                )
                .order_by(Participant.strava_athlete_id)
            ).all()
            return [(int(athlete_id), name) for athlete_id, name in rows]

    def participant_exists(self, athlete_id: int) -> bool:
        with session_scope(self._session_factory) as session:
            return session.get(Participant, athlete_id) is not None

    def weeks_containing(self, timestamp: int) -> List[WeekWindow]:
        """Return every week whose window contains ``timestamp``."""

        with session_scope(self._session_factory) as session:
            weeks = session.scalars(
                select(Week)
                .where(Week.start_at <= timestamp, Week.end_at >= timestamp)
                .order_by(Week.id)
            ).all()
            return [
                week_window(week)
                for week in weeks
                if is_within_window(timestamp, week.start_at, week.end_at)
            ]

    def weeks_holding_activity(
        self, strava_activity_id: int, athlete_id: Optional[int] = None
    ) -> List[WeekWindow]:
        with session_scope(self._session_factory) as session:
            stmt = (
                select(Week)
                .join(Activity, Activity.week_id == Week.id)
                .where(Activity.strava_activity_id == strava_activity_id)
            )
            if athlete_id is not None:
                stmt = stmt.where(Activity.strava_athlete_id == athlete_id)
            weeks = session.scalars(stmt.order_by(Week.id)).unique().all()
            return [week_window(week) for week in weeks]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def apply_batch_outcome(
        self, week_id: int, athlete_id: int, outcome: QualificationOutcome
    ) -> bool:
        """Store the outcome of a completed list scan.

        The scan evaluated every activity in the window, so its best one
        always replaces the stored activity, and a scan without a qualifying
        activity removes any stored result. Re-storing the same activity with
        the same total is a no-op. Returns ``True`` when rows changed.
        """

        with _get_key_lock(week_id, athlete_id):
            with session_scope(self._session_factory) as session:
                existing = _load_activity(session, week_id, athlete_id)
                best = outcome.best
                if best is None:
                    if existing is None:
                        return False
                    self._log.info(
                        "Removing stale result week=%s athlete=%s activity=%s",
                        week_id,
                        athlete_id,
                        existing.strava_activity_id,
                    )
                    _remove(session, existing)
                    return True

                if existing is not None:
                    if _same_result(existing, best):
                        self._log.debug(
                            "Stored activity unchanged week=%s athlete=%s activity=%s",
                            week_id,
                            athlete_id,
                            best.activity_id,
                        )
                        return False
                    _remove(session, existing)
                _insert(session, week_id, athlete_id, best)
                self._log.info(
                    "Stored activity week=%s athlete=%s activity=%s total=%s",
                    week_id,
                    athlete_id,
                    best.activity_id,
                    best.total_seconds,
                )
                return True

    def apply_webhook_outcome(
        self,
        week_id: int,
        athlete_id: int,
        strava_activity_id: int,
        outcome: QualificationOutcome,
    ) -> bool:
        """Store the outcome of evaluating one known activity.

        A qualifying activity is written when the athlete has no result yet,
        when it already is the stored activity, or when it is faster. A
        non-qualifying activity is removed only if it is the stored one.
        Returns ``True`` when rows changed.
        """

        with _get_key_lock(week_id, athlete_id):
            with session_scope(self._session_factory) as session:
                existing = _load_activity(session, week_id, athlete_id)
                best = outcome.best
                if best is None:
                    if existing is not None and existing.strava_activity_id == strava_activity_id:
                        self._log.info(
                            "Activity %s no longer qualifies week=%s athlete=%s",
                            strava_activity_id,
                            week_id,
                            athlete_id,
                        )
                        _remove(session, existing)
                        return True
                    return False

                if existing is not None:
                    stored_time = _stored_time(existing)
                    if not (
                        stored_time is None
                        or existing.strava_activity_id == best.activity_id
                        or best.total_seconds < stored_time
                    ):
                        return False
                    _remove(session, existing)
                _insert(session, week_id, athlete_id, best)
                self._log.info(
                    "Webhook stored activity week=%s athlete=%s activity=%s total=%s",
                    week_id,
                    athlete_id,
                    best.activity_id,
                    best.total_seconds,
                )
                return True

    def delete_by_strava_activity(self, strava_activity_id: int) -> List[int]:
        """Delete every stored row for an upstream activity; return affected week ids."""

        with session_scope(self._session_factory) as session:
            activities = session.scalars(
                select(Activity).where(Activity.strava_activity_id == strava_activity_id)
            ).all()
            keys = [(a.week_id, a.strava_athlete_id) for a in activities]

        week_ids: List[int] = []
        for week_id, athlete_id in keys:
            with _get_key_lock(week_id, athlete_id):
                with session_scope(self._session_factory) as session:
                    activity = _load_activity(session, week_id, athlete_id)
                    if activity is None or activity.strava_activity_id != strava_activity_id:
                        continue
                    _remove(session, activity)
                    week_ids.append(week_id)
        if week_ids:
            self._log.info(
                "Deleted activity %s from weeks %s", strava_activity_id, week_ids
            )
        return sorted(set(week_ids))


__all__ = ["ResultStore", "week_window"]
