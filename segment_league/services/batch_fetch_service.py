"""Fetch, store and score every connected athlete for one week.

Athletes are processed one after another. A failure for one athlete becomes
a reason string in the summary and never stops the batch. Scoring runs once
at the end.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional

from ..auth import TokenError
from ..db.repository import ResultStore
from ..errors import LeagueError, StravaAPIError, WeekNotFoundError
from ..models import AthleteFetchResult, BatchSummary, QualificationOutcome, WeekWindow
from ..utils import format_time
from .qualifier import ActivityQualifier
from .retry import CredentialSource, call_with_token_refresh
from .scoring_service import ScoringService

TERMINAL_KINDS = ("complete", "error")


@dataclass
class ProgressEvent:
    athlete_id: int
    athlete_name: str
    found: bool
    current: int
    total: int
    reason: Optional[str] = None
    total_time: Optional[int] = None
    laps: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "kind": "progress",
            "participant_id": self.athlete_id,
            "participant_name": self.athlete_name,
            "activity_found": self.found,
            "current": self.current,
            "total": self.total,
        }
        if self.total_time is not None:
            payload["total_time"] = self.total_time
            payload["total_time_formatted"] = format_time(self.total_time)
        if self.laps:
            payload["laps"] = self.laps
        if self.reason:
            payload["reason"] = self.reason
        return payload


ProgressCallback = Callable[[ProgressEvent], None]


class BatchFetchService:
    def __init__(
        self,
        store: ResultStore,
        tokens: CredentialSource,
        qualifier_factory: Callable[[], ActivityQualifier],
        scoring: ScoringService,
    ) -> None:
        self._store = store
        self._tokens = tokens
        self._qualifier_factory = qualifier_factory
        self._scoring = scoring
        self._log = logging.getLogger(self.__class__.__name__)

    def fetch_week_results(
        self, week_id: int, on_event: ProgressCallback | None = None
    ) -> BatchSummary:
        """Run the batch for ``week_id``.

        Raises:
            WeekNotFoundError: before any athlete is processed.
        """

        week = self._store.get_week(week_id)
        participants = self._store.connected_participants()
        qualifier = self._qualifier_factory()
        total = len(participants)
        self._log.info(
            "Fetching results week=%s (%s) athletes=%s", week.id, week.name, total
        )

        results: List[AthleteFetchResult] = []
        for index, (athlete_id, name) in enumerate(participants, start=1):
            result = self._process_athlete(qualifier, week, athlete_id, name)
            results.append(result)
            if on_event is not None:
                event = ProgressEvent(
                    athlete_id=athlete_id,
                    athlete_name=name,
                    found=result.activity_found,
                    current=index,
                    total=total,
                    reason=result.reason,
                    total_time=result.total_time,
                    laps=result.laps,
                )
                try:
                    on_event(event)
                except Exception:
                    self._log.debug(
                        "Progress callback failed week=%s athlete=%s",
                        week.id,
                        athlete_id,
                        exc_info=True,
                    )

        self._scoring.refresh_week(week.id)
        summary = BatchSummary(
            week_id=week.id,
            week_name=week.name,
            participants_processed=total,
            results=results,
        )
        self._log.info(
            "Week %s fetch complete: %s/%s with results",
            week.id,
            summary.results_found,
            total,
        )
        return summary

    def _process_athlete(
        self,
        qualifier: ActivityQualifier,
        week: WeekWindow,
        athlete_id: int,
        name: str,
    ) -> AthleteFetchResult:
        try:
            outcome: QualificationOutcome = call_with_token_refresh(
                self._tokens,
                athlete_id,
                lambda credential: qualifier.find_best(credential, week),
            )
            self._store.apply_batch_outcome(week.id, athlete_id, outcome)
        except (LeagueError, StravaAPIError, TokenError) as exc:
            self._log.warning(
                "Athlete %s (%s) failed for week %s: %s", athlete_id, name, week.id, exc
            )
            return AthleteFetchResult(
                athlete_id=athlete_id,
                athlete_name=name,
                activity_found=False,
                reason=str(exc),
            )

        best = outcome.best
        if best is None:
            return AthleteFetchResult(
                athlete_id=athlete_id,
                athlete_name=name,
                activity_found=False,
                reason=outcome.reason,
            )
        return AthleteFetchResult(
            athlete_id=athlete_id,
            athlete_name=name,
            activity_found=True,
            activity_id=best.activity_id,
            total_time=best.total_seconds,
            segment_efforts=len(best.efforts),
            laps=best.lap_summary() or None,
        )

    def stream_week_results(self, week_id: int) -> Iterator[Dict[str, Any]]:
        """Yield progress dicts, then exactly one ``complete`` or ``error`` dict.

        The batch runs on its own thread; if the consumer stops iterating the
        batch still finishes and persists its results.
        """

        events: "queue.Queue[Dict[str, Any]]" = queue.Queue()

        def run_batch() -> None:
            try:
                summary = self.fetch_week_results(
                    week_id, on_event=lambda event: events.put(event.to_dict())
                )
                events.put({"kind": "complete", "summary": summary.to_dict()})
            except WeekNotFoundError as exc:
                events.put({"kind": "error", "message": str(exc)})
            except Exception as exc:
                self._log.exception("Batch fetch failed week=%s", week_id)
                events.put({"kind": "error", "message": f"Batch fetch failed: {exc}"})

        worker = threading.Thread(
            target=run_batch, name=f"batch-fetch-week-{week_id}", daemon=True
        )
        worker.start()

        while True:
            event = events.get()
            yield event
            if event.get("kind") in TERMINAL_KINDS:
                break


__all__ = ["BatchFetchService", "ProgressEvent", "TERMINAL_KINDS"]
