"""Incremental updates driven by Strava webhook events.

The HTTP handler only enqueues; :class:`WebhookEventQueue` records each
payload and hands it to :class:`WebhookProcessor` on a worker pool. Upstream
may deliver the same event more than once, so every step converges to the
same stored state when replayed.
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Set

from sqlalchemy.orm import sessionmaker

from ..config import WEBHOOK_LOG_EVENTS, WEBHOOK_MAX_WORKERS
from ..db.database import session_scope
from ..db.repository import ResultStore
from ..db.schema import WebhookEventLog
from ..models import WebhookEvent, WeekWindow
from ..tokens import TokenProvider
from .qualifier import ActivityQualifier
from .retry import call_with_token_refresh
from .scoring_service import ScoringService


def _is_deauthorization(event: WebhookEvent) -> bool:
    authorized = event.updates.get("authorized")
    return authorized is False or str(authorized).lower() == "false"


class WebhookProcessor:
    def __init__(
        self,
        store: ResultStore,
        tokens: TokenProvider,
        qualifier_factory: Callable[[], ActivityQualifier],
        scoring: ScoringService,
    ) -> None:
        self._store = store
        self._tokens = tokens
        self._qualifier_factory = qualifier_factory
        self._scoring = scoring
        self._log = logging.getLogger(self.__class__.__name__)

    def process(self, event: WebhookEvent) -> List[int]:
        """Apply one event; return the ids of weeks that were recomputed."""

        if event.object_type == "athlete":
            if _is_deauthorization(event):
                self._tokens.disconnect(event.owner_id)
            return []
        if event.object_type != "activity":
            self._log.debug("Ignoring webhook object_type=%s", event.object_type)
            return []

        if event.aspect_type == "delete":
            return self._handle_delete(event)
        if event.aspect_type in ("create", "update"):
            return self._handle_upsert(event)
        self._log.debug("Ignoring webhook aspect_type=%s", event.aspect_type)
        return []

    def _handle_delete(self, event: WebhookEvent) -> List[int]:
        week_ids = self._store.delete_by_strava_activity(event.object_id)
        for week_id in week_ids:
            self._scoring.refresh_week(week_id)
        if not week_ids:
            self._log.debug("Delete for unknown activity %s; nothing stored", event.object_id)
        return week_ids

    def _handle_upsert(self, event: WebhookEvent) -> List[int]:
        athlete_id = event.owner_id
        if not self._store.participant_exists(athlete_id):
            self._log.info("Ignoring activity %s from unknown athlete %s", event.object_id, athlete_id)
            return []

        qualifier = self._qualifier_factory()
        detail = call_with_token_refresh(
            self._tokens,
            athlete_id,
            lambda credential: qualifier.fetch_detail(credential, event.object_id),
        )

        # Matched on the activity start, not the event time.
        candidates: Dict[int, WeekWindow] = {}
        if detail is not None and detail.start_time is not None:
            for week in self._store.weeks_containing(detail.start_time):
                candidates[week.id] = week
        for week in self._store.weeks_holding_activity(event.object_id, athlete_id):
            candidates.setdefault(week.id, week)
        if not candidates:
            self._log.debug("No candidate weeks for activity %s", event.object_id)
            return []

        weeks = [candidates[key] for key in sorted(candidates)]
        outcomes = qualifier.evaluate_weeks(detail, weeks)

        touched: Set[int] = set()
        for week in weeks:
            outcome = outcomes.get(week.id)
            if outcome is None:
                continue
            if self._store.apply_webhook_outcome(week.id, athlete_id, event.object_id, outcome):
                touched.add(week.id)
        for week_id in sorted(touched):
            self._scoring.refresh_week(week_id)
        self._log.info(
            "Activity %s (%s) athlete=%s updated weeks=%s",
            event.object_id,
            event.aspect_type,
            athlete_id,
            sorted(touched),
        )
        return sorted(touched)


class WebhookEventQueue:
    """Acknowledge-then-process queue with a persisted event log."""

    def __init__(
        self,
        processor: WebhookProcessor,
        session_factory: sessionmaker,
        *,
        max_workers: int = WEBHOOK_MAX_WORKERS,
        log_events: bool = WEBHOOK_LOG_EVENTS,
    ) -> None:
        if max_workers <= 0:
            raise ValueError("max_workers must be positive")
        self._processor = processor
        self._session_factory = session_factory
        self._log_events = log_events
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="webhook"
        )
        self._log = logging.getLogger(self.__class__.__name__)

    def submit(self, payload: Dict[str, Any]) -> Optional[Future]:
        """Record ``payload`` and schedule it; malformed payloads are logged as failed."""

        log_id = self._record(payload)
        try:
            event = WebhookEvent.from_payload(payload)
        except ValueError as exc:
            self._log.warning("Rejected webhook payload: %s", exc)
            self._mark(log_id, processed=False, error=str(exc))
            return None
        return self._executor.submit(self._run, log_id, event)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _run(self, log_id: Optional[int], event: WebhookEvent) -> None:
        try:
            self._processor.process(event)
        except Exception as exc:
            self._log.exception(
                "Webhook processing failed object=%s:%s aspect=%s",
                event.object_type,
                event.object_id,
                event.aspect_type,
            )
            self._mark(log_id, processed=False, error=str(exc) or exc.__class__.__name__)
            return
        self._mark(log_id, processed=True)

    def _record(self, payload: Dict[str, Any]) -> Optional[int]:
        if not self._log_events:
            return None
        with session_scope(self._session_factory) as session:
            row = WebhookEventLog(payload=json.dumps(payload, sort_keys=True, default=str))
            session.add(row)
            session.flush()
            return row.id

    def _mark(self, log_id: Optional[int], *, processed: bool, error: str | None = None) -> None:
        if log_id is None:
            return
        with session_scope(self._session_factory) as session:
            row = session.get(WebhookEventLog, log_id)
            if row is None:
                return
            row.processed = processed
            row.error_message = error


__all__ = ["WebhookProcessor", "WebhookEventQueue"]
