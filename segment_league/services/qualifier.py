"""Find the activity that counts for an athlete in a competition week."""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional, Protocol, Sequence

from cachetools import TTLCache

from ..config import (
    ACTIVITY_DETAIL_CACHE_SIZE,
    ACTIVITY_DETAIL_CACHE_TTL_SECONDS,
    FETCH_WINDOW_PADDING_SECONDS,
)
from ..errors import StravaResourceNotFoundError
from ..models import (
    ActivityDetail,
    ActivitySummary,
    QualificationOutcome,
    QualifyingActivity,
    WeekWindow,
)
from ..windows import is_within_window, select_best_window

REASON_NO_ACTIVITIES = "No activities in time window"
REASON_OUTSIDE_WINDOW = "Outside time window"
REASON_SEGMENT_MISSING = "Segment not found in activity"


def insufficient_reason(found: int, needed: int) -> str:
    return f"Insufficient repetitions (found {found}, need {needed})"


# Higher wins when several activities are rejected for different reasons.
def _reason_weight(reason: str) -> int:
    if reason.startswith("Insufficient repetitions"):
        return 3
    if reason == REASON_SEGMENT_MISSING:
        return 2
    if reason == REASON_OUTSIDE_WINDOW:
        return 1
    return 0


class ActivitySource(Protocol):
    def list_activities(
        self, access_token: str, after: int, before: int
    ) -> List[ActivitySummary]:
        ...

    def get_activity_detail(self, access_token: str, activity_id: int) -> ActivityDetail:
        ...


class ActivityQualifier:
    """Read-only evaluation of upstream activities against week windows.

    Activity details are cached for the lifetime of the instance so one batch
    run never fetches the same activity twice.
    """

    def __init__(
        self,
        client: ActivitySource,
        *,
        padding_seconds: int = FETCH_WINDOW_PADDING_SECONDS,
        cache_size: int = ACTIVITY_DETAIL_CACHE_SIZE,
        cache_ttl: int = ACTIVITY_DETAIL_CACHE_TTL_SECONDS,
    ) -> None:
        self._client = client
        self._padding = padding_seconds
        self._details: TTLCache[int, ActivityDetail] = TTLCache(
            maxsize=max(1, cache_size), ttl=cache_ttl
        )
        self._cache_lock = threading.Lock()
        self._log = logging.getLogger(self.__class__.__name__)

    # ------------------------------------------------------------------
    def evaluate_detail(
        self, detail: ActivityDetail, week: WeekWindow
    ) -> QualificationOutcome:
        """Decide whether one fetched activity qualifies for ``week``."""

        start_time = detail.start_time
        if start_time is None or not is_within_window(start_time, week.start_at, week.end_at):
            return QualificationOutcome(reason=REASON_OUTSIDE_WINDOW)
        matching = [e for e in detail.efforts if e.segment_id == week.strava_segment_id]
        if not matching:
            return QualificationOutcome(reason=REASON_SEGMENT_MISSING)
        selection = select_best_window(matching, week.required_laps)
        if selection is None:
            return QualificationOutcome(
                reason=insufficient_reason(len(matching), week.required_laps)
            )
        return QualificationOutcome(
            best=QualifyingActivity(
                activity_id=detail.id,
                start_time=start_time,
                total_seconds=selection.total_seconds,
                efforts=selection.efforts,
                lap_indices=tuple(selection.lap_indices),
                total_matching_efforts=len(matching),
                device_name=detail.device_name,
            )
        )

    def find_best(self, access_token: str, week: WeekWindow) -> QualificationOutcome:
        """List the athlete's activities around ``week`` and pick the fastest.

        Upstream errors other than a 404 on a single activity propagate.
        """

        summaries = self._client.list_activities(
            access_token,
            after=week.start_at - self._padding,
            before=week.end_at + self._padding,
        )
        candidates = [
            s for s in summaries if is_within_window(s.start_time, week.start_at, week.end_at)
        ]
        self._log.debug(
            "Week %s: %s listed, %s inside window", week.id, len(summaries), len(candidates)
        )
        if not candidates:
            return QualificationOutcome(reason=REASON_NO_ACTIVITIES)

        best: Optional[QualifyingActivity] = None
        reason: Optional[str] = None
        for summary in candidates:
            detail = self._detail(access_token, summary.id)
            if detail is None:
                continue
            outcome = self.evaluate_detail(detail, week)
            if outcome.best is not None:
                if best is None or outcome.best.total_seconds < best.total_seconds:
                    best = outcome.best
            elif outcome.reason and (
                reason is None or _reason_weight(outcome.reason) > _reason_weight(reason)
            ):
                reason = outcome.reason

        if best is not None:
            return QualificationOutcome(best=best)
        return QualificationOutcome(reason=reason or REASON_NO_ACTIVITIES)

    def fetch_detail(self, access_token: str, activity_id: int) -> Optional[ActivityDetail]:
        """Fetch one known activity; ``None`` when it no longer exists upstream."""

        return self._detail(access_token, activity_id)

    def evaluate_weeks(
        self, detail: Optional[ActivityDetail], weeks: Sequence[WeekWindow]
    ) -> Dict[int, QualificationOutcome]:
        """Evaluate one fetched activity against each candidate week.

        A deleted activity (``None``) yields an outside-window outcome for
        every week.
        """

        if detail is None:
            return {w.id: QualificationOutcome(reason=REASON_OUTSIDE_WINDOW) for w in weeks}
        return {w.id: self.evaluate_detail(detail, w) for w in weeks}

    # ------------------------------------------------------------------
    def _detail(self, access_token: str, activity_id: int) -> Optional[ActivityDetail]:
        with self._cache_lock:
            cached = self._details.get(activity_id)
        if cached is not None:
            return cached
        try:
            detail = self._client.get_activity_detail(access_token, activity_id)
        except StravaResourceNotFoundError:
            self._log.info("Activity %s disappeared before detail fetch; skipping", activity_id)
            return None
        with self._cache_lock:
            self._details[activity_id] = detail
        return detail


__all__ = [
    "ActivityQualifier",
    "REASON_NO_ACTIVITIES",
    "REASON_OUTSIDE_WINDOW",
    "REASON_SEGMENT_MISSING",
    "insufficient_reason",
]
