"""Strava activity endpoints: paginated listing and per-activity detail."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import requests

from ..config import REQUEST_TIMEOUT, STRAVA_BASE_URL
from ..errors import StravaAPIError
from ..models import ActivityDetail, ActivitySummary, EffortDetail
from ..utils import iso_to_unix
from .rate_limiter import RateLimiter
from .response_handling import classify_response_status
from .session import get_default_session

LOGGER = logging.getLogger(__name__)
ACTIVITY_PAGE_SIZE = 200


def auth_headers(access_token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {access_token}"}


def parse_activity_summary(raw: Dict[str, Any]) -> Optional[ActivitySummary]:
    """Build a summary from one list entry; ``None`` when it has no id."""

    activity_id = raw.get("id")
    if activity_id is None:
        return None
    # start_date is UTC; start_date_local is a wall-clock value and is ignored.
    return ActivitySummary(
        id=int(activity_id),
        start_time=iso_to_unix(raw.get("start_date")),
        name=raw.get("name"),
    )


def parse_effort(raw: Dict[str, Any]) -> Optional[EffortDetail]:
    segment = raw.get("segment")
    if not isinstance(segment, dict) or segment.get("id") is None:
        return None
    elapsed = raw.get("elapsed_time")
    if elapsed is None:
        return None
    effort_id = raw.get("id")
    pr_rank = raw.get("pr_rank")
    return EffortDetail(
        segment_id=int(segment["id"]),
        elapsed_seconds=int(elapsed),
        effort_id=str(effort_id) if effort_id is not None else None,
        start_time=iso_to_unix(raw.get("start_date")),
        pr_rank=int(pr_rank) if pr_rank is not None else None,
    )


def parse_activity_detail(raw: Dict[str, Any]) -> ActivityDetail:
    efforts: List[EffortDetail] = []
    for item in raw.get("segment_efforts") or []:
        if not isinstance(item, dict):
            continue
        effort = parse_effort(item)
        if effort is not None:
            efforts.append(effort)
    return ActivityDetail(
        id=int(raw["id"]),
        start_time=iso_to_unix(raw.get("start_date")),
        efforts=tuple(efforts),
        name=raw.get("name"),
        device_name=raw.get("device_name"),
    )


class StravaClient:
    """Thin Strava API client.

    Every failure surfaces as a :class:`StravaAPIError` subclass; nothing is
    retried here. 401 handling (refresh and retry once) belongs to
    :mod:`segment_league.services.retry`.
    """

    def __init__(
        self,
        *,
        session: requests.Session | None = None,
        limiter: RateLimiter | None = None,
        base_url: str = STRAVA_BASE_URL,
        timeout: int = REQUEST_TIMEOUT,
    ) -> None:
        self._session = session or get_default_session()
        self._limiter = limiter or RateLimiter()
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    def list_activities(
        self, access_token: str, after: int, before: int
    ) -> List[ActivitySummary]:
        """Return every activity started strictly between ``after`` and ``before``."""

        url = f"{self._base_url}/athlete/activities"
        summaries: List[ActivitySummary] = []
        page = 1
        while True:
            params = {
                "after": int(after),
                "before": int(before),
                "page": page,
                "per_page": ACTIVITY_PAGE_SIZE,
            }
            data = self._get_json(access_token, url, params, "Activity list")
            if not isinstance(data, list):
                raise StravaAPIError(
                    f"Activity list returned unexpected payload type {type(data).__name__}"
                )
            for raw in data:
                if not isinstance(raw, dict):
                    continue
                summary = parse_activity_summary(raw)
                if summary is not None:
                    summaries.append(summary)
            if len(data) < ACTIVITY_PAGE_SIZE:
                break
            page += 1
        LOGGER.debug(
            "Listed %s activities after=%s before=%s pages=%s",
            len(summaries),
            after,
            before,
            page,
        )
        return summaries

    def get_activity_detail(self, access_token: str, activity_id: int) -> ActivityDetail:
        """Fetch one activity with all of its segment efforts."""

        url = f"{self._base_url}/activities/{int(activity_id)}"
        data = self._get_json(
            access_token,
            url,
            {"include_all_efforts": "true"},
            f"Activity {activity_id}",
        )
        if not isinstance(data, dict) or data.get("id") is None:
            raise StravaAPIError(f"Activity {activity_id} returned malformed payload")
        return parse_activity_detail(data)

    def _get_json(
        self,
        access_token: str,
        url: str,
        params: Optional[Dict[str, Any]],
        context: str,
    ) -> Any:
        self._limiter.before_request()
        try:
            response = self._session.get(
                url,
                headers=auth_headers(access_token),
                params=params,
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            self._limiter.after_response(None, None)
            message = f"{context} network error: {exc.__class__.__name__}"
            LOGGER.error(message)
            raise StravaAPIError(message) from exc
        self._limiter.after_response(response.headers, response.status_code)

        error = classify_response_status(response, context)
        if error is not None:
            raise error
        try:
            return response.json()
        except ValueError as exc:
            message = f"{context} returned invalid JSON"
            LOGGER.error(message)
            raise StravaAPIError(message) from exc


__all__ = [
    "ACTIVITY_PAGE_SIZE",
    "StravaClient",
    "auth_headers",
    "parse_activity_detail",
    "parse_activity_summary",
    "parse_effort",
]
