"""Pacing shared by every Strava call made through one client."""

from __future__ import annotations

import logging
import random
import threading
import time
from typing import Callable, Mapping, Optional, Tuple

from ..config import (
    RATE_LIMIT_JITTER_RANGE,
    RATE_LIMIT_MAX_CONCURRENT,
    RATE_LIMIT_NEAR_LIMIT_BUFFER,
    RATE_LIMIT_THROTTLE_SECONDS,
)

LOGGER = logging.getLogger(__name__)

__all__ = ["RateLimiter"]


def _short_window_usage(
    headers: Mapping[str, object] | None,
) -> Optional[Tuple[int, int]]:
    """Return ``(used, limit)`` for the 15-minute window, if reported."""

    if not headers:
        return None
    usage = headers.get("X-RateLimit-Usage")
    limit = headers.get("X-RateLimit-Limit")
    if not usage or not limit:
        return None
    try:
        return int(str(usage).split(",")[0]), int(str(limit).split(",")[0])
    except ValueError:
        LOGGER.debug("Unparseable rate limit headers usage=%s limit=%s", usage, limit)
        return None


class RateLimiter:
    """Caps in-flight requests and pauses after upstream pushback.

    Every ``before_request`` must be paired with one ``after_response``.
    A 429, or short-window usage within ``near_limit_buffer`` of the
    reported limit, delays the next requests by ``throttle_seconds``. The
    request that saw the 429 is not replayed; callers report it.
    """

    def __init__(
        self,
        max_concurrent: int = RATE_LIMIT_MAX_CONCURRENT,
        jitter_range: tuple[float, float] = RATE_LIMIT_JITTER_RANGE,
        throttle_seconds: float = RATE_LIMIT_THROTTLE_SECONDS,
        near_limit_buffer: int = RATE_LIMIT_NEAR_LIMIT_BUFFER,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self._slots = threading.BoundedSemaphore(max_concurrent)
        self._state_lock = threading.Lock()
        self._resume_at = 0.0
        self._jitter_range = jitter_range
        self._throttle_seconds = throttle_seconds
        self._near_limit_buffer = near_limit_buffer
        self._clock = clock
        self._sleep = sleep

    def pending_delay(self) -> float:
        """Seconds left before requests may go out again."""

        with self._state_lock:
            return max(0.0, self._resume_at - self._clock())

    def before_request(self) -> None:
        self._slots.acquire()
        delay = self.pending_delay()
        if delay > 0:
            LOGGER.debug("Throttled; waiting %.1fs before next request", delay)
            self._sleep(delay)
        lo, hi = self._jitter_range
        if hi > 0:
            self._sleep(random.uniform(lo, hi))  # nosec B311

    def after_response(
        self, headers: Mapping[str, object] | None, status_code: int | None
    ) -> None:
        try:
            if status_code == 429:
                LOGGER.warning("Rate limit: 429. Throttling %ss.", self._throttle_seconds)
                self._pause()
                return
            usage = _short_window_usage(headers)
            if usage is None:
                return
            used, limit = usage
            if used >= max(limit - self._near_limit_buffer, 0):
                LOGGER.info(
                    "Approaching short-window limit (%s/%s). Throttling %ss.",
                    used,
                    limit,
                    self._throttle_seconds,
                )
                self._pause()
        finally:
            self._slots.release()

    def _pause(self) -> None:
        with self._state_lock:
            self._resume_at = max(self._resume_at, self._clock() + self._throttle_seconds)
