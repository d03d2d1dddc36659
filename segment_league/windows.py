"""Pure matching primitives: time-window checks and lap-window selection."""

from __future__ import annotations

from typing import Optional, Sequence

from .models import EffortDetail, WindowSelection

__all__ = ["is_within_window", "select_best_window"]


def is_within_window(timestamp: Optional[int], start_at: int, end_at: int) -> bool:
    """Return ``True`` when ``start_at <= timestamp <= end_at``.

    All three values are absolute Unix seconds; formatted local times are
    never compared.
    """

    if timestamp is None:
        return False
    return start_at <= timestamp <= end_at


def select_best_window(
    efforts: Sequence[EffortDetail], required_laps: int
) -> Optional[WindowSelection]:
    """Return the fastest contiguous run of ``required_laps`` efforts.

    ``efforts`` must be in the order they were ridden. The window is found
    with a sliding sum; on equal totals the earliest window is kept. Laps must
    be consecutive, so this is not the same as the k fastest efforts.

    Returns:
        The selected window, or ``None`` when fewer than ``required_laps``
        efforts exist.

    Raises:
        ValueError: if ``required_laps`` is less than 1.
    """

    if required_laps < 1:
        raise ValueError("required_laps must be >= 1")
    count = len(efforts)
    if count < required_laps:
        return None

    window_sum = sum(e.elapsed_seconds for e in efforts[:required_laps])
    best_sum = window_sum
    best_start = 0
    for start in range(1, count - required_laps + 1):
        window_sum += (
            efforts[start + required_laps - 1].elapsed_seconds
            - efforts[start - 1].elapsed_seconds
        )
        if window_sum < best_sum:
            best_sum = window_sum
            best_start = start

    return WindowSelection(
        start_index=best_start,
        total_seconds=best_sum,
        efforts=tuple(efforts[best_start : best_start + required_laps]),
    )
