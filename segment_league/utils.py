"""General utility helpers shared across modules."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


def format_time(seconds: int) -> str:
    """Format seconds into a ``M:SS`` string."""

    mins, sec = divmod(int(seconds), 60)
    return f"{mins}:{sec:02d}"


def iso_to_unix(value: Any) -> int | None:
    """Convert a Strava UTC ISO-8601 timestamp to integer Unix seconds.

    Strava's ``start_date`` carries a ``Z`` suffix. Naive strings are read as
    UTC so the result never depends on the host timezone. Integers pass
    through unchanged; anything unparseable yields ``None``.
    """

    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())


def unix_to_iso(seconds: int | None) -> str | None:
    if seconds is None:
        return None
    return (
        datetime.fromtimestamp(int(seconds), tz=timezone.utc)
        .isoformat()
        .replace("+00:00", "Z")
    )
