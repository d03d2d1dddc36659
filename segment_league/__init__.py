"""Segment league package."""

from .main import main
from .errors import LeagueError, StravaAPIError

__all__ = [
    "main",
    "LeagueError",
    "StravaAPIError",
]
