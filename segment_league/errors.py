"""Central error types used across the application."""

from __future__ import annotations


class StravaAPIError(RuntimeError):
    """Base error for Strava API failures."""


class StravaUnauthorizedError(StravaAPIError):
    """Raised when Strava rejects the access token (HTTP 401)."""


class StravaPermissionError(StravaAPIError):
    """Raised when the API reports insufficient scopes (HTTP 403)."""


class StravaResourceNotFoundError(StravaAPIError):
    """Raised when an activity or segment does not exist."""


class StravaRateLimitError(StravaAPIError):
    """Raised when Strava returns HTTP 429."""


class LeagueError(RuntimeError):
    """Base error for competition-level failures."""


class NotConnectedError(LeagueError):
    """Raised when a participant has no stored Strava credentials."""


class AuthorizationFailedError(LeagueError):
    """Raised when a forced token refresh still yields an unauthorized response."""


class WeekNotFoundError(LeagueError):
    """Raised for an unknown week id."""


class SeasonNotFoundError(LeagueError):
    """Raised for an unknown season id."""


__all__ = [
    "StravaAPIError",
    "StravaUnauthorizedError",
    "StravaPermissionError",
    "StravaResourceNotFoundError",
    "StravaRateLimitError",
    "LeagueError",
    "NotConnectedError",
    "AuthorizationFailedError",
    "WeekNotFoundError",
    "SeasonNotFoundError",
]
