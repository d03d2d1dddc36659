"""Service layer package.

Exports high-level services consumed by the HTTP layer and entry points.
"""

from .batch_fetch_service import BatchFetchService, ProgressEvent
from .leaderboard_service import LeaderboardService, WeekLeaderboard
from .qualifier import ActivityQualifier
from .retry import call_with_token_refresh
from .scoring_service import ScoringService, score_week
from .standings_service import StandingsService
from .webhook_service import WebhookEventQueue, WebhookProcessor

__all__ = [
    "ActivityQualifier",
    "BatchFetchService",
    "LeaderboardService",
    "ProgressEvent",
    "ScoringService",
    "StandingsService",
    "WebhookEventQueue",
    "WebhookProcessor",
    "WeekLeaderboard",
    "call_with_token_refresh",
    "score_week",
]
