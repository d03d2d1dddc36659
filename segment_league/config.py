"""Central configuration for the segment league service.

All values are constants imported by the rest of the package. Adjust as needed
for your environment. Secrets are read from environment variables (optionally
via a local `.env`).
"""

from __future__ import annotations

import os

from dotenv import load_dotenv


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


# Load .env from the current directory or any parent folder.
load_dotenv()


# ---------------------------------------------------------------------------
# Strava settings
# ---------------------------------------------------------------------------
# Base Strava API URLs.
STRAVA_BASE_URL = "https://www.strava.com/api/v3"
STRAVA_OAUTH_URL = "https://www.strava.com/oauth/token"

# Client credentials pulled from the environment. Do not hardcode secrets.
CLIENT_ID = os.getenv("STRAVA_CLIENT_ID", "")
CLIENT_SECRET = os.getenv("STRAVA_CLIENT_SECRET", "")

# Refresh a stored access token when it expires within this many seconds.
TOKEN_REFRESH_MARGIN_SECONDS = _env_int("TOKEN_REFRESH_MARGIN_SECONDS", 3600)

# OAuth connect flow. The redirect must match the Strava app callback domain.
STRAVA_AUTHORIZE_URL = "https://www.strava.com/oauth/authorize"
OAUTH_REDIRECT_URI = os.getenv(
    "OAUTH_REDIRECT_URI", "http://localhost:3001/auth/strava/callback"
)
OAUTH_SCOPE = "read,activity:read_all"
# Seconds an issued OAuth state value stays valid.
OAUTH_STATE_TTL_SECONDS = _env_int("OAUTH_STATE_TTL_SECONDS", 600)


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///segment_league.db")

# Seconds SQLite waits on a locked database before giving up.
SQLITE_BUSY_TIMEOUT = _env_float("SQLITE_BUSY_TIMEOUT", 30.0)


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------
# Padding applied around a week's window when listing athlete activities.
# Every listed activity is re-checked against the exact window afterwards.
FETCH_WINDOW_PADDING_SECONDS = _env_int("FETCH_WINDOW_PADDING_SECONDS", 3600)

# Activity detail responses cached per qualifier instance.
ACTIVITY_DETAIL_CACHE_SIZE = _env_int("ACTIVITY_DETAIL_CACHE_SIZE", 128)
ACTIVITY_DETAIL_CACHE_TTL_SECONDS = _env_int("ACTIVITY_DETAIL_CACHE_TTL_SECONDS", 600)


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------
# Token echoed back during the Strava subscription handshake.
WEBHOOK_VERIFY_TOKEN = os.getenv("WEBHOOK_VERIFY_TOKEN", "")

# Worker threads processing acknowledged webhook events.
WEBHOOK_MAX_WORKERS = _env_int("WEBHOOK_MAX_WORKERS", 2)

# Persist each received webhook payload with its processing outcome.
WEBHOOK_LOG_EVENTS = _env_bool("WEBHOOK_LOG_EVENTS", True)


# ---------------------------------------------------------------------------
# Performance tuning
# ---------------------------------------------------------------------------
# HTTP session pool sizes for concurrent requests.
HTTP_POOL_CONNECTIONS = 20
HTTP_POOL_MAXSIZE = 20

# Request timeout in seconds. A timeout is reported, never retried.
REQUEST_TIMEOUT = _env_int("REQUEST_TIMEOUT", 15)

# Rate limiter settings.
# RATE_LIMIT_MAX_CONCURRENT caps total in-flight requests.
RATE_LIMIT_MAX_CONCURRENT = 8
# RATE_LIMIT_JITTER_RANGE adds random delay (seconds) to smooth bursts.
RATE_LIMIT_JITTER_RANGE = (0.05, 0.2)
# RATE_LIMIT_NEAR_LIMIT_BUFFER starts throttling when this close to the short-window limit.
RATE_LIMIT_NEAR_LIMIT_BUFFER = 3
# RATE_LIMIT_THROTTLE_SECONDS is the pause applied on 429s or near-limit signals.
RATE_LIMIT_THROTTLE_SECONDS = _env_float("RATE_LIMIT_THROTTLE_SECONDS", 15.0)


# ---------------------------------------------------------------------------
# HTTP server
# ---------------------------------------------------------------------------
SERVER_HOST = os.getenv("SERVER_HOST", "127.0.0.1")
SERVER_PORT = _env_int("SERVER_PORT", 3001)
