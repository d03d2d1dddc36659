"""OAuth / token refresh utilities for Strava API.

Exchanges refresh tokens and authorisation codes at Strava's OAuth endpoint.
Secrets are masked in every log line.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import (
    CLIENT_ID,
    CLIENT_SECRET,
    STRAVA_OAUTH_URL,
    REQUEST_TIMEOUT,
)

# Reusable session with limited retry for transient network/server issues.
_token_retry = Retry(
    total=3,
    backoff_factor=1.0,
    status_forcelist=[429, 500, 502, 503, 504],
    allowed_methods=["POST"],
)
_session = requests.Session()
_session.mount("https://", HTTPAdapter(max_retries=_token_retry))
_session.mount("http://", HTTPAdapter(max_retries=_token_retry))


class TokenError(Exception):
    """Raised when token refresh fails (after retries)."""


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    refresh_token: Optional[str]
    expires_at: Optional[int]


def _mask_tail(value: str | None, visible: int = 4) -> str:
    if not value:
        return ""
    tail = value[-visible:]
    return f"****{tail}" if len(value) > visible else "****" + tail


def _error_detail(resp: requests.Response) -> Optional[str]:
    try:
        data_err = resp.json()
    except ValueError:
        data_err = None
    if isinstance(data_err, dict):
        parts: List[str] = []
        msg = data_err.get("message")
        if msg:
            parts.append(str(msg))
        errors = data_err.get("errors")
        if isinstance(errors, list):
            for err in errors:
                if not isinstance(err, dict):
                    continue
                code = err.get("code")
                field = err.get("field")
                if code and field:
                    parts.append(f"{field}:{code}")
                elif code:
                    parts.append(str(code))
        if parts:
            return " | ".join(parts)
    text = getattr(resp, "text", "")
    if isinstance(text, str) and text.strip():
        text = text.strip()
        return (text[:197] + "...") if len(text) > 200 else text
    return None


def refresh_access_token(
    refresh_token: str, athlete_label: str | None = None
) -> TokenGrant:
    """Exchange a refresh token for a new access (and possibly new refresh) token.

    Args:
        refresh_token: The existing Strava refresh token.
        athlete_label: Optional athlete identifier for contextual logging.

    Returns:
        A :class:`TokenGrant`. ``refresh_token``/``expires_at`` may be ``None``
        when Strava omits them.

    Raises:
        TokenError: If the HTTP request fails or JSON is invalid / lacks tokens.
    """
    if not CLIENT_ID or not CLIENT_SECRET:
        raise TokenError(
            "Client credentials not configured (CLIENT_ID / CLIENT_SECRET missing)"
        )
    if not refresh_token:
        raise TokenError("Missing refresh token")

    payload = {
        "client_id": CLIENT_ID,
        "client_secret": CLIENT_SECRET,
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
    }
    logger = logging.getLogger(__name__)
    masked_refresh = _mask_tail(refresh_token)
    if athlete_label:
        logger.info(
            "Refreshing Strava token for athlete=%s refresh_token=%s",
            athlete_label,
            masked_refresh,
        )
    else:
        logger.info("Refreshing Strava token refresh_token=%s", masked_refresh)
    logger.debug("Token endpoint: %s", STRAVA_OAUTH_URL)

    try:
        resp = _session.post(STRAVA_OAUTH_URL, data=payload, timeout=REQUEST_TIMEOUT)
    except requests.exceptions.RequestException as e:  # Network / connection / timeout
        logger.error("Token request transport error: %s", e)
        raise TokenError("Transport failure during token refresh") from e

    status = resp.status_code
    logger.debug("Token endpoint status=%s", status)
    if status >= 400:
        detail = _error_detail(resp)
        logger.error(
            "Token refresh failed status=%s%s",
            status,
            f" detail={detail}" if detail else "",
        )
        raise TokenError(f"Token refresh failed with status {status}")

    try:
        data: Any = resp.json()
    except ValueError as e:
        logger.error("Invalid JSON in token response: %s", e)
        raise TokenError("Invalid JSON in token response") from e

    if not isinstance(data, dict):
        logger.error("Unexpected token response shape: %s", type(data).__name__)
        raise TokenError("Unexpected token response shape")

    token_data: Dict[str, Any] = data
    access_token = token_data.get("access_token")
    new_refresh_token = token_data.get("refresh_token")
    expires_at = token_data.get("expires_at")
    logger.info(
        "Token refresh access_token_len=%s refresh_token_changed=%s",
        len(access_token) if access_token else 0,
        bool(new_refresh_token and new_refresh_token != refresh_token),
    )
    if not access_token:
        logger.error("No access_token in token response")
        raise TokenError("No access_token in response")
    try:
        expires = int(expires_at) if expires_at is not None else None
    except (TypeError, ValueError):
        expires = None
    return TokenGrant(
        access_token=str(access_token),
        refresh_token=str(new_refresh_token) if new_refresh_token else None,
        expires_at=expires,
    )


@dataclass(frozen=True)
class AthleteGrant:
    """Tokens plus the athlete identity returned by the code exchange."""

    athlete_id: int
    athlete_name: str
    grant: TokenGrant
    scope: Optional[str] = None


def exchange_authorization_code(code: str, scope: str | None = None) -> AthleteGrant:
    """Exchange an OAuth authorisation code for tokens and the athlete profile.

    Raises:
        TokenError: on transport failure, HTTP error or an incomplete response.
    """
    if not CLIENT_ID or not CLIENT_SECRET:
        raise TokenError(
            "Client credentials not configured (CLIENT_ID / CLIENT_SECRET missing)"
        )
    if not code:
        raise TokenError("Missing authorisation code")

    logger = logging.getLogger(__name__)
    logger.info("Exchanging authorisation code for tokens...")
    try:
        resp = _session.post(
            STRAVA_OAUTH_URL,
            data={
                "client_id": CLIENT_ID,
                "client_secret": CLIENT_SECRET,
                "code": code,
                "grant_type": "authorization_code",
            },
            timeout=REQUEST_TIMEOUT,
        )
    except requests.exceptions.RequestException as e:
        logger.error("Code exchange transport error: %s", e)
        raise TokenError("Transport failure during code exchange") from e

    if resp.status_code >= 400:
        detail = _error_detail(resp)
        logger.error(
            "Code exchange failed status=%s%s",
            resp.status_code,
            f" detail={detail}" if detail else "",
        )
        raise TokenError(f"Code exchange failed with status {resp.status_code}")
    try:
        data: Any = resp.json()
    except ValueError as e:
        raise TokenError("Invalid JSON in code exchange response") from e
    if not isinstance(data, dict):
        raise TokenError("Unexpected code exchange response shape")

    access_token = data.get("access_token")
    refresh_token = data.get("refresh_token")
    expires_at = data.get("expires_at")
    athlete = data.get("athlete")
    if not access_token or not refresh_token or expires_at is None:
        logger.error("Code exchange response missing token fields")
        raise TokenError("Token response missing expected keys")
    if not isinstance(athlete, dict) or athlete.get("id") is None:
        raise TokenError("Token response missing athlete")

    name = " ".join(
        part for part in (athlete.get("firstname"), athlete.get("lastname")) if part
    ) or str(athlete["id"])
    logger.info(
        "Code exchange succeeded athlete=%s access_token=%s refresh_token=%s expires_at=%s",
        athlete["id"],
        _mask_tail(str(access_token)),
        _mask_tail(str(refresh_token)),
        expires_at,
    )
    return AthleteGrant(
        athlete_id=int(athlete["id"]),
        athlete_name=name,
        grant=TokenGrant(
            access_token=str(access_token),
            refresh_token=str(refresh_token),
            expires_at=int(expires_at),
        ),
        scope=scope,
    )
