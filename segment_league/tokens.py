"""Stored Strava credentials with on-demand refresh."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict

from sqlalchemy.orm import sessionmaker

from .auth import AthleteGrant, TokenGrant, refresh_access_token
from .config import TOKEN_REFRESH_MARGIN_SECONDS
from .db.database import session_scope
from .db.schema import Participant, ParticipantToken
from .errors import NotConnectedError

LOGGER = logging.getLogger(__name__)

Refresher = Callable[..., TokenGrant]

_token_locks: Dict[int, threading.Lock] = {}
_locks_lock = threading.Lock()


def _get_athlete_lock(athlete_id: int) -> threading.Lock:
    """Get or create a lock for a specific athlete."""
    with _locks_lock:
        if athlete_id not in _token_locks:
            _token_locks[athlete_id] = threading.Lock()
        return _token_locks[athlete_id]


class TokenProvider:
    """Hands out valid access tokens for connected participants.

    A stored token is used as-is unless it expires within ``margin`` seconds
    or a refresh is forced (after the upstream rejected it). Refreshed tokens
    are written back, including a rotated refresh token.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        refresher: Refresher = refresh_access_token,
        margin: int = TOKEN_REFRESH_MARGIN_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._session_factory = session_factory
        self._refresher = refresher
        self._margin = margin
        self._clock = clock

    def get_credential(self, athlete_id: int, force_refresh: bool = False) -> str:
        """Return an access token for ``athlete_id``.

        Raises:
            NotConnectedError: when no token is stored for the athlete.
            TokenError: when a required refresh fails.
        """

        # The per-athlete lock spans read, refresh and write-back; the upstream
        # call itself runs with no session open.
        with _get_athlete_lock(athlete_id):
            with session_scope(self._session_factory) as session:
                token = session.get(ParticipantToken, athlete_id)
                if token is None:
                    raise NotConnectedError("Participant not connected to Strava")
                access_token = token.access_token
                refresh_token = token.refresh_token
                expires_at = token.expires_at
            now = int(self._clock())
            if not force_refresh and expires_at >= now + self._margin:
                return access_token

            LOGGER.info(
                "Refreshing token athlete=%s forced=%s expires_at=%s",
                athlete_id,
                force_refresh,
                expires_at,
            )
            grant = self._refresher(refresh_token, athlete_label=str(athlete_id))

            with session_scope(self._session_factory) as session:
                token = session.get(ParticipantToken, athlete_id)
                if token is None:
                    # Disconnected while refreshing; nothing to write back.
                    raise NotConnectedError("Participant not connected to Strava")
                token.access_token = grant.access_token
                if grant.refresh_token and grant.refresh_token != token.refresh_token:
                    token.refresh_token = grant.refresh_token
                    LOGGER.debug("Refresh token rotated athlete=%s", athlete_id)
                if grant.expires_at is not None:
                    token.expires_at = grant.expires_at
            return grant.access_token

    def store_grant(self, athlete: AthleteGrant) -> None:
        """Create or update the participant and its tokens after an OAuth connect."""

        grant = athlete.grant
        with _get_athlete_lock(athlete.athlete_id):
            with session_scope(self._session_factory) as session:
                participant = session.get(Participant, athlete.athlete_id)
                if participant is None:
                    participant = Participant(
                        strava_athlete_id=athlete.athlete_id, name=athlete.athlete_name
                    )
                    session.add(participant)
                else:
                    participant.name = athlete.athlete_name
                token = session.get(ParticipantToken, athlete.athlete_id)
                if token is None:
                    token = ParticipantToken(strava_athlete_id=athlete.athlete_id)
                    session.add(token)
                token.access_token = grant.access_token
                token.refresh_token = grant.refresh_token or ""
                token.expires_at = grant.expires_at or 0
                token.scope = athlete.scope
        LOGGER.info("Connected athlete=%s", athlete.athlete_id)

    def disconnect(self, athlete_id: int) -> bool:
        """Remove stored tokens; results and history are kept."""

        with _get_athlete_lock(athlete_id):
            with session_scope(self._session_factory) as session:
                token = session.get(ParticipantToken, athlete_id)
                if token is None:
                    return False
                session.delete(token)
        LOGGER.info("Removed stored tokens athlete=%s", athlete_id)
        return True


__all__ = ["TokenProvider"]
