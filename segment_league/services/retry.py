"""Run upstream work with a single token refresh on rejection."""

from __future__ import annotations

import logging
from typing import Callable, Protocol, TypeVar

from ..errors import AuthorizationFailedError, StravaUnauthorizedError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class CredentialSource(Protocol):
    def get_credential(self, athlete_id: int, force_refresh: bool = False) -> str:
        ...


def call_with_token_refresh(
    tokens: CredentialSource,
    athlete_id: int,
    operation: Callable[[str], T],
) -> T:
    """Call ``operation(credential)``; on 401 force one refresh and retry once.

    Raises:
        AuthorizationFailedError: when the retried call is rejected again.
    """

    credential = tokens.get_credential(athlete_id)
    try:
        return operation(credential)
    except StravaUnauthorizedError:
        LOGGER.info("Upstream rejected token athlete=%s; forcing refresh", athlete_id)

    credential = tokens.get_credential(athlete_id, force_refresh=True)
    try:
        return operation(credential)
    except StravaUnauthorizedError as exc:
        LOGGER.warning("Authorization failed after refresh athlete=%s", athlete_id)
        raise AuthorizationFailedError("Authorization failed") from exc


__all__ = ["call_with_token_refresh", "CredentialSource"]
