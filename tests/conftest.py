"""Global pytest fixtures & helpers.

Adds project root to path and provides a temporary database, seeding helpers
and in-memory fakes for the Strava client and token provider.
"""
from __future__ import annotations

import os
import sys
from typing import Dict, Iterable, List, Optional, Set, Tuple

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from segment_league.db import create_engine_for, init_db, make_session_factory, session_scope
from segment_league.db.schema import Participant, ParticipantToken, Season, Segment, Week
from segment_league.errors import (
    NotConnectedError,
    StravaResourceNotFoundError,
    StravaUnauthorizedError,
)
from segment_league.models import ActivityDetail, ActivitySummary


SEGMENT_ID = 12744502
WEEK_START = 1_736_150_400  # 2025-01-06T08:00:00Z
WEEK_END = WEEK_START + 12 * 3600


class Seeder:
    """Small helper that writes fixture rows through the real schema."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def season(self, season_id=1, name="Winter", start_at=WEEK_START - 86400, end_at=WEEK_END + 90 * 86400):
        with session_scope(self.session_factory) as session:
            session.add(Season(id=season_id, name=name, start_at=start_at, end_at=end_at))
        return season_id

    def segment(self, segment_id=SEGMENT_ID, name="Climb"):
        with session_scope(self.session_factory) as session:
            if session.get(Segment, segment_id) is None:
                session.add(Segment(strava_segment_id=segment_id, name=name))
        return segment_id

    def week(
        self,
        week_id=1,
        *,
        season_id: Optional[int] = 1,
        segment_id=SEGMENT_ID,
        required_laps=1,
        start_at=WEEK_START,
        end_at=WEEK_END,
        multiplier=1,
        name=None,
    ):
        self.segment(segment_id)
        with session_scope(self.session_factory) as session:
            if season_id is not None and session.get(Season, season_id) is None:
                session.add(Season(id=season_id, name="Season", start_at=start_at, end_at=end_at))
                session.flush()
            session.add(
                Week(
                    id=week_id,
                    season_id=season_id,
                    week_name=name or f"Week {week_id}",
                    strava_segment_id=segment_id,
                    required_laps=required_laps,
                    start_at=start_at,
                    end_at=end_at,
                    multiplier=multiplier,
                )
            )
        return week_id

    def participant(self, athlete_id, name=None, *, connected=True, expires_at=4_102_444_800):
        with session_scope(self.session_factory) as session:
            session.add(Participant(strava_athlete_id=athlete_id, name=name or f"Rider {athlete_id}"))
            if connected:
                session.add(
                    ParticipantToken(
                        strava_athlete_id=athlete_id,
                        access_token=f"access-{athlete_id}",
                        refresh_token=f"refresh-{athlete_id}",
                        expires_at=expires_at,
                    )
                )
        return athlete_id


class FakeStravaClient:
    """In-memory stand-in for :class:`segment_league.strava_client.StravaClient`.

    Activities are registered per access token. Tokens listed in
    ``unauthorized`` get a 401 on every call.
    """

    def __init__(self):
        self.activities: Dict[str, List[ActivityDetail]] = {}
        self.unauthorized: Set[str] = set()
        self.hidden_details: Set[int] = set()
        self.list_errors: Dict[str, Exception] = {}
        self.list_calls: List[Tuple[str, int, int]] = []
        self.detail_calls: List[Tuple[str, int]] = []

    def add(self, token: str, *details: ActivityDetail) -> None:
        self.activities.setdefault(token, []).extend(details)

    def list_activities(self, access_token, after, before):
        self.list_calls.append((access_token, after, before))
        if access_token in self.unauthorized:
            raise StravaUnauthorizedError("Activity list unauthorized")
        if access_token in self.list_errors:
            raise self.list_errors[access_token]
        return [
            ActivitySummary(id=d.id, start_time=d.start_time, name=d.name)
            for d in self.activities.get(access_token, [])
            if d.start_time is not None and after < d.start_time < before
        ]

    def get_activity_detail(self, access_token, activity_id):
        self.detail_calls.append((access_token, activity_id))
        if access_token in self.unauthorized:
            raise StravaUnauthorizedError(f"Activity {activity_id} unauthorized")
        if activity_id not in self.hidden_details:
            for details in self.activities.values():
                for detail in details:
                    if detail.id == activity_id:
                        return detail
        raise StravaResourceNotFoundError(f"Activity {activity_id} not found")


class FakeTokenProvider:
    """Returns ``access-<id>`` tokens; forced refreshes return ``refreshed[id]`` when set."""

    def __init__(self, connected: Iterable[int] = ()):
        self.connected: Set[int] = set(connected)
        self.refreshed: Dict[int, str] = {}
        self.calls: List[Tuple[int, bool]] = []
        self.disconnected: List[int] = []
        self.grants: List = []

    def get_credential(self, athlete_id, force_refresh=False):
        self.calls.append((athlete_id, force_refresh))
        if athlete_id not in self.connected:
            raise NotConnectedError("Participant not connected to Strava")
        if force_refresh and athlete_id in self.refreshed:
            return self.refreshed[athlete_id]
        return f"access-{athlete_id}"

    def disconnect(self, athlete_id):
        self.disconnected.append(athlete_id)
        self.connected.discard(athlete_id)
        return True

    def store_grant(self, athlete):
        self.grants.append(athlete)
        self.connected.add(athlete.athlete_id)


# --- Fixtures --------------------------------------------------------
@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine_for(f"sqlite:///{tmp_path / 'league.db'}")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)


@pytest.fixture
def fake_client():
    return FakeStravaClient()


@pytest.fixture
def fake_tokens():
    return FakeTokenProvider()
