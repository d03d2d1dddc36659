import json
import threading

import pytest

from segment_league.db import ResultStore, session_scope
from segment_league.db.schema import Activity, Result, WebhookEventLog
from segment_league.models import ActivityDetail, EffortDetail, WebhookEvent
from segment_league.services.qualifier import ActivityQualifier
from segment_league.services.scoring_service import ScoringService
from segment_league.services.webhook_service import WebhookEventQueue, WebhookProcessor

SEGMENT = 12744502
START = 1_736_150_400


def _detail(activity_id, seconds, segment=SEGMENT):
    effort = EffortDetail(segment_id=segment, elapsed_seconds=seconds, start_time=START + 700)
    return ActivityDetail(id=activity_id, start_time=START + 600, efforts=(effort,))


def _event(aspect, activity_id, owner=1, **extra):
    payload = {
        "object_type": "activity",
        "aspect_type": aspect,
        "object_id": activity_id,
        "owner_id": owner,
        "event_time": START + 3600,
    }
    payload.update(extra)
    return payload


@pytest.fixture
def processor(session_factory, seed, fake_client, fake_tokens):
    seed.week(1)
    for athlete_id in (1, 2):
        seed.participant(athlete_id)
        fake_tokens.connected.add(athlete_id)
    return WebhookProcessor(
        ResultStore(session_factory),
        fake_tokens,
        lambda: ActivityQualifier(fake_client),
        ScoringService(session_factory),
    )


def _stored(session_factory):
    with session_scope(session_factory) as session:
        rows = (
            session.query(Result, Activity.strava_activity_id)
            .join(Activity, Activity.id == Result.activity_id)
            .all()
        )
        return {(r.week_id, r.strava_athlete_id): (a, r.total_time_seconds, r.total_points) for r, a in rows}


def test_create_stores_and_scores(processor, session_factory, fake_client):
    fake_client.add("access-1", _detail(10, 300))
    assert processor.process(WebhookEvent.from_payload(_event("create", 10))) == [1]
    assert _stored(session_factory) == {(1, 1): (10, 300, 1)}


def test_replayed_create_keeps_one_row(processor, session_factory, fake_client):
    fake_client.add("access-1", _detail(10, 300))
    fake_client.add("access-2", _detail(20, 320))
    processor.process(WebhookEvent.from_payload(_event("create", 20, owner=2)))
    event = WebhookEvent.from_payload(_event("create", 10))
    processor.process(event)
    first = _stored(session_factory)
    processor.process(event)
    assert _stored(session_factory) == first
    assert first[(1, 1)] == (10, 300, 2)
    with session_scope(session_factory) as session:
        assert session.query(Activity).count() == 2


def test_slower_activity_does_not_replace(processor, session_factory, fake_client):
    fake_client.add("access-1", _detail(10, 300), _detail(11, 350))
    processor.process(WebhookEvent.from_payload(_event("create", 10)))
    assert processor.process(WebhookEvent.from_payload(_event("create", 11))) == []
    assert _stored(session_factory)[(1, 1)][0] == 10


def test_faster_activity_replaces(processor, session_factory, fake_client):
    fake_client.add("access-1", _detail(10, 300), _detail(11, 280))
    processor.process(WebhookEvent.from_payload(_event("create", 10)))
    processor.process(WebhookEvent.from_payload(_event("create", 11)))
    assert _stored(session_factory) == {(1, 1): (11, 280, 1)}


def test_update_that_disqualifies_removes_result(processor, session_factory, fake_client):
    fake_client.add("access-1", _detail(10, 300))
    processor.process(WebhookEvent.from_payload(_event("create", 10)))
    fake_client.activities["access-1"] = [_detail(10, 300, segment=999)]
    assert processor.process(WebhookEvent.from_payload(_event("update", 10))) == [1]
    assert _stored(session_factory) == {}


def test_delete_is_idempotent(processor, session_factory, fake_client):
    fake_client.add("access-1", _detail(10, 300))
    fake_client.add("access-2", _detail(20, 320))
    processor.process(WebhookEvent.from_payload(_event("create", 10)))
    processor.process(WebhookEvent.from_payload(_event("create", 20, owner=2)))

    delete = WebhookEvent.from_payload(_event("delete", 10))
    assert processor.process(delete) == [1]
    assert processor.process(delete) == []
    assert _stored(session_factory) == {(1, 2): (20, 320, 1)}


def test_delete_of_unknown_activity_is_noop(processor):
    assert processor.process(WebhookEvent.from_payload(_event("delete", 999))) == []


def test_unknown_athlete_ignored(processor, fake_tokens):
    assert processor.process(WebhookEvent.from_payload(_event("create", 10, owner=77))) == []
    assert fake_tokens.calls == []


def test_late_event_matches_week_by_activity_start(processor, session_factory, fake_client):
    fake_client.add("access-1", _detail(10, 300))
    payload = _event("update", 10)
    payload["event_time"] = START + 20 * 86400
    assert processor.process(WebhookEvent.from_payload(payload)) == [1]
    assert _stored(session_factory) == {(1, 1): (10, 300, 1)}


def test_activity_outside_every_week_is_ignored(processor, session_factory, fake_client):
    detail = ActivityDetail(
        id=10,
        start_time=START + 90 * 86400,
        efforts=(EffortDetail(segment_id=SEGMENT, elapsed_seconds=300),),
    )
    fake_client.add("access-1", detail)
    assert processor.process(WebhookEvent.from_payload(_event("create", 10))) == []
    assert _stored(session_factory) == {}


def test_athlete_deauthorization_keeps_history(processor, session_factory, fake_client, fake_tokens):
    fake_client.add("access-1", _detail(10, 300))
    processor.process(WebhookEvent.from_payload(_event("create", 10)))
    payload = {
        "object_type": "athlete",
        "aspect_type": "update",
        "object_id": 1,
        "owner_id": 1,
        "updates": {"authorized": "false"},
    }
    processor.process(WebhookEvent.from_payload(payload))
    assert fake_tokens.disconnected == [1]
    assert (1, 1) in _stored(session_factory)


def test_queue_logs_processed_events(processor, session_factory, fake_client):
    fake_client.add("access-1", _detail(10, 300))
    queue = WebhookEventQueue(processor, session_factory, max_workers=1)
    try:
        future = queue.submit(_event("create", 10))
        future.result(timeout=5)
    finally:
        queue.shutdown()
    with session_scope(session_factory) as session:
        row = session.query(WebhookEventLog).one()
        assert row.processed is True
        assert row.error_message is None
        assert json.loads(row.payload)["object_id"] == 10


def test_queue_marks_failures(session_factory, seed):
    class Exploding:
        def process(self, event):
            raise RuntimeError("storage unavailable")

    queue = WebhookEventQueue(Exploding(), session_factory, max_workers=1)
    try:
        queue.submit(_event("create", 10)).result(timeout=5)
    finally:
        queue.shutdown()
    with session_scope(session_factory) as session:
        row = session.query(WebhookEventLog).one()
        assert row.processed is False
        assert row.error_message == "storage unavailable"


def test_queue_rejects_malformed_payload(session_factory):
    queue = WebhookEventQueue(object(), session_factory, max_workers=1)
    try:
        assert queue.submit({"object_type": "activity"}) is None
    finally:
        queue.shutdown()
    with session_scope(session_factory) as session:
        row = session.query(WebhookEventLog).one()
        assert row.processed is False
        assert "Malformed" in row.error_message


def test_concurrent_duplicate_creates_store_one_row(processor, session_factory, fake_client):
    fake_client.add("access-1", _detail(10, 300))
    fake_client.add("access-2", _detail(20, 320))
    processor.process(WebhookEvent.from_payload(_event("create", 20, owner=2)))

    # Hold both workers until each has fetched the activity, so the writes race.
    barrier = threading.Barrier(2)
    fetch = fake_client.get_activity_detail

    def synchronized_fetch(access_token, activity_id):
        detail = fetch(access_token, activity_id)
        barrier.wait(timeout=5)
        return detail

    fake_client.get_activity_detail = synchronized_fetch
    queue = WebhookEventQueue(processor, session_factory, max_workers=2)
    try:
        futures = [queue.submit(_event("create", 10)) for _ in range(2)]
        for future in futures:
            future.result(timeout=10)
    finally:
        queue.shutdown()

    assert _stored(session_factory) == {(1, 1): (10, 300, 2), (1, 2): (20, 320, 1)}
    with session_scope(session_factory) as session:
        assert session.query(Activity).filter(Activity.strava_athlete_id == 1).count() == 1
        assert session.query(Result).count() == 2
        assert [row.processed for row in session.query(WebhookEventLog).all()] == [True, True]
