import pytest

from segment_league.db import ResultStore, session_scope
from segment_league.db.schema import Activity, Result, SegmentEffort
from segment_league.errors import StravaRateLimitError, WeekNotFoundError
from segment_league.models import ActivityDetail, EffortDetail
from segment_league.services.batch_fetch_service import BatchFetchService
from segment_league.services.qualifier import ActivityQualifier
from segment_league.services.scoring_service import ScoringService

SEGMENT = 12744502
START = 1_736_150_400


def _detail(activity_id, *laps, offset=600, pr_lap=None, segment=SEGMENT):
    efforts = tuple(
        EffortDetail(
            segment_id=segment,
            elapsed_seconds=seconds,
            effort_id=f"{activity_id}-{i}",
            start_time=START + offset + i * 600,
            pr_rank=1 if i == pr_lap else None,
        )
        for i, seconds in enumerate(laps)
    )
    return ActivityDetail(id=activity_id, start_time=START + offset, efforts=efforts)


@pytest.fixture
def service(session_factory, fake_client, fake_tokens):
    return BatchFetchService(
        ResultStore(session_factory),
        fake_tokens,
        lambda: ActivityQualifier(fake_client),
        ScoringService(session_factory),
    )


def _results(session_factory, week_id=1):
    with session_scope(session_factory) as session:
        rows = (
            session.query(Result, Activity.strava_activity_id)
            .join(Activity, Activity.id == Result.activity_id)
            .filter(Result.week_id == week_id)
            .all()
        )
        return {r.strava_athlete_id: (activity_id, r.total_time_seconds, r.total_points) for r, activity_id in rows}


def _connect(seed, fake_tokens, *athlete_ids):
    for athlete_id in athlete_ids:
        seed.participant(athlete_id)
        fake_tokens.connected.add(athlete_id)


def test_unknown_week_raises_before_any_athlete(service, seed, fake_tokens):
    _connect(seed, fake_tokens, 1)
    with pytest.raises(WeekNotFoundError):
        service.fetch_week_results(99)
    assert fake_tokens.calls == []


def test_batch_summary_and_scores(service, session_factory, seed, fake_client, fake_tokens):
    seed.week(1)
    _connect(seed, fake_tokens, 1, 2, 3)
    fake_client.add("access-1", _detail(10, 300, pr_lap=0))
    fake_client.add("access-2", _detail(20, 320))

    summary = service.fetch_week_results(1)
    payload = summary.to_dict()
    assert payload["message"] == "Results fetched successfully"
    assert payload["participants_processed"] == 3
    assert payload["results_found"] == 2
    entries = {e["participant_id"]: e for e in payload["summary"]}
    assert entries[1]["activity_found"] is True
    assert entries[1]["activity_id"] == 10
    assert entries[1]["total_time"] == 300
    assert entries[1]["segment_efforts"] == 1
    assert entries[3] == {
        "participant_id": 3,
        "participant_name": "Rider 3",
        "activity_found": False,
        "reason": "No activities in time window",
    }
    # Rider 1: (2 - 1 + 1 + 1), rider 2: (2 - 2 + 1)
    assert _results(session_factory) == {1: (10, 300, 3), 2: (20, 320, 1)}


def test_only_winning_window_efforts_stored(service, session_factory, seed, fake_client, fake_tokens):
    seed.week(1, required_laps=2)
    _connect(seed, fake_tokens, 1)
    fake_client.add("access-1", _detail(10, 400, 200, 210, 500))

    summary = service.fetch_week_results(1)
    assert summary.results[0].laps == "laps 2, 3 of 4"
    with session_scope(session_factory) as session:
        efforts = session.query(SegmentEffort).order_by(SegmentEffort.effort_index).all()
        assert [(e.effort_index, e.elapsed_seconds) for e in efforts] == [(1, 200), (2, 210)]


def test_token_refresh_retry_inside_batch(service, session_factory, seed, fake_client, fake_tokens):
    seed.week(1)
    _connect(seed, fake_tokens, 1)
    fake_client.unauthorized.add("access-1")
    fake_tokens.refreshed[1] = "fresh-1"
    fake_client.add("fresh-1", _detail(10, 300))

    summary = service.fetch_week_results(1)
    assert fake_tokens.calls == [(1, False), (1, True)]
    assert [call[0] for call in fake_client.list_calls] == ["access-1", "fresh-1"]
    assert summary.results[0].activity_found


def test_double_unauthorized_is_reported_and_batch_continues(service, session_factory, seed, fake_client, fake_tokens):
    seed.week(1)
    _connect(seed, fake_tokens, 1, 2)
    fake_client.unauthorized.add("access-1")
    fake_client.add("access-2", _detail(20, 320))

    summary = service.fetch_week_results(1)
    first, second = summary.results
    assert not first.activity_found
    assert "Authorization failed" in first.reason
    assert second.activity_found
    assert _results(session_factory) == {2: (20, 320, 1)}


def test_not_connected_athlete_reason(service, seed, fake_tokens):
    seed.week(1)
    seed.participant(1)  # token row stored but the provider rejects it
    summary = service.fetch_week_results(1)
    assert summary.results[0].reason == "Participant not connected to Strava"


def test_rerun_is_idempotent(service, session_factory, seed, fake_client, fake_tokens):
    seed.week(1)
    _connect(seed, fake_tokens, 1, 2)
    fake_client.add("access-1", _detail(10, 300))
    fake_client.add("access-2", _detail(20, 320))
    service.fetch_week_results(1)
    first = _results(session_factory)
    service.fetch_week_results(1)
    assert _results(session_factory) == first
    with session_scope(session_factory) as session:
        assert session.query(Activity).count() == 2


def test_stored_activity_gone_upstream_is_replaced(service, session_factory, seed, fake_client, fake_tokens):
    seed.week(1)
    _connect(seed, fake_tokens, 1)
    fake_client.add("access-1", _detail(10, 300))
    service.fetch_week_results(1)

    fake_client.activities["access-1"] = [_detail(11, 330, offset=1800)]
    service.fetch_week_results(1)
    assert _results(session_factory) == {1: (11, 330, 1)}


def test_stored_activity_that_stops_qualifying_is_replaced(service, session_factory, seed, fake_client, fake_tokens):
    seed.week(1)
    _connect(seed, fake_tokens, 1)
    fake_client.add("access-1", _detail(10, 300), _detail(11, 350, offset=1800))
    service.fetch_week_results(1)
    assert _results(session_factory) == {1: (10, 300, 1)}

    # Activity 10 is still listed but its laps now belong to another segment.
    fake_client.activities["access-1"] = [
        _detail(10, 300, segment=999),
        _detail(11, 350, offset=1800),
    ]
    summary = service.fetch_week_results(1)
    assert summary.results[0].activity_id == 11
    assert _results(session_factory) == {1: (11, 350, 1)}
    with session_scope(session_factory) as session:
        assert session.query(Activity).count() == 1


def test_upstream_failure_is_recorded_without_retry(service, session_factory, seed, fake_client, fake_tokens):
    seed.week(1)
    _connect(seed, fake_tokens, 1, 2)
    fake_client.list_errors["access-1"] = StravaRateLimitError("Activity list rate limited (429)")
    fake_client.add("access-2", _detail(20, 320))

    summary = service.fetch_week_results(1)
    first, second = summary.results
    assert not first.activity_found
    assert first.reason == "Activity list rate limited (429)"
    assert second.activity_found
    assert [call for call in fake_tokens.calls if call[0] == 1] == [(1, False)]
    assert [call[0] for call in fake_client.list_calls] == ["access-1", "access-2"]
    assert summary.to_dict()["participants_processed"] == 2
    assert _results(session_factory) == {2: (20, 320, 1)}


def test_completed_scan_without_qualifier_removes_result(service, session_factory, seed, fake_client, fake_tokens):
    seed.week(1)
    _connect(seed, fake_tokens, 1)
    fake_client.add("access-1", _detail(10, 300))
    service.fetch_week_results(1)

    fake_client.activities["access-1"] = []
    service.fetch_week_results(1)
    assert _results(session_factory) == {}


def test_stream_emits_progress_then_single_complete(service, seed, fake_client, fake_tokens):
    seed.week(1)
    _connect(seed, fake_tokens, 1, 2)
    fake_client.add("access-1", _detail(10, 300))

    events = list(service.stream_week_results(1))
    kinds = [e["kind"] for e in events]
    assert kinds == ["progress", "progress", "complete"]
    assert events[0]["participant_id"] == 1
    assert events[0]["activity_found"] is True
    assert events[1]["reason"] == "No activities in time window"
    assert events[-1]["summary"]["results_found"] == 1


def test_stream_unknown_week_yields_single_error(service):
    events = list(service.stream_week_results(404))
    assert len(events) == 1
    assert events[0]["kind"] == "error"
    assert "404" in events[0]["message"]
