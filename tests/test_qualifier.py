import pytest

from segment_league.errors import StravaAPIError
from segment_league.models import ActivityDetail, EffortDetail, WeekWindow
from segment_league.services.qualifier import (
    REASON_NO_ACTIVITIES,
    REASON_OUTSIDE_WINDOW,
    REASON_SEGMENT_MISSING,
    ActivityQualifier,
)

SEGMENT = 12744502
START = 1_736_150_400
END = START + 12 * 3600
TOKEN = "access-1"


def _week(laps=1, week_id=1):
    return WeekWindow(id=week_id, strava_segment_id=SEGMENT, required_laps=laps, start_at=START, end_at=END)


def _detail(activity_id, offset, *laps, segment=SEGMENT, pr_lap=None, device=None):
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
    return ActivityDetail(id=activity_id, start_time=START + offset, efforts=efforts, device_name=device)


def test_picks_fastest_qualifying_activity(fake_client):
    fake_client.add(TOKEN, _detail(1, 600, 320), _detail(2, 1200, 300, pr_lap=0), _detail(3, 1800, 310))
    outcome = ActivityQualifier(fake_client).find_best(TOKEN, _week())
    assert outcome.qualified
    assert outcome.best.activity_id == 2
    assert outcome.best.total_seconds == 300
    assert outcome.best.pr_achieved


def test_equal_totals_keep_first_seen(fake_client):
    fake_client.add(TOKEN, _detail(1, 600, 300), _detail(2, 1200, 300))
    outcome = ActivityQualifier(fake_client).find_best(TOKEN, _week())
    assert outcome.best.activity_id == 1


def test_multi_lap_uses_contiguous_window(fake_client):
    fake_client.add(TOKEN, _detail(1, 600, 100, 300, 300, 101))
    outcome = ActivityQualifier(fake_client).find_best(TOKEN, _week(laps=2))
    assert outcome.best.total_seconds == 400
    assert outcome.best.lap_indices == (0, 1)
    assert outcome.best.total_matching_efforts == 4
    assert outcome.best.lap_summary() == "laps 1, 2 of 4"


def test_no_activities(fake_client):
    outcome = ActivityQualifier(fake_client).find_best(TOKEN, _week())
    assert not outcome.qualified
    assert outcome.reason == REASON_NO_ACTIVITIES


def test_padding_fetch_but_exact_window_check(fake_client):
    # Starts 30 minutes before the window: listed thanks to padding, then rejected.
    fake_client.add(TOKEN, _detail(1, -1800, 300))
    qualifier = ActivityQualifier(fake_client, padding_seconds=3600)
    outcome = qualifier.find_best(TOKEN, _week())
    _, after, before = fake_client.list_calls[0]
    assert after == START - 3600
    assert before == END + 3600
    assert outcome.reason == REASON_NO_ACTIVITIES
    assert fake_client.detail_calls == []


def test_segment_missing_reason(fake_client):
    fake_client.add(TOKEN, _detail(1, 600, 300, segment=999))
    outcome = ActivityQualifier(fake_client).find_best(TOKEN, _week())
    assert outcome.reason == REASON_SEGMENT_MISSING


def test_insufficient_reason_wins_over_missing_segment(fake_client):
    fake_client.add(TOKEN, _detail(1, 600, 300, segment=999), _detail(2, 1200, 300))
    outcome = ActivityQualifier(fake_client).find_best(TOKEN, _week(laps=2))
    assert outcome.reason == "Insufficient repetitions (found 1, need 2)"


def test_deleted_activity_is_skipped(fake_client):
    fake_client.add(TOKEN, _detail(1, 600, 280), _detail(2, 1200, 300))
    fake_client.hidden_details.add(1)
    outcome = ActivityQualifier(fake_client).find_best(TOKEN, _week())
    assert outcome.best.activity_id == 2


def test_other_upstream_errors_propagate(fake_client):
    fake_client.list_errors[TOKEN] = StravaAPIError("Activity list request failed (status 500)")
    with pytest.raises(StravaAPIError):
        ActivityQualifier(fake_client).find_best(TOKEN, _week())


def test_detail_cached_within_instance(fake_client):
    fake_client.add(TOKEN, _detail(1, 600, 300))
    qualifier = ActivityQualifier(fake_client)
    qualifier.find_best(TOKEN, _week(week_id=1))
    qualifier.find_best(TOKEN, _week(week_id=2))
    assert fake_client.detail_calls == [(TOKEN, 1)]


def test_qualify_single_activity_against_weeks(fake_client):
    fake_client.add(TOKEN, _detail(7, 600, 300, 290, device="Garmin Edge 540"))
    later = WeekWindow(id=2, strava_segment_id=SEGMENT, required_laps=1, start_at=END + 86400, end_at=END + 2 * 86400)
    qualifier = ActivityQualifier(fake_client)
    outcomes = qualifier.evaluate_weeks(qualifier.fetch_detail(TOKEN, 7), [_week(laps=2), later])
    assert outcomes[1].best.total_seconds == 590
    assert outcomes[1].best.device_name == "Garmin Edge 540"
    assert outcomes[2].reason == REASON_OUTSIDE_WINDOW
    assert len(fake_client.detail_calls) == 1


def test_qualify_deleted_activity(fake_client):
    qualifier = ActivityQualifier(fake_client)
    detail = qualifier.fetch_detail(TOKEN, 42)
    assert detail is None
    outcomes = qualifier.evaluate_weeks(detail, [_week()])
    assert not outcomes[1].qualified
