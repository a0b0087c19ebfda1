import pytest
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from app.services.recurrence import next_run
from app.types.contracts import RepeatRule
from app.types.errors import UnsupportedFrequencyError

BERLIN = ZoneInfo("Europe/Berlin")
NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


def test_daily_adds_interval_days():
    rule = RepeatRule(freq="DAILY", interval=2)
    due = datetime(2025, 1, 10, 9, 0, tzinfo=BERLIN)
    assert next_run(rule, due, 1, now=NOW) == datetime(2025, 1, 12, 9, 0, tzinfo=BERLIN)


def test_daily_keeps_wall_clock_across_dst():
    rule = RepeatRule(freq="DAILY")
    due = datetime(2025, 3, 29, 9, 0, tzinfo=BERLIN)  # day before spring-forward
    following = next_run(rule, due, 1, now=NOW)
    assert following.hour == 9
    assert following.utcoffset().total_seconds() == 2 * 3600


def test_weekly_adds_seven_days_per_interval():
    rule = RepeatRule(freq="WEEKLY", interval=3)
    due = datetime(2025, 1, 6, 18, 30, tzinfo=BERLIN)
    assert next_run(rule, due, 1, now=NOW) == datetime(2025, 1, 27, 18, 30, tzinfo=BERLIN)


def test_weekly_by_day_picks_next_listed_day():
    rule = RepeatRule(freq="WEEKLY", by_day=["fr", "MO"])
    monday = datetime(2025, 1, 6, 9, 0, tzinfo=BERLIN)
    assert next_run(rule, monday, 1, now=NOW) == datetime(2025, 1, 10, 9, 0, tzinfo=BERLIN)


def test_weekly_by_day_wraps_to_following_active_week():
    rule = RepeatRule(freq="WEEKLY", interval=2, by_day=["MO", "FR"])
    friday = datetime(2025, 1, 10, 9, 0, tzinfo=BERLIN)
    assert next_run(rule, friday, 2, now=NOW) == datetime(2025, 1, 20, 9, 0, tzinfo=BERLIN)


def test_monthly_clamps_to_end_of_month():
    rule = RepeatRule(freq="MONTHLY")
    jan31 = datetime(2025, 1, 31, 9, 0, tzinfo=timezone.utc)
    assert next_run(rule, jan31, 1, now=NOW) == datetime(2025, 2, 28, 9, 0, tzinfo=timezone.utc)


def test_monthly_leap_year():
    rule = RepeatRule(freq="MONTHLY")
    jan31 = datetime(2024, 1, 31, 9, 0, tzinfo=timezone.utc)
    assert next_run(rule, jan31, 1, now=NOW).day == 29


@pytest.mark.parametrize("freq", ["DAILY", "WEEKLY", "MONTHLY"])
def test_count_reached_returns_none(freq):
    rule = RepeatRule(freq=freq, count=3)
    due = datetime(2025, 1, 6, 9, 0, tzinfo=BERLIN)
    assert next_run(rule, due, 3, now=NOW) is None
    assert next_run(rule, due, 2, now=NOW) is not None


def test_until_in_past_returns_none():
    rule = RepeatRule(freq="DAILY", until=datetime(2024, 12, 1, tzinfo=timezone.utc))
    due = datetime(2025, 1, 6, 9, 0, tzinfo=BERLIN)
    assert next_run(rule, due, 1, now=NOW) is None


def test_candidate_after_until_returns_none():
    rule = RepeatRule(freq="WEEKLY", until=datetime(2025, 1, 10, tzinfo=timezone.utc))
    due = datetime(2025, 1, 6, 9, 0, tzinfo=BERLIN)
    assert next_run(rule, due, 1, now=NOW) is None


def test_cron_is_unsupported():
    rule = RepeatRule(freq="CRON", cron="0 9 * * 1")
    with pytest.raises(UnsupportedFrequencyError):
        next_run(rule, datetime(2025, 1, 6, 9, 0, tzinfo=BERLIN), 0, now=NOW)


def test_naive_due_rejected():
    with pytest.raises(ValueError, match="timezone-aware"):
        next_run(RepeatRule(freq="DAILY"), datetime(2025, 1, 6, 9, 0), 0, now=NOW)


def test_deterministic():
    rule = RepeatRule(freq="MONTHLY", interval=2)
    due = datetime(2025, 1, 15, 9, 0, tzinfo=BERLIN)
    assert next_run(rule, due, 1, now=NOW) == next_run(rule, due, 1, now=NOW)
