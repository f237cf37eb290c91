from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from backup_scheduler.domain.schedule import Frequency
from backup_scheduler.recurrence import cron_expression, next_run

UTC = timezone.utc


def at(*args) -> datetime:
    return datetime(*args, tzinfo=UTC)


@pytest.mark.parametrize("now,expected", [
    (at(2024, 1, 10, 1, 30), at(2024, 1, 10, 2, 0)),
    (at(2024, 1, 10, 2, 0), at(2024, 1, 10, 3, 0)),
    (at(2024, 1, 10, 23, 59, 59), at(2024, 1, 11, 0, 0)),
])
def test_hourly_is_next_top_of_hour(now, expected):
    assert next_run(Frequency.HOURLY, 5, 3, now) == expected


@pytest.mark.parametrize("now,expected", [
    (at(2024, 1, 10, 1, 30), at(2024, 1, 10, 2, 0)),
    (at(2024, 1, 10, 2, 0), at(2024, 1, 11, 2, 0)),
    (at(2024, 1, 10, 14, 0), at(2024, 1, 11, 2, 0)),
    (at(2024, 12, 31, 3, 0), at(2025, 1, 1, 2, 0)),
])
def test_daily(now, expected):
    assert next_run(Frequency.DAILY, 2, 0, now) == expected


@pytest.mark.parametrize("day_of_week,now,expected", [
    # 2024-01-10 is a Wednesday
    (3, at(2024, 1, 10, 1, 30), at(2024, 1, 10, 2, 0)),
    (3, at(2024, 1, 10, 3, 0), at(2024, 1, 17, 2, 0)),
    (0, at(2024, 1, 10, 1, 30), at(2024, 1, 14, 2, 0)),
    (6, at(2024, 1, 13, 2, 0), at(2024, 1, 20, 2, 0)),
])
def test_weekly(day_of_week, now, expected):
    assert next_run(Frequency.WEEKLY, 2, day_of_week, now) == expected


@pytest.mark.parametrize("now,expected", [
    (at(2024, 1, 10, 1, 30), at(2024, 2, 1, 2, 0)),
    (at(2024, 1, 1, 0, 30), at(2024, 2, 1, 2, 0)),
    (at(2024, 12, 15, 9, 0), at(2025, 1, 1, 2, 0)),
])
def test_monthly_is_first_of_next_month(now, expected):
    assert next_run(Frequency.MONTHLY, 2, 0, now) == expected


def test_next_run_is_strictly_after_now():
    start = at(2024, 2, 27, 0, 0)
    for step in range(0, 24 * 8 * 4):
        now = start + timedelta(minutes=15 * step)
        for frequency in Frequency:
            assert next_run(frequency, 2, 4, now) > now


def test_preferred_hour_is_local_to_now():
    zone = ZoneInfo("America/New_York")
    now = datetime(2024, 1, 10, 1, 30, tzinfo=zone)

    result = next_run(Frequency.DAILY, 2, 0, now)

    assert result == datetime(2024, 1, 10, 2, 0, tzinfo=zone)
    assert result.astimezone(UTC) == at(2024, 1, 10, 7, 0)


def test_naive_now_is_rejected():
    with pytest.raises(ValueError, match="timezone-aware"):
        next_run(Frequency.DAILY, 2, 0, datetime(2024, 1, 10, 1, 30))


def test_cron_expression():
    assert cron_expression(Frequency.HOURLY) == "0 * * * *"
    assert cron_expression("daily", 4) == "0 4 * * *"
    assert cron_expression(Frequency.WEEKLY, 23, 6) == "0 23 * * 6"
    assert cron_expression(Frequency.MONTHLY, 0) == "0 0 1 * *"
    with pytest.raises(ValueError):
        cron_expression(Frequency.DAILY, 24)
    with pytest.raises(ValueError):
        cron_expression(Frequency.WEEKLY, 2, 7)
