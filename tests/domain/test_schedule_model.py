from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from backup_scheduler.domain.schedule import Frequency, Schedule


def test_schedule_defaults():
    schedule = Schedule(accounts=["alice"], destination_id="local")

    assert schedule.id.startswith("sch_")
    assert schedule.frequency == Frequency.DAILY
    assert schedule.preferred_hour == 2
    assert schedule.retention == 30
    assert schedule.enabled
    assert schedule.next_run is None


@pytest.mark.parametrize("field,value", [("preferred_hour", 24), ("preferred_hour", -1), ("day_of_week", 7)])
def test_schedule_rejects_out_of_range_values(field, value):
    with pytest.raises(ValidationError):
        Schedule(accounts=["alice"], destination_id="local", **{field: value})


def test_is_due():
    now = datetime(2024, 1, 10, 2, 0, tzinfo=timezone.utc)
    schedule = Schedule(accounts=["alice"], destination_id="local", next_run=now)

    assert schedule.is_due(now)
    assert not schedule.is_due(now - timedelta(seconds=1))
    assert not schedule.model_copy(update={"enabled": False}).is_due(now)
    assert not schedule.model_copy(update={"next_run": None}).is_due(now)


def test_readable_string():
    schedule = Schedule(
        accounts="*",
        destination_id="offsite",
        frequency=Frequency.WEEKLY,
        preferred_hour=3,
        day_of_week=1,
        retention=0,
    )
    assert schedule.readable_string == (
        "Interval: Weekly on Monday at 03:00\n"
        "Accounts: All Accounts\n"
        "Destination: offsite\n"
        "Retention: unlimited"
    )
