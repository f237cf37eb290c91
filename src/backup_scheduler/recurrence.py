"""
Next-run calculation for recurring schedules.

Each frequency maps onto a cron expression and croniter walks forward from
``now``; croniter always returns an instant strictly after its base, which
gives the "strictly in the future" guarantee for free.
"""
from datetime import datetime, timedelta
from typing import Union

from croniter import croniter

from .domain.schedule import Frequency

_CRON_EXPRESSIONS = {
    Frequency.HOURLY: "0 * * * *",
    Frequency.DAILY: "0 {hour} * * *",
    Frequency.WEEKLY: "0 {hour} * * {day_of_week}",
    Frequency.MONTHLY: "0 {hour} 1 * *",
}


def cron_expression(frequency: Union[Frequency, str], preferred_hour: int = 2, day_of_week: int = 0) -> str:
    frequency = Frequency(frequency)
    if not 0 <= preferred_hour <= 23:
        raise ValueError(f"preferred_hour must be within 0-23, got {preferred_hour}")
    if not 0 <= day_of_week <= 6:
        raise ValueError(f"day_of_week must be within 0-6, got {day_of_week}")
    return _CRON_EXPRESSIONS[frequency].format(hour=preferred_hour, day_of_week=day_of_week)


def _start_of_next_month(now: datetime) -> datetime:
    if now.month == 12:
        return now.replace(year=now.year + 1, month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    return now.replace(month=now.month + 1, day=1, hour=0, minute=0, second=0, microsecond=0)


def next_run(frequency: Union[Frequency, str], preferred_hour: int, day_of_week: int, now: datetime) -> datetime:
    """
    Compute the next execution instant of a schedule.

    - hourly: the next top of the hour after ``now``.
    - daily: today at ``preferred_hour:00`` if still ahead of ``now``, else tomorrow.
    - weekly: the next ``day_of_week`` (0=Sunday) at ``preferred_hour:00``
      strictly after ``now``; a full week ahead if that time already passed today.
    - monthly: the 1st of the next calendar month at ``preferred_hour:00``.

    ``now`` must be timezone-aware; the hour is interpreted in ``now``'s zone
    and the result carries the same zone.
    """
    if now.tzinfo is None:
        raise ValueError("now must be timezone-aware")
    expression = cron_expression(frequency, preferred_hour, day_of_week)
    base = now
    if Frequency(frequency) == Frequency.MONTHLY:
        # The 1st of the current month never qualifies, even before the preferred hour.
        base = _start_of_next_month(now) - timedelta(seconds=1)
    return croniter(expression, base).get_next(datetime)
