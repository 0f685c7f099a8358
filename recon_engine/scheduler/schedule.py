"""
Next-run computation for scheduled imports.

Times are interpreted in the schedule's own timezone and returned in UTC.
"""

import calendar
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from ..models import Schedule, ScheduleFrequency


def _at(schedule: Schedule, day: date, tz: ZoneInfo) -> datetime:
    return datetime(day.year, day.month, day.day, schedule.hour, schedule.minute, tzinfo=tz)


def _month_day(year: int, month: int, day_of_month: int) -> date:
    # Days past the end of a short month run on its last day
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day_of_month, last_day))


def _next_month(year: int, month: int):
    return (year + 1, 1) if month == 12 else (year, month + 1)


def compute_next_run(schedule: Schedule, after: datetime) -> datetime:
    """
    Next time the schedule fires strictly after the given instant.

    Args:
        schedule: Cadence to evaluate
        after: Reference instant (naive values are taken as UTC)

    Returns:
        Timezone-aware UTC datetime
    """
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)

    tz = ZoneInfo(schedule.timezone)
    local_now = after.astimezone(tz)
    today = local_now.date()

    if schedule.frequency == ScheduleFrequency.DAILY:
        candidate = _at(schedule, today, tz)
        if candidate <= local_now:
            candidate = _at(schedule, today + timedelta(days=1), tz)

    elif schedule.frequency == ScheduleFrequency.WEEKLY:
        # 0=Sunday maps onto Python's Monday-based weekday()
        target = (schedule.day_of_week - 1) % 7
        days_ahead = (target - today.weekday()) % 7
        candidate = _at(schedule, today + timedelta(days=days_ahead), tz)
        if candidate <= local_now:
            candidate = _at(schedule, today + timedelta(days=days_ahead + 7), tz)

    else:
        candidate = _at(schedule, _month_day(today.year, today.month, schedule.day_of_month), tz)
        if candidate <= local_now:
            year, month = _next_month(today.year, today.month)
            candidate = _at(schedule, _month_day(year, month, schedule.day_of_month), tz)

    return candidate.astimezone(timezone.utc)
