from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


class UnsupportedCronExpression(ValueError):
    pass


def parse_daily_cron(expr: str) -> Tuple[int, int]:
    """
    Parse the daily subset 'MINUTE HOUR * * *' into (minute, hour).

    Anything else (steps, lists, ranges, non-wildcard day/month/weekday)
    raises UnsupportedCronExpression.
    """
    fields = (expr or "").split()
    if len(fields) != 5:
        raise UnsupportedCronExpression(f"Expected 5 cron fields, got {len(fields)}: {expr!r}")

    minute_s, hour_s, dom, month, dow = fields
    if (dom, month, dow) != ("*", "*", "*"):
        raise UnsupportedCronExpression(
            f"Only daily schedules ('M H * * *') are supported: {expr!r}"
        )
    if not (minute_s.isdigit() and hour_s.isdigit()):
        raise UnsupportedCronExpression(f"Minute and hour must be fixed numbers: {expr!r}")

    minute, hour = int(minute_s), int(hour_s)
    if not (0 <= minute <= 59 and 0 <= hour <= 23):
        raise UnsupportedCronExpression(f"Minute/hour out of range: {expr!r}")
    return minute, hour


def get_zone(tz_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown timezone: {tz_name!r}")


def next_fire_time(expr: str, tz_name: str = "UTC", now: Optional[datetime] = None) -> datetime:
    """Next UTC instant strictly after `now` matching the daily cron in `tz_name`."""
    minute, hour = parse_daily_cron(expr)
    tz = get_zone(tz_name)
    now = now or datetime.now(timezone.utc)
    local_now = now.astimezone(tz)

    day = local_now.date()
    while True:
        candidate = datetime(day.year, day.month, day.day, hour, minute, tzinfo=tz)
        if candidate > local_now:
            return candidate.astimezone(timezone.utc)
        day += timedelta(days=1)
