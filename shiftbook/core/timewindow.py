"""Pure interval, clock and calendar helpers used by every scheduling module.

Windows are half-open ``[start, end)``. Shift times are ``HH:MM`` strings local
to the organization; appointment timestamps are stored as naive UTC.
"""

import calendar
import re
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..errors import ValidationError
from ..statuses import RecurrencePattern

HHMM_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def overlaps(a_start, a_end, b_start, b_end) -> bool:
    return a_start < b_end and b_start < a_end


def parse_hhmm(value: str) -> int:
    match = HHMM_RE.match(str(value or "").strip())
    if not match:
        raise ValidationError(f"Invalid time format {value!r}. Use HH:MM")
    return int(match.group(1)) * 60 + int(match.group(2))


def format_hhmm(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def duration_minutes(start, end) -> int:
    if isinstance(start, str) or isinstance(end, str):
        start_min, end_min = parse_hhmm(start), parse_hhmm(end)
        if end_min <= start_min:
            raise ValidationError("End time must be after start time")
        return end_min - start_min
    if end <= start:
        raise ValidationError("End time must be after start time")
    return int((end - start).total_seconds() // 60)


def weekday_of(day: date) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return (day.weekday() + 1) % 7


def add_months(day: date, months: int) -> date:
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def add_occurrence(start_date: date, pattern, interval: int, occurrence_index: int) -> date:
    pattern = RecurrencePattern(pattern)
    if pattern == RecurrencePattern.DAILY:
        return start_date + timedelta(days=occurrence_index)
    if pattern == RecurrencePattern.WEEKLY:
        return start_date + timedelta(days=7 * occurrence_index)
    if pattern == RecurrencePattern.BI_WEEKLY:
        return start_date + timedelta(days=14 * occurrence_index)
    if pattern == RecurrencePattern.MONTHLY:
        # Always measured from the base date so Jan 31 -> Feb 28 -> Mar 31
        return add_months(start_date, occurrence_index)
    return start_date + timedelta(days=max(1, int(interval or 1)) * occurrence_index)


def matches_days_of_week(day: date, days_of_week) -> bool:
    if not days_of_week:
        return True
    return weekday_of(day) in set(days_of_week)


def get_zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo((name or "UTC").strip() or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone: {name}") from None


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def local_to_utc_naive(day: date, minutes: int, tz_name: str | None) -> datetime:
    wall = datetime.combine(day, time.min) + timedelta(minutes=minutes)
    return to_utc_naive(wall.replace(tzinfo=get_zone(tz_name)))


def local_window_to_utc(
    day: date, start_hhmm: str, end_hhmm: str, tz_name: str | None
) -> tuple[datetime, datetime]:
    return (
        local_to_utc_naive(day, parse_hhmm(start_hhmm), tz_name),
        local_to_utc_naive(day, parse_hhmm(end_hhmm), tz_name),
    )


def utc_naive_to_local(value: datetime, tz_name: str | None) -> datetime:
    return value.replace(tzinfo=timezone.utc).astimezone(get_zone(tz_name)).replace(tzinfo=None)


def local_today(tz_name: str | None) -> date:
    return datetime.now(get_zone(tz_name)).date()
