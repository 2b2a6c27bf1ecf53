from datetime import date, datetime, timedelta, timezone

import pytest

from shiftbook.core.timewindow import (
    add_months,
    add_occurrence,
    duration_minutes,
    format_hhmm,
    get_zone,
    local_to_utc_naive,
    local_window_to_utc,
    matches_days_of_week,
    overlaps,
    parse_hhmm,
    to_utc_naive,
    utc_naive_to_local,
    weekday_of,
)
from shiftbook.errors import ValidationError


def test_overlaps_is_half_open():
    assert overlaps(9, 10, 9, 10)
    assert overlaps(9, 11, 10, 12)
    assert not overlaps(9, 10, 10, 11)
    assert not overlaps(10, 11, 9, 10)


def test_parse_and_format_hhmm():
    assert parse_hhmm("09:30") == 570
    assert parse_hhmm("9:05") == 545
    assert parse_hhmm("23:59") == 1439
    assert format_hhmm(570) == "09:30"
    for bad in ("24:00", "12:60", "noon", "", None):
        with pytest.raises(ValidationError):
            parse_hhmm(bad)


def test_duration_minutes_for_clock_strings_and_datetimes():
    assert duration_minutes("09:00", "17:00") == 480
    start = datetime(2030, 1, 1, 9, 0)
    assert duration_minutes(start, start + timedelta(minutes=45)) == 45
    with pytest.raises(ValidationError):
        duration_minutes("10:00", "10:00")


def test_weekday_of_starts_on_sunday():
    assert weekday_of(date(2030, 1, 6)) == 0  # Sunday
    assert weekday_of(date(2030, 1, 7)) == 1  # Monday
    assert weekday_of(date(2030, 1, 12)) == 6  # Saturday


def test_monthly_recurrence_clamps_to_month_end_from_base_date():
    base = date(2030, 1, 31)
    assert add_months(base, 1) == date(2030, 2, 28)
    assert add_occurrence(base, "MONTHLY", 1, 1) == date(2030, 2, 28)
    assert add_occurrence(base, "MONTHLY", 1, 2) == date(2030, 3, 31)
    assert add_occurrence(date(2031, 12, 15), "MONTHLY", 1, 1) == date(2032, 1, 15)


def test_add_occurrence_patterns():
    base = date(2030, 3, 4)
    assert add_occurrence(base, "DAILY", 1, 0) == base
    assert add_occurrence(base, "DAILY", 1, 3) == date(2030, 3, 7)
    assert add_occurrence(base, "WEEKLY", 1, 2) == date(2030, 3, 18)
    assert add_occurrence(base, "BI_WEEKLY", 1, 1) == date(2030, 3, 18)
    assert add_occurrence(base, "CUSTOM", 3, 2) == date(2030, 3, 10)


def test_matches_days_of_week_empty_means_any():
    monday = date(2030, 1, 7)
    assert matches_days_of_week(monday, None)
    assert matches_days_of_week(monday, [1, 3])
    assert not matches_days_of_week(monday, [0, 6])


def test_local_times_convert_through_org_timezone():
    start, end = local_window_to_utc(date(2030, 7, 1), "09:00", "17:00", "Europe/Warsaw")
    assert start == datetime(2030, 7, 1, 7, 0)
    assert end == datetime(2030, 7, 1, 15, 0)

    winter = local_to_utc_naive(date(2030, 1, 15), 9 * 60, "Europe/Warsaw")
    assert winter == datetime(2030, 1, 15, 8, 0)
    assert utc_naive_to_local(winter, "Europe/Warsaw") == datetime(2030, 1, 15, 9, 0)


def test_to_utc_naive_keeps_naive_values_and_converts_aware_ones():
    naive = datetime(2030, 1, 1, 12, 0)
    assert to_utc_naive(naive) is naive
    aware = datetime(2030, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
    assert to_utc_naive(aware) == datetime(2030, 1, 1, 10, 0)


def test_unknown_timezone_is_a_validation_error():
    with pytest.raises(ValidationError):
        get_zone("Mars/Olympus_Mons")
