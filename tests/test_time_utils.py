"""Tests for time utilities."""

from datetime import datetime, time, timedelta
from zoneinfo import ZoneInfo

import pytest

from qcdispatch.utils.errors import ScheduleValidationError
from qcdispatch.utils.time_utils import (
    format_duration,
    from_storage,
    from_utc,
    parse_time_of_day,
    to_storage,
    to_utc,
)


def test_to_utc():
    """Test timezone conversion to UTC."""
    # Create a datetime in EDT (March is DST)
    dt = datetime(2026, 3, 15, 14, 30, tzinfo=ZoneInfo("America/New_York"))
    utc_dt = to_utc(dt, "America/New_York")

    assert utc_dt.tzinfo == ZoneInfo("UTC")
    # EDT is UTC-4, so 14:30 EDT = 18:30 UTC
    assert utc_dt.hour == 18


def test_to_utc_naive_uses_given_zone():
    """Naive datetimes are read in the given zone."""
    utc_dt = to_utc(datetime(2026, 1, 15, 9, 0), "Europe/Berlin")
    assert utc_dt.hour == 8  # CET is UTC+1


def test_from_utc():
    """Test timezone conversion from UTC."""
    dt = datetime(2026, 3, 15, 19, 30, tzinfo=ZoneInfo("UTC"))
    edt_dt = from_utc(dt, "America/New_York")

    assert edt_dt.tzinfo == ZoneInfo("America/New_York")
    assert edt_dt.hour == 15  # 19:30 UTC = 15:30 EDT


def test_parse_time_of_day():
    """HH:MM strings parse into times."""
    assert parse_time_of_day("19:00") == time(19, 0)
    assert parse_time_of_day("7:05") == time(7, 5)
    assert parse_time_of_day(" 23:59 ") == time(23, 59)

    for bad in ("7:00 PM", "24:00", "12:60", "noon", ""):
        with pytest.raises(ScheduleValidationError):
            parse_time_of_day(bad)


def test_storage_round_trip_and_ordering():
    """Stored timestamps are UTC text that sorts chronologically."""
    berlin = datetime(2026, 3, 15, 10, 0, tzinfo=ZoneInfo("Europe/Berlin"))
    stored = to_storage(berlin)

    assert stored == "2026-03-15T09:00:00.000000+00:00"
    assert from_storage(stored) == berlin
    assert to_storage(None) is None
    assert from_storage(None) is None

    earlier = to_storage(datetime(2026, 3, 15, 9, 0, 0, 999999, tzinfo=ZoneInfo("UTC")))
    later = to_storage(datetime(2026, 3, 15, 9, 0, 1, tzinfo=ZoneInfo("UTC")))
    assert earlier < later


def test_format_duration():
    """Test duration formatting."""
    assert format_duration(timedelta(seconds=5)) == "5 seconds"
    assert format_duration(timedelta(seconds=1)) == "1 second"
    assert format_duration(timedelta(seconds=30)) == "30 seconds"
    assert format_duration(timedelta(minutes=2)) == "2 minutes"
    assert format_duration(timedelta(minutes=90)) == "1.5 hours"
    assert format_duration(timedelta(hours=24)) == "1 day"
    assert format_duration(timedelta(days=3)) == "3 days"
