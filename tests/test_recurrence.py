"""Tests for recurrence calculation."""

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from qcdispatch.engine.recurrence import (
    get_next_occurrence,
    next_occurrence,
    parse_cron,
    parse_weekday,
    validate_schedule,
)
from qcdispatch.utils.errors import ScheduleValidationError

UTC = ZoneInfo("UTC")


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=UTC)


def test_daily_adds_24_hours_across_boundaries():
    """Daily reminders advance exactly one day, across month and year ends."""
    for reference in (
        utc(2026, 1, 31, 19, 0),
        utc(2026, 2, 28, 8, 15),
        utc(2026, 12, 31, 22, 0),
        utc(2028, 2, 28, 23, 59, 30),
    ):
        assert next_occurrence("daily", {}, reference) == reference + timedelta(hours=24)


def test_daily_ignores_dst_in_schedule_zone():
    """Daily stays a fixed 24 hours even when the schedule zone changes offset."""
    reference = utc(2026, 3, 7, 23, 0)  # the evening before the US DST switch
    result = next_occurrence("daily", {"timezone": "America/New_York"}, reference)
    assert result == reference + timedelta(hours=24)


def test_weekly_days_of_week_same_week():
    """Mon/Wed at 19:00, referenced on Tuesday 10:00, lands on Wednesday 19:00."""
    tuesday = utc(2026, 3, 3, 10, 0)
    result = next_occurrence("weekly", {"days_of_week": [1, 3], "time_of_day": "19:00"}, tuesday)
    assert result == utc(2026, 3, 4, 19, 0)


def test_weekly_days_of_week_wraps_to_next_week():
    """Past the last listed day, the first listed day of next week is used."""
    friday_evening = utc(2026, 3, 6, 20, 0)
    result = next_occurrence(
        "weekly", {"days_of_week": ["monday", "friday"], "time_of_day": "19:00"}, friday_evening
    )
    assert result == utc(2026, 3, 9, 19, 0)


def test_weekly_same_day_later_time():
    """A listed weekday counts when its time is still ahead of the reference."""
    wednesday_morning = utc(2026, 3, 4, 10, 0)
    result = next_occurrence("weekly", {"days_of_week": [3], "time_of_day": "19:00"}, wednesday_morning)
    assert result == utc(2026, 3, 4, 19, 0)


def test_weekly_exact_reference_is_not_returned():
    """The result is strictly after the reference."""
    wednesday_evening = utc(2026, 3, 4, 19, 0)
    result = next_occurrence("weekly", {"days_of_week": [3], "time_of_day": "19:00"}, wednesday_evening)
    assert result == utc(2026, 3, 11, 19, 0)


def test_weekly_sunday_as_zero_or_seven():
    """Sunday can be written as 0, 7 or its name."""
    saturday = utc(2026, 3, 7, 12, 0)
    expected = utc(2026, 3, 8, 19, 0)
    for day in (0, 7, "sunday", "Sun"):
        assert next_occurrence("weekly", {"days_of_week": [day], "time_of_day": "19:00"}, saturday) == expected


def test_weekly_default_time_of_day():
    """Without a time of day, weekday schedules fire at 19:00."""
    tuesday = utc(2026, 3, 3, 10, 0)
    assert next_occurrence("weekly", {"days_of_week": [3]}, tuesday) == utc(2026, 3, 4, 19, 0)


def test_weekly_and_biweekly_fixed_interval():
    """Without listed weekdays, weekly adds 7 days and biweekly 14."""
    reference = utc(2026, 3, 3, 10, 0)
    assert next_occurrence("weekly", {}, reference) == reference + timedelta(weeks=1)
    assert next_occurrence("biweekly", {}, reference) == reference + timedelta(weeks=2)
    assert next_occurrence("weekly", {"days_of_week": []}, reference) == reference + timedelta(weeks=1)


def test_weekly_in_schedule_timezone():
    """Wall-clock fields are read in the schedule's zone, results are UTC."""
    tuesday = utc(2026, 3, 3, 10, 0)
    result = next_occurrence(
        "weekly",
        {"days_of_week": ["monday"], "time_of_day": "19:00", "timezone": "America/New_York"},
        tuesday,
    )
    # Monday March 9 is after the DST switch: 19:00 EDT = 23:00 UTC
    assert result == utc(2026, 3, 9, 23, 0)
    assert result.tzinfo == UTC


def test_monthly_clamps_to_end_of_february():
    """Day 31 in February lands on February's last day, not in March."""
    schedule = {"day_of_month": 31, "time_of_day": "12:00"}
    assert next_occurrence("monthly", schedule, utc(2026, 2, 10, 9, 0)) == utc(2026, 2, 28, 12, 0)
    assert next_occurrence("monthly", schedule, utc(2028, 2, 10, 9, 0)) == utc(2028, 2, 29, 12, 0)


def test_monthly_advances_one_calendar_month():
    """Once this month's day has passed, the next month's (clamped) day is used."""
    schedule = {"day_of_month": 31, "time_of_day": "12:00"}
    assert next_occurrence("monthly", schedule, utc(2026, 1, 31, 12, 0)) == utc(2026, 2, 28, 12, 0)
    assert next_occurrence("monthly", schedule, utc(2026, 2, 28, 12, 0)) == utc(2026, 3, 31, 12, 0)
    assert next_occurrence("monthly", {"day_of_month": 15}, utc(2026, 4, 20, 8, 30)) == utc(2026, 5, 15, 8, 30)


def test_monthly_without_day_keeps_reference_day():
    """Without a day of month the reference day is kept, clamped."""
    assert next_occurrence("monthly", {}, utc(2026, 1, 31, 7, 45)) == utc(2026, 2, 28, 7, 45)
    assert next_occurrence("monthly", {}, utc(2026, 3, 10, 7, 45)) == utc(2026, 4, 10, 7, 45)


def test_quarterly_and_yearly():
    """Quarterly adds three months, yearly twelve, with the same clamping."""
    assert next_occurrence("quarterly", {}, utc(2026, 1, 15, 8, 30)) == utc(2026, 4, 15, 8, 30)
    assert next_occurrence("yearly", {}, utc(2028, 2, 29, 8, 30)) == utc(2029, 2, 28, 8, 30)


def test_custom_interval():
    """Interval schedules add amount x unit."""
    reference = utc(2026, 3, 3, 10, 0)
    assert next_occurrence(
        "custom", {"type": "interval", "amount": 3, "unit": "hours"}, reference
    ) == utc(2026, 3, 3, 13, 0)
    assert next_occurrence(
        "custom", {"type": "interval", "interval": 45, "unit": "minutes"}, reference
    ) == utc(2026, 3, 3, 10, 45)
    assert next_occurrence(
        "custom", {"type": "interval", "amount": 1, "unit": "months"}, utc(2026, 1, 31, 10, 0)
    ) == utc(2026, 2, 28, 10, 0)


def test_custom_cron():
    """Cron schedules resolve minute, hour and day-of-week fields."""
    tuesday = utc(2026, 3, 3, 10, 7)
    assert next_occurrence(
        "custom", {"type": "cron", "expression": "0 19 * * 1,3"}, tuesday
    ) == utc(2026, 3, 4, 19, 0)
    assert next_occurrence(
        "custom", {"type": "cron", "expression": "*/15 * * * *"}, tuesday
    ) == utc(2026, 3, 3, 10, 15)
    assert next_occurrence(
        "custom", {"type": "cron", "expression": "30 9-17 * * *"}, utc(2026, 3, 3, 18, 0)
    ) == utc(2026, 3, 4, 9, 30)


def test_custom_rrule():
    """Raw RRULE strings are supported as a custom schedule."""
    result = next_occurrence(
        "custom", {"type": "rrule", "rrule": "FREQ=MONTHLY;BYMONTHDAY=1"}, utc(2026, 3, 15, 9, 0)
    )
    assert result == utc(2026, 4, 1, 9, 0)


def test_get_next_occurrence_keeps_timezone():
    """RRULE expansion keeps the reference's timezone."""
    due_at = utc(2026, 3, 1, 9, 0)
    result = get_next_occurrence(due_at, "FREQ=WEEKLY")
    assert result == utc(2026, 3, 8, 9, 0)
    assert result.tzinfo == UTC


def test_custom_conditional_uses_predicate():
    """The first candidate the predicate accepts is returned."""
    reference = utc(2026, 3, 3, 10, 0)
    result = next_occurrence(
        "custom",
        {"type": "conditional", "check_every": "1h"},
        reference,
        predicate=lambda instant: instant.hour == 14,
    )
    assert result == utc(2026, 3, 3, 14, 0)


def test_custom_conditional_daily_time_candidates():
    """With a time of day, candidates are that time on each following day."""
    reference = utc(2026, 3, 3, 10, 0)
    result = next_occurrence(
        "custom",
        {"type": "conditional", "time_of_day": "19:00"},
        reference,
        predicate=lambda instant: instant.weekday() == 4,  # Friday
    )
    assert result == utc(2026, 3, 6, 19, 0)


def test_custom_conditional_unsatisfiable():
    """No accepted candidate within the horizon (or no predicate) gives None."""
    reference = utc(2026, 3, 3, 10, 0)
    schedule = {"type": "conditional", "check_every": "1h", "horizon_days": 2}
    assert next_occurrence("custom", schedule, reference, predicate=lambda instant: False) is None
    assert next_occurrence("custom", schedule, reference) is None


def test_once_never_recurs():
    """One-time reminders have no next occurrence."""
    assert next_occurrence("once", {}, utc(2026, 3, 3, 10, 0)) is None


def test_naive_reference_is_treated_as_utc():
    """Naive references are interpreted as UTC."""
    result = next_occurrence("daily", {}, datetime(2026, 3, 3, 10, 0))
    assert result == utc(2026, 3, 4, 10, 0)


def test_parse_weekday():
    """Weekday names and numbers normalize to 0 (Sunday) .. 6."""
    assert parse_weekday("Monday") == 1
    assert parse_weekday("sat") == 6
    assert parse_weekday(7) == 0
    with pytest.raises(ScheduleValidationError):
        parse_weekday("funday")
    with pytest.raises(ScheduleValidationError):
        parse_weekday(8)


def test_parse_cron_fields():
    """Cron fields expand lists, ranges and steps."""
    fields = parse_cron("0,30 9-11 * * 1-5")
    assert fields["minutes"] == [0, 30]
    assert fields["hours"] == [9, 10, 11]
    assert fields["weekdays"] == [1, 2, 3, 4, 5]
    assert parse_cron("* * * * *") == {"minutes": None, "hours": None, "weekdays": None}


@pytest.mark.parametrize(
    "frequency,schedule",
    [
        ("hourly", {}),
        ("weekly", {"days_of_week": ["funday"]}),
        ("weekly", {"days_of_week": "monday"}),
        ("weekly", {"days_of_week": [1], "time_of_day": "7:00 PM"}),
        ("weekly", {"time_of_day": "24:00"}),
        ("monthly", {"day_of_month": 35}),
        ("monthly", {"day_of_month": 0}),
        ("daily", {"timezone": "Mars/Olympus_Mons"}),
        ("custom", {}),
        ("custom", {"type": "sometimes"}),
        ("custom", {"type": "interval", "amount": 0, "unit": "hours"}),
        ("custom", {"type": "interval", "amount": 2, "unit": "fortnights"}),
        ("custom", {"type": "cron", "expression": "0 19 * *"}),
        ("custom", {"type": "cron", "expression": "0 19 1 * *"}),
        ("custom", {"type": "cron", "expression": "61 19 * * *"}),
        ("custom", {"type": "cron", "expression": "*/0 * * * *"}),
        ("custom", {"type": "rrule"}),
        ("custom", {"type": "conditional", "check_every": "soon"}),
    ],
)
def test_validate_schedule_rejects_malformed(frequency, schedule):
    """Malformed descriptors raise ScheduleValidationError."""
    with pytest.raises(ScheduleValidationError):
        validate_schedule(frequency, schedule)
    with pytest.raises(ScheduleValidationError):
        next_occurrence(frequency, schedule, utc(2026, 3, 3, 10, 0))


def test_validate_schedule_accepts_well_formed():
    """Valid descriptors pass validation."""
    validate_schedule("weekly", {"days_of_week": ["monday", 3, 7], "time_of_day": "7:05"})
    validate_schedule("monthly", {"day_of_month": 31, "time": "12:00"})
    validate_schedule("custom", {"type": "interval", "amount": 3, "unit": "hours"})
    validate_schedule("custom", {"type": "cron", "expression": "*/10 8-20 * * 0,6"})
    validate_schedule("custom", {"type": "conditional", "check_every": "15m", "horizon_days": 7})
    validate_schedule("once", None)
