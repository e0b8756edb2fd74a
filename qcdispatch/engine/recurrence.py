"""Recurrence handling: next occurrence for every reminder frequency.

Everything here is pure. Wall-clock fields in a schedule (``time_of_day``,
``days_of_week``, cron hours) are read in the schedule's ``timezone``
(default UTC); results are always returned in UTC.

Schedule descriptors (``custom_schedule``):

    weekly/biweekly   {"days_of_week": ["monday", 3], "time_of_day": "19:00"}
    monthly           {"day_of_month": 31, "time_of_day": "12:00"}
    custom interval   {"type": "interval", "amount": 3, "unit": "hours"}
    custom cron       {"type": "cron", "expression": "0 19 * * 1,3"}
    custom rrule      {"type": "rrule", "rrule": "FREQ=MONTHLY;BYMONTHDAY=1"}
    custom conditional {"type": "conditional", "check_every": "1h", "horizon_days": 14}

Weekday numbers start at 0 for Sunday (7 is also Sunday).
"""

import logging
import re
from datetime import datetime, time, timedelta
from typing import Any, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.relativedelta import relativedelta
from dateutil.rrule import DAILY, FR, MO, SA, SU, TH, TU, WE, rrule, rrulestr

from qcdispatch.utils.constants import DEFAULT_TIME_OF_DAY, FREQUENCIES
from qcdispatch.utils.errors import ScheduleValidationError
from qcdispatch.utils.time_utils import UTC, from_utc, parse_time_of_day, to_utc

logger = logging.getLogger(__name__)

Predicate = Callable[[datetime], bool]

# Indexed by Sunday-based weekday number
_RRULE_WEEKDAYS = (SU, MO, TU, WE, TH, FR, SA)

WEEKDAY_NAMES = {
    "sunday": 0,
    "sun": 0,
    "monday": 1,
    "mon": 1,
    "tuesday": 2,
    "tue": 2,
    "wednesday": 3,
    "wed": 3,
    "thursday": 4,
    "thu": 4,
    "friday": 5,
    "fri": 5,
    "saturday": 6,
    "sat": 6,
}

INTERVAL_UNITS = ("minutes", "hours", "days", "weeks", "months")

CUSTOM_TYPES = ("interval", "cron", "rrule", "conditional")

# Calendar steps for frequencies that advance by months
_MONTH_STEPS = {"monthly": 1, "quarterly": 3, "yearly": 12}

_CHECK_EVERY = re.compile(r"^(\d+)\s*(m|min|minutes?|h|hours?|d|days?)$")

DEFAULT_CHECK_EVERY = timedelta(hours=1)
DEFAULT_HORIZON = timedelta(days=30)


def parse_rrule(rrule_str: str) -> rrule:
    """Parse an RRULE string into an rrule object."""
    return rrulestr(rrule_str)


def get_next_occurrence(due_at: datetime, rrule_str: str) -> datetime:
    """Get the next occurrence after due_at based on RRULE.

    Args:
        due_at: Current due date (timezone-aware)
        rrule_str: RRULE string (e.g., "FREQ=MONTHLY;BYMONTHDAY=1")

    Returns:
        Next occurrence as timezone-aware datetime

    Raises:
        ValueError: if the rule has no occurrence after due_at
    """
    rule = parse_rrule(f"DTSTART:{due_at.strftime('%Y%m%dT%H%M%S')}\nRRULE:{rrule_str}")

    # rrulestr yields naive datetimes; compare in due_at's wall clock
    naive_due = due_at.replace(tzinfo=None)
    next_date = rule.after(naive_due)

    if next_date is None:
        raise ValueError("No next occurrence found")

    return next_date.replace(tzinfo=due_at.tzinfo)


def parse_weekday(value: Any) -> int:
    """Normalize a weekday name or number to 0 (Sunday) .. 6 (Saturday)."""
    if isinstance(value, bool):
        raise ScheduleValidationError(f"Invalid day of week: {value!r}")
    if isinstance(value, int):
        if 0 <= value <= 7:
            return value % 7
        raise ScheduleValidationError(f"Invalid day of week: {value!r}")
    day = WEEKDAY_NAMES.get(str(value).strip().lower())
    if day is None:
        raise ScheduleValidationError(f"Invalid day of week: {value!r}")
    return day


def parse_check_every(value: Any) -> timedelta:
    """Parse a conditional schedule's granularity ("15m", "1h", "1d" or minutes)."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if value <= 0:
            raise ScheduleValidationError("check_every must be positive")
        return timedelta(minutes=value)

    match = _CHECK_EVERY.match(str(value).strip().lower())
    if not match or int(match.group(1)) == 0:
        raise ScheduleValidationError(f"Invalid check_every: {value!r}")

    amount = int(match.group(1))
    unit = match.group(2)[0]
    if unit == "m":
        return timedelta(minutes=amount)
    if unit == "h":
        return timedelta(hours=amount)
    return timedelta(days=amount)


def _parse_cron_field(field: str, low: int, high: int, name: str) -> list[int] | None:
    """Parse one cron field into sorted values, or None for "*"."""
    if field == "*":
        return None

    values: set[int] = set()
    for part in field.split(","):
        step = 1
        if "/" in part:
            part, step_str = part.split("/", 1)
            if not step_str.isdigit() or int(step_str) == 0:
                raise ScheduleValidationError(f"Invalid step in cron {name} field: {field!r}")
            step = int(step_str)

        if part == "*":
            start, end = low, high
        elif "-" in part:
            start_str, end_str = part.split("-", 1)
            if not (start_str.isdigit() and end_str.isdigit()):
                raise ScheduleValidationError(f"Invalid range in cron {name} field: {field!r}")
            start, end = int(start_str), int(end_str)
        elif part.isdigit():
            start = end = int(part)
            if step != 1:
                end = high
        else:
            raise ScheduleValidationError(f"Invalid cron {name} field: {field!r}")

        if start < low or end > high or start > end:
            raise ScheduleValidationError(
                f"Cron {name} field out of range {low}-{high}: {field!r}"
            )
        values.update(range(start, end + 1, step))

    return sorted(values)


def parse_cron(expression: str) -> dict[str, list[int] | None]:
    """Parse the supported cron subset: ``minute hour * * day-of-week``.

    Day-of-month and month must be ``*``. Day-of-week uses 0-7 with
    Sunday as 0 and 7.
    """
    fields = str(expression).split()
    if len(fields) != 5:
        raise ScheduleValidationError(
            f"Cron expression must have 5 fields, got {len(fields)}: {expression!r}"
        )

    minute, hour, day_of_month, month, day_of_week = fields
    if day_of_month != "*" or month != "*":
        raise ScheduleValidationError(
            f"Only minute, hour and day-of-week cron fields are supported: {expression!r}"
        )

    weekdays = _parse_cron_field(day_of_week, 0, 7, "day-of-week")
    return {
        "minutes": _parse_cron_field(minute, 0, 59, "minute"),
        "hours": _parse_cron_field(hour, 0, 23, "hour"),
        "weekdays": sorted({day % 7 for day in weekdays}) if weekdays is not None else None,
    }


def _schedule_zone(schedule: dict[str, Any]) -> ZoneInfo:
    name = schedule.get("timezone") or "UTC"
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ScheduleValidationError(f"Unknown timezone: {name!r}") from e


def _time_of_day(schedule: dict[str, Any], default: time | None = None) -> time | None:
    value = schedule.get("time_of_day") or schedule.get("time")
    if value is None:
        return default
    return parse_time_of_day(value)


def validate_schedule(frequency: str, custom_schedule: dict[str, Any] | None) -> None:
    """Check a frequency and its schedule descriptor.

    Raises:
        ScheduleValidationError: if the descriptor cannot produce occurrences
    """
    if frequency not in FREQUENCIES:
        raise ScheduleValidationError(f"Unknown frequency: {frequency!r}")

    schedule = custom_schedule or {}
    if not isinstance(schedule, dict):
        raise ScheduleValidationError("Custom schedule must be a mapping")

    _schedule_zone(schedule)
    _time_of_day(schedule)

    days = schedule.get("days_of_week")
    if days is not None:
        if not isinstance(days, (list, tuple)):
            raise ScheduleValidationError("Days of week must be provided as a list")
        if len(days) > 7:
            raise ScheduleValidationError("Cannot select more than 7 days of the week")
        for day in days:
            parse_weekday(day)

    day_of_month = schedule.get("day_of_month")
    if day_of_month is not None:
        if isinstance(day_of_month, bool) or not isinstance(day_of_month, int):
            raise ScheduleValidationError("Day of month must be a number")
        if not 1 <= day_of_month <= 31:
            raise ScheduleValidationError("Day of month must be between 1 and 31")

    if frequency != "custom":
        return

    kind = schedule.get("type")
    if kind not in CUSTOM_TYPES:
        raise ScheduleValidationError(f"Unknown custom schedule type: {kind!r}")

    if kind == "interval":
        amount = schedule.get("amount", schedule.get("interval"))
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ScheduleValidationError(f"Interval amount must be a positive integer, got {amount!r}")
        if schedule.get("unit") not in INTERVAL_UNITS:
            raise ScheduleValidationError(
                f"Interval unit must be one of {', '.join(INTERVAL_UNITS)}, got {schedule.get('unit')!r}"
            )
    elif kind == "cron":
        parse_cron(schedule.get("expression", ""))
    elif kind == "rrule":
        rule = schedule.get("rrule")
        if not rule:
            raise ScheduleValidationError("rrule schedule needs an 'rrule' string")
        try:
            parse_rrule(f"DTSTART:20000101T000000\nRRULE:{rule}")
        except (ValueError, TypeError) as e:
            raise ScheduleValidationError(f"Invalid RRULE {rule!r}: {e}") from e
    elif kind == "conditional":
        if "check_every" in schedule:
            parse_check_every(schedule["check_every"])
        horizon = schedule.get("horizon_days")
        if horizon is not None and (
            isinstance(horizon, bool) or not isinstance(horizon, int) or horizon <= 0
        ):
            raise ScheduleValidationError("horizon_days must be a positive integer")


def next_occurrence(
    frequency: str,
    custom_schedule: dict[str, Any] | None,
    reference_time: datetime,
    predicate: Predicate | None = None,
) -> datetime | None:
    """Get the next occurrence strictly after reference_time.

    Args:
        frequency: Reminder frequency
        custom_schedule: Schedule descriptor (may be empty)
        reference_time: Usually the last trigger time (naive values are UTC)
        predicate: Decides candidate instants for conditional schedules

    Returns:
        Next occurrence in UTC, or None if the reminder does not recur

    Raises:
        ScheduleValidationError: if the schedule descriptor is malformed
    """
    schedule = custom_schedule or {}
    validate_schedule(frequency, schedule)

    reference = to_utc(reference_time)
    zone = _schedule_zone(schedule)
    local = from_utc(reference, zone.key)

    if frequency == "once":
        return None

    if frequency == "daily":
        # Fixed 24 hours, regardless of calendar or DST boundaries
        return reference + timedelta(days=1)

    if frequency in ("weekly", "biweekly"):
        weeks = 1 if frequency == "weekly" else 2
        days = schedule.get("days_of_week")
        if days:
            at = _time_of_day(schedule, parse_time_of_day(DEFAULT_TIME_OF_DAY))
            result = _next_listed_weekday(local, [parse_weekday(day) for day in days], at)
            if result is not None:
                return result.astimezone(UTC)
        return reference + timedelta(weeks=weeks)

    if frequency in _MONTH_STEPS:
        return _next_calendar_step(local, _MONTH_STEPS[frequency], schedule).astimezone(UTC)

    return _next_custom(schedule, local, zone, predicate)


def _next_listed_weekday(local: datetime, weekdays: list[int], at: time) -> datetime | None:
    """Soonest listed weekday at the given time strictly after local."""
    rule = rrule(
        DAILY,
        byweekday=[_RRULE_WEEKDAYS[day] for day in set(weekdays)],
        byhour=at.hour,
        byminute=at.minute,
        bysecond=0,
        dtstart=local.replace(hour=0, minute=0, second=0, microsecond=0),
    )
    return rule.after(local)


def _next_calendar_step(local: datetime, months: int, schedule: dict[str, Any]) -> datetime:
    """Advance by whole months, clamping the day to the target month's length.

    A monthly reminder pinned to a day of the month fires on that day of the
    reference month when it is still ahead, so a reference in February with
    day 31 lands on February's last day.
    """
    at = _time_of_day(schedule, local.time())
    day_of_month = schedule.get("day_of_month")

    if day_of_month is not None and months == 1:
        # relativedelta(day=31) clamps to the month's last day
        this_month = (local + relativedelta(day=day_of_month)).replace(
            hour=at.hour, minute=at.minute, second=0, microsecond=0
        )
        if this_month > local:
            return this_month

    target = local + relativedelta(months=months)
    if day_of_month is not None:
        target = target + relativedelta(day=day_of_month)

    return target.replace(hour=at.hour, minute=at.minute, second=0, microsecond=0)


def _next_custom(
    schedule: dict[str, Any],
    local: datetime,
    zone: ZoneInfo,
    predicate: Predicate | None,
) -> datetime | None:
    kind = schedule["type"]

    if kind == "interval":
        amount = schedule.get("amount", schedule.get("interval"))
        if schedule["unit"] == "months":
            return (local + relativedelta(months=amount)).astimezone(UTC)
        return local.astimezone(UTC) + timedelta(**{schedule["unit"]: amount})

    if kind == "cron":
        return _next_cron(parse_cron(schedule["expression"]), local)

    if kind == "rrule":
        try:
            return get_next_occurrence(local, schedule["rrule"]).astimezone(UTC)
        except ValueError:
            return None

    return _next_conditional(schedule, local, zone, predicate)


def _next_cron(fields: dict[str, list[int] | None], local: datetime) -> datetime | None:
    weekdays = fields["weekdays"]
    rule = rrule(
        DAILY,
        byweekday=[_RRULE_WEEKDAYS[day] for day in weekdays] if weekdays is not None else None,
        byhour=fields["hours"] if fields["hours"] is not None else range(24),
        byminute=fields["minutes"] if fields["minutes"] is not None else range(60),
        bysecond=0,
        dtstart=local.replace(hour=0, minute=0, second=0, microsecond=0),
    )
    result = rule.after(local)
    return result.astimezone(UTC) if result else None


def _next_conditional(
    schedule: dict[str, Any],
    local: datetime,
    zone: ZoneInfo,
    predicate: Predicate | None,
) -> datetime | None:
    """First candidate instant the predicate accepts, or None within the horizon."""
    if predicate is None:
        logger.warning("Conditional schedule evaluated without a predicate")
        return None

    step = parse_check_every(schedule.get("check_every", "1h"))
    horizon = timedelta(days=schedule["horizon_days"]) if "horizon_days" in schedule else DEFAULT_HORIZON
    at = _time_of_day(schedule)

    if at is not None:
        # Daily candidates at the given wall-clock time
        rule = rrule(
            DAILY,
            byhour=at.hour,
            byminute=at.minute,
            bysecond=0,
            dtstart=local.replace(hour=0, minute=0, second=0, microsecond=0),
        )
        candidates = rule.between(local, local + horizon)
    else:
        first = local.replace(second=0, microsecond=0) + step
        count = int(horizon / step)
        candidates = [first + step * i for i in range(count)]

    for candidate in candidates:
        instant = candidate.astimezone(UTC)
        if predicate(instant):
            return instant

    return None
