"""Time and timezone utilities."""

import re
from datetime import datetime, time, timedelta
from zoneinfo import ZoneInfo

from qcdispatch.utils.errors import ScheduleValidationError

UTC = ZoneInfo("UTC")

_TIME_OF_DAY = re.compile(r"^([01]?[0-9]|2[0-3]):([0-5][0-9])$")


def utcnow() -> datetime:
    """Current time, timezone-aware UTC."""
    return datetime.now(UTC)


def to_utc(dt: datetime, tz: str = "UTC") -> datetime:
    """Convert a datetime to UTC, treating naive values as local to tz."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=ZoneInfo(tz))
    return dt.astimezone(UTC)


def from_utc(dt: datetime, tz: str) -> datetime:
    """Convert a UTC datetime to the given timezone."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(ZoneInfo(tz))


def parse_time_of_day(value: str) -> time:
    """Parse an HH:MM (24-hour) string.

    Raises:
        ScheduleValidationError: if the value is not a valid time of day
    """
    match = _TIME_OF_DAY.match(str(value).strip())
    if not match:
        raise ScheduleValidationError(
            f"Time must be in 24-hour format (HH:MM), got {value!r}"
        )
    return time(int(match.group(1)), int(match.group(2)))


def to_storage(dt: datetime | None) -> str | None:
    """Serialize a datetime for the store.

    Always UTC with microseconds so stored values compare correctly as text.
    """
    if dt is None:
        return None
    return to_utc(dt).isoformat(timespec="microseconds")


def from_storage(value: str | None) -> datetime | None:
    """Parse a stored timestamp back into an aware UTC datetime."""
    if not value:
        return None
    return to_utc(datetime.fromisoformat(value))


def format_duration(delta: timedelta) -> str:
    """Format a timedelta into a human-readable duration.

    Examples:
        5s -> "5 seconds"
        2min -> "2 minutes"
        90min -> "1.5 hours"
        1 day -> "1 day"
    """
    seconds = int(delta.total_seconds())
    if seconds < 60:
        return f"{seconds} second{'s' if seconds != 1 else ''}"

    minutes = seconds / 60
    if minutes < 60:
        if minutes == int(minutes):
            return f"{int(minutes)} minute{'s' if minutes != 1 else ''}"
        return f"{minutes:.1f} minutes"

    hours = minutes / 60
    if hours < 24:
        if hours == int(hours):
            return f"{int(hours)} hour{'s' if hours != 1 else ''}"
        return f"{hours:.1f} hours"

    days = hours / 24
    if days == int(days):
        return f"{int(days)} day{'s' if days != 1 else ''}"
    return f"{days:.1f} days"
