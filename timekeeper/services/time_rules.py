"""
Time rules and timezone helpers.
Handles late-arrival arithmetic, session durations, and timezone conversions.
"""
from datetime import date, datetime, time, timedelta
from typing import Optional, Union

import pytz

SECONDS_PER_HOUR = 3600


def get_timezone(timezone_str: Optional[str]):
    """
    Return a pytz timezone for a name, or None if the name is unknown.

    Args:
        timezone_str: IANA timezone name (e.g., "Asia/Kolkata")
    """
    if not timezone_str:
        return None
    try:
        return pytz.timezone(timezone_str)
    except pytz.UnknownTimeZoneError:
        return None


def is_valid_timezone(timezone_str: Optional[str]) -> bool:
    return get_timezone(timezone_str) is not None


def utc_to_local(utc_datetime: datetime, timezone_str: str) -> datetime:
    """
    Convert UTC datetime to local timezone.

    Args:
        utc_datetime: UTC datetime (timezone-aware or naive UTC)
        timezone_str: Timezone string (e.g., "America/Vancouver")

    Returns:
        Local datetime (timezone-aware); unchanged UTC if the name is unknown
    """
    if utc_datetime.tzinfo is None:
        utc_datetime = utc_datetime.replace(tzinfo=pytz.UTC)
    tz = get_timezone(timezone_str)
    if tz is None:
        return utc_datetime.astimezone(pytz.UTC)
    return utc_datetime.astimezone(tz)


def local_wall_clock(utc_datetime: datetime, timezone_str: str) -> datetime:
    """Naive local wall-clock time, the representation sessions are stored in."""
    return utc_to_local(utc_datetime, timezone_str).replace(tzinfo=None)


def minutes_of_day(value: Union[datetime, time]) -> int:
    return value.hour * 60 + value.minute


def late_minutes(arrival: Union[datetime, time], shift_start: time) -> int:
    """Whole minutes past shift start, never negative."""
    return max(0, minutes_of_day(arrival) - minutes_of_day(shift_start))


def hours_between(start: datetime, end: datetime) -> float:
    """Duration in hours, clamped at zero for reversed or equal timestamps."""
    seconds = (end - start).total_seconds()
    return max(0.0, seconds / SECONDS_PER_HOUR)


def overtime_hours(total_hours: float, threshold_hours: float) -> float:
    return max(0.0, total_hours - threshold_hours)


def combine_local(date_val: date, time_val: time) -> datetime:
    """Naive local datetime for a local date and wall-clock time."""
    return datetime.combine(date_val, time_val)


def previous_day(date_val: date) -> date:
    return date_val - timedelta(days=1)
