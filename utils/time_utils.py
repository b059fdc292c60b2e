"""
Time utilities for the discharge follow-up scheduling system

Provides timezone-aware datetime handling so that preferred send times are
interpreted in the clinic's local timezone while everything persisted or
handed to the dispatch queue stays in UTC.
"""
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple

import pytz

logger = logging.getLogger("time-utils")

# Default timezone for the system (UTC)
SYSTEM_TIMEZONE = timezone.utc

# Clinic business hours used for the clinic-open flag (local time, Mon-Fri)
BUSINESS_START_HOUR = 9
BUSINESS_END_HOUR = 17


def now_utc() -> datetime:
    """
    Get current time in UTC

    Returns:
        Current datetime in UTC timezone
    """
    return datetime.now(SYSTEM_TIMEZONE)


def parse_iso_to_utc(iso_string: str) -> datetime:
    """
    Parse ISO datetime string to UTC datetime

    Args:
        iso_string: ISO format datetime string (a trailing "Z" is accepted)

    Returns:
        datetime object in UTC timezone

    Raises:
        ValueError: If the ISO string is invalid
    """
    try:
        if iso_string.endswith("Z"):
            iso_string = iso_string[:-1] + "+00:00"
        dt = datetime.fromisoformat(iso_string)

        # If naive datetime, assume UTC
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=SYSTEM_TIMEZONE)
        else:
            dt = dt.astimezone(SYSTEM_TIMEZONE)

        return dt
    except ValueError as e:
        logger.error(f"Failed to parse ISO datetime string '{iso_string}': {e}")
        raise


def parse_optional_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO string, treating None, "" and garbage as absent"""
    if not value:
        return None
    try:
        return parse_iso_to_utc(value)
    except ValueError:
        return None


def format_iso(dt: Optional[datetime]) -> Optional[str]:
    """Serialize an aware datetime as UTC ISO-8601, passing None through"""
    if dt is None:
        return None
    return ensure_utc(dt).isoformat()


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC"""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=SYSTEM_TIMEZONE)
    return dt.astimezone(SYSTEM_TIMEZONE)


def resolve_timezone(tz_name: Optional[str]):
    """
    Resolve a timezone name to a pytz timezone

    Unknown or empty names fall back to UTC with a warning.
    """
    if not tz_name:
        return pytz.UTC
    try:
        return pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        logger.warning(f"Unknown clinic timezone '{tz_name}', using UTC")
        return pytz.UTC


def to_clinic_timezone(dt: datetime, clinic_timezone: Optional[str] = 'UTC') -> datetime:
    """
    Convert a datetime to the clinic's local timezone

    Args:
        dt: Datetime to convert (naive values are treated as UTC)
        clinic_timezone: Target timezone name

    Returns:
        datetime object in the clinic's timezone
    """
    return ensure_utc(dt).astimezone(resolve_timezone(clinic_timezone))


def parse_time_of_day(value: Optional[str]) -> Tuple[int, int]:
    """Parse an "HH:MM" time, raising ValueError when malformed or out of range"""
    hours_str, minutes_str = (value or "").split(":")[:2]
    hours, minutes = int(hours_str), int(minutes_str)
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise ValueError(f"Out of range time '{value}'")
    return hours, minutes


def parse_preferred_time(value: Optional[str]) -> Tuple[int, int]:
    """
    Parse an "HH:MM" preferred send time

    Malformed values fall back to 10:00, matching the default used when a
    clinic never configured a time.
    """
    try:
        return parse_time_of_day(value)
    except ValueError as e:
        logger.warning(f"Invalid preferred time '{value}', using 10:00 ({e})")
        return 10, 0


def localize(local_date: date, local_time: time, clinic_timezone: Optional[str]) -> datetime:
    """Combine a clinic-local date and time into an aware UTC datetime"""
    tz = resolve_timezone(clinic_timezone)
    naive = datetime.combine(local_date, local_time)
    return tz.localize(naive).astimezone(SYSTEM_TIMEZONE)


def calculate_scheduled_time(
    case_created_at: datetime,
    delay_days: int,
    preferred_time: str,
    clinic_timezone: Optional[str] = 'UTC',
    now: Optional[datetime] = None
) -> datetime:
    """
    Calculate when a follow-up should be sent

    The target is the clinic-local calendar day ``delay_days`` after the case
    was created, at the clinic's preferred time of day. A target that is not
    in the future rolls forward one day at a time until it is.

    Args:
        case_created_at: When the case was created (UTC)
        delay_days: Days to wait after case creation
        preferred_time: "HH:MM" in the clinic's local time
        clinic_timezone: Clinic timezone name
        now: Reference time (defaults to now_utc())

    Returns:
        Scheduled instant in UTC
    """
    now = ensure_utc(now or now_utc())
    hours, minutes = parse_preferred_time(preferred_time)

    local_created = to_clinic_timezone(case_created_at, clinic_timezone)
    target_date = local_created.date() + timedelta(days=max(delay_days, 0))
    target = localize(target_date, time(hours, minutes), clinic_timezone)

    while target <= now:
        target_date += timedelta(days=1)
        target = localize(target_date, time(hours, minutes), clinic_timezone)

    return target


def is_within_business_hours(
    dt: datetime,
    clinic_timezone: Optional[str] = 'UTC',
    business_start: int = BUSINESS_START_HOUR,
    business_end: int = BUSINESS_END_HOUR
) -> bool:
    """Check whether a UTC instant falls inside clinic-local business hours"""
    local_dt = to_clinic_timezone(dt, clinic_timezone)
    if local_dt.weekday() >= 5:  # 5=Saturday, 6=Sunday
        return False
    return business_start <= local_dt.hour < business_end


def hours_between(earlier: datetime, later: datetime) -> float:
    """Elapsed hours between two instants"""
    return (ensure_utc(later) - ensure_utc(earlier)).total_seconds() / 3600
