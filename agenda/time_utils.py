"""
Date/time helpers for appointment scheduling.

Appointments are stored as a calendar date plus wall-clock start/end times in
the business's fixed timezone. These helpers keep that representation intact:
dates are parsed as plain calendar dates (anchored at local noon when a
timestamp is needed) so converting to UTC never shifts the day.

All functions are pure; "now" is injectable for testing.
"""

import re
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .core.errors import ParseError

DATE_PATTERN = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
TIME_PATTERN = re.compile(r"^(\d{2}):(\d{2})(?::(\d{2}))?$")

LOCAL_NOON = time(12, 0)


def parse_local_date(value: str | date) -> date:
    """
    Parse a YYYY-MM-DD string into a calendar date.

    A `date` instance is returned unchanged. Raises ParseError on missing or
    malformed input.
    """
    if isinstance(value, datetime):
        raise ParseError("Expected a calendar date, got a datetime", value)
    if isinstance(value, date):
        return value
    if not value or not isinstance(value, str):
        raise ParseError("Date is required", value)

    match = DATE_PATTERN.match(value.strip())
    if not match:
        raise ParseError(f"Invalid date '{value}'. Use YYYY-MM-DD", value)

    year, month, day = (int(part) for part in match.groups())
    try:
        return date(year, month, day)
    except ValueError:
        raise ParseError(f"Invalid date '{value}'", value)


def parse_time(value: str | time) -> time:
    """Parse HH:MM or HH:MM:SS (24-hour) into a time."""
    if isinstance(value, time):
        return value
    if not value or not isinstance(value, str):
        raise ParseError("Time is required", value)

    match = TIME_PATTERN.match(value.strip())
    if not match:
        raise ParseError(f"Invalid time '{value}'. Use HH:MM", value)

    hour, minute = int(match.group(1)), int(match.group(2))
    second = int(match.group(3) or 0)
    try:
        return time(hour, minute, second)
    except ValueError:
        raise ParseError(f"Invalid time '{value}'", value)


def resolve_timezone(name: Optional[str | tzinfo]) -> tzinfo:
    """Return a tzinfo for an IANA name; None means UTC."""
    if name is None:
        return timezone.utc
    if isinstance(name, tzinfo):
        return name
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ParseError(f"Unknown timezone '{name}'", name)


def local_noon(value: str | date, tz: Optional[str | tzinfo] = None) -> datetime:
    """Anchor a calendar date at 12:00 local time."""
    return datetime.combine(parse_local_date(value), LOCAL_NOON, tzinfo=resolve_timezone(tz))


def combine_local(
    value: str | date,
    at: str | time,
    tz: Optional[str | tzinfo] = None,
) -> datetime:
    """Combine a date and wall-clock time into an aware datetime."""
    return datetime.combine(parse_local_date(value), parse_time(at), tzinfo=resolve_timezone(tz))


def _now(now: Optional[datetime], tz: tzinfo) -> datetime:
    if now is None:
        return datetime.now(tz)
    if now.tzinfo is None:
        return now.replace(tzinfo=tz)
    return now


def has_started(
    value: str | date,
    at: str | time,
    *,
    now: Optional[datetime] = None,
    tz: Optional[str | tzinfo] = None,
) -> bool:
    """True iff the appointment start (date + time) is at or before now."""
    zone = resolve_timezone(tz)
    return combine_local(value, at, zone) <= _now(now, zone)


def minutes_until(
    value: str | date,
    at: str | time,
    *,
    now: Optional[datetime] = None,
    tz: Optional[str | tzinfo] = None,
) -> int:
    """Whole minutes until the start; negative once it has passed."""
    zone = resolve_timezone(tz)
    delta = combine_local(value, at, zone) - _now(now, zone)
    return int(delta.total_seconds() // 60)


def describe_time_status(
    value: str | date,
    at: str | time,
    *,
    now: Optional[datetime] = None,
    tz: Optional[str | tzinfo] = None,
) -> str:
    """Short human description of how far the start is from now."""
    minutes = minutes_until(value, at, now=now, tz=tz)

    if minutes > 60:
        hours = minutes // 60
        return f"Starts in {hours} {'hour' if hours == 1 else 'hours'}"
    if minutes > 0:
        return f"Starts in {minutes} {'minute' if minutes == 1 else 'minutes'}"
    if minutes == 0:
        return "Starting now"
    if minutes > -60:
        ago = abs(minutes)
        return f"Started {ago} {'minute' if ago == 1 else 'minutes'} ago"
    hours = abs(minutes) // 60
    return f"Started {hours} {'hour' if hours == 1 else 'hours'} ago"


def format_date_string(value: date) -> str:
    """Format a date as YYYY-MM-DD."""
    return value.strftime("%Y-%m-%d")


def format_time_string(value: time) -> str:
    """Format a time as HH:MM."""
    return value.strftime("%H:%M")


def add_minutes(at: time, minutes: int) -> time:
    """
    Shift a wall-clock time by a number of minutes within the same day.

    Raises ParseError if the result would cross midnight.
    """
    start = datetime.combine(date.min, at)
    shifted = start + timedelta(minutes=minutes)
    if shifted.date() != date.min:
        raise ParseError(f"{format_time_string(at)} + {minutes} minutes crosses midnight", at)
    return shifted.time()


def minutes_between(start: time, end: time) -> int:
    return (end.hour * 60 + end.minute) - (start.hour * 60 + start.minute)


def month_bounds(value: date) -> tuple[date, date]:
    """First day of the month and first day of the following month."""
    first = value.replace(day=1)
    if first.month == 12:
        return first, first.replace(year=first.year + 1, month=1)
    return first, first.replace(month=first.month + 1)


def today_in(tz: Optional[str | tzinfo] = None, now: Optional[datetime] = None) -> date:
    zone = resolve_timezone(tz)
    return _now(now, zone).astimezone(zone).date()
