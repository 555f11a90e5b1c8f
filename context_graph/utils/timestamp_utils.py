"""
Timestamp utilities for consistent date handling across the system.
"""

from datetime import date, datetime, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def utc_today() -> date:
    return utc_now().date()


def to_iso(value: Optional[datetime] = None) -> str:
    """Serialize a datetime (default: now) to ISO 8601 with microseconds, so stored values sort in order.

    Args:
        value: Datetime to serialize, naive values are taken as UTC

    Returns:
        ISO 8601 string
    """
    value = value or utc_now()
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat(timespec='microseconds')


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp back into a datetime, None if empty."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def parse_date(value: Any) -> Optional[date]:
    """Parse a stored date, accepting date objects, ISO dates and ISO datetimes.

    Args:
        value: Raw value from the store or an event payload

    Returns:
        date or None when the value is empty

    Raises:
        ValueError: If the value is not a recognizable date
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value)
    if 'T' in text or ' ' in text.strip():
        return datetime.fromisoformat(text.replace('Z', '+00:00')).date()
    return date.fromisoformat(text)


def parse_event_date(value: Any) -> date:
    """Lenient date parsing for inbound events: anything unparseable becomes today."""
    try:
        parsed = parse_date(value)
    except (TypeError, ValueError):
        parsed = None
    return parsed or utc_today()


def age_in_days(value: date, today: Optional[date] = None) -> int:
    """Whole days between a date and today (UTC)."""
    return ((today or utc_today()) - value).days
