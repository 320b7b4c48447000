"""
Timestamp utilities for consistent time handling across the system.

All datetimes are timezone-aware UTC. Components take a ``clock`` callable so
scheduled jobs and tests can control "now".
"""

from datetime import datetime, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]

SECONDS_PER_DAY = 24 * 60 * 60


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Convert a datetime to an ISO-8601 string suitable for OpenSearch date fields.

    Args:
        value: datetime (naive values are treated as UTC)

    Returns:
        ISO string or None
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def from_iso(value) -> Optional[datetime]:
    """Parse an ISO-8601 string, epoch seconds or datetime into an aware UTC datetime.

    Args:
        value: Stored timestamp value

    Returns:
        datetime or None if value is empty
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        text = str(value)
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def days_between(earlier: datetime, later: datetime) -> float:
    """Fractional number of days from ``earlier`` to ``later``."""
    return (from_iso(later) - from_iso(earlier)).total_seconds() / SECONDS_PER_DAY
