"""
Timestamp utilities for consistent time handling across the system.
"""

from datetime import datetime
from typing import Any, Optional


def parse_datetime(value: Any, default: Optional[datetime] = None) -> datetime:
    """Parse a persisted timestamp into a datetime.

    Accepts datetime objects, ISO-8601 strings and unix epoch seconds
    (int, float or numeric string).

    Args:
        value: Value read from the store
        default: Returned when the value is empty or unparseable (now if None)

    Returns:
        datetime object
    """
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if value is None or value == '':
        return default or datetime.now()
    text = str(value).strip()
    try:
        epoch = float(text)
    except ValueError:
        epoch = None
    if epoch is not None:
        try:
            return datetime.fromtimestamp(epoch)
        except (ValueError, OverflowError, OSError):
            # inf, nan and epochs outside the platform range
            return default or datetime.now()
    try:
        return datetime.fromisoformat(text.replace('Z', '+00:00')).replace(tzinfo=None)
    except ValueError:
        return default or datetime.now()


def days_since(moment: datetime, now: Optional[datetime] = None) -> float:
    """Fractional days elapsed since moment, never negative."""
    now = now or datetime.now()
    return max(0.0, (now - moment).total_seconds() / 86400.0)
