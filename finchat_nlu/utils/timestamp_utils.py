"""
Timestamp utilities for consistent time handling across stored records.
"""

import time
from datetime import datetime, timedelta, timezone
from typing import Optional


def to_datetime(timestamp: Optional[float] = None) -> datetime:
    """Convert a unix timestamp to an aware UTC datetime.

    Args:
        timestamp: Unix timestamp in seconds (optional, uses current time if None)

    Returns:
        datetime object
    """
    if timestamp is None:
        timestamp = time.time()
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def to_iso(timestamp: Optional[float] = None) -> str:
    """Convert a unix timestamp to an ISO-8601 UTC string (current time if None)."""
    return to_datetime(timestamp).isoformat()


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 string written by to_iso; naive values are read as UTC."""
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def days_ago_iso(days: int, now: Optional[float] = None) -> str:
    """ISO string for the instant `days` days before now."""
    return (to_datetime(now) - timedelta(days=days)).isoformat()
