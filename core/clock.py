"""
core/clock.py -- UTC time helpers shared by every store and service.

Timestamps are persisted as fixed-width ISO 8601 strings (always with
microseconds and an explicit +00:00 offset). Fixed width means string order
equals time order, so range filters and ORDER BY work on the TEXT columns
without any database-specific date functions.

Services take a `clock` callable (default utcnow) so tests can move time.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Serialize a datetime as a sortable UTC ISO string.

    Naive datetimes are treated as UTC.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    """Parse a stored ISO string. Returns None for empty or malformed values."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
