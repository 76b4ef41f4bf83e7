"""Shared utility functions for services and blueprints.

utcnow:          aware UTC "now"
as_utc:          attach UTC to naive datetimes read back from SQLite
parse_datetime:  ISO-8601 input parsing for request bodies (raises ValueError)
"""
from datetime import date, datetime, timezone


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    """Return *value* as an aware UTC datetime.

    SQLite drops tzinfo on ``DateTime(timezone=True)`` columns; every stored
    timestamp is UTC, so a naive value is interpreted as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value):
    """Parse an ISO-8601 datetime string, raising ValueError on bad input.

    Accepts a trailing ``Z``, plain dates (midnight UTC) and datetime
    objects.  Returns None for empty input.
    """
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    raw = str(value).strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(raw))
