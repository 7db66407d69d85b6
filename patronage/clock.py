"""UTC time helpers.

SQLite hands back naive datetimes even for timezone-aware columns, so
anything read from the database goes through as_utc() before it is
compared with an aware value.
"""

from datetime import datetime, timezone


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    """Return value as an aware UTC datetime (None passes through)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_timestamp(ts):
    """Convert a processor unix timestamp (seconds) to an aware datetime."""
    if ts is None:
        return None
    return datetime.fromtimestamp(float(ts), tz=timezone.utc)


def to_millis(ts):
    """Processor timestamp (seconds, possibly fractional) -> integer ms."""
    return int(round(float(ts) * 1000))
