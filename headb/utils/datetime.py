"""Datetime helpers.

Timestamps are timezone-aware UTC; bearer expirations travel as unix seconds.
SQLite hands stored values back without an offset on some driver versions,
so anything read from storage goes through `as_utc` before comparison.
"""

from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return current UTC time as an aware datetime."""
    return datetime.now(UTC)


def as_utc(dt: datetime) -> datetime:
    """Attach UTC to a naive datetime; convert an aware one to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_unix(dt: datetime) -> int:
    """Convert a datetime to unix seconds, treating naive values as UTC."""
    return int(as_utc(dt).timestamp())
