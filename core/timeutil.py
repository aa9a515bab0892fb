"""
core/timeutil.py -- UTC clock and the timestamp format used by every store.

Timestamps are persisted as fixed-width ISO 8601 strings with microseconds
and an explicit +00:00 offset. Fixed width means lexical order equals time
order, so range filters (expires_at < now) work as plain string comparisons
in SQLite and PostgreSQL alike. datetime.isoformat() is NOT fixed width: it
drops the fraction when microsecond == 0.

Every component takes a `clock` callable defaulting to utcnow so tests can
move time without sleeping.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]

_ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        raise ValueError("naive datetime; all instants must be timezone-aware")
    return value.astimezone(timezone.utc).strftime(_ISO_FORMAT)


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
