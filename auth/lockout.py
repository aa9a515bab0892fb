"""
auth/lockout.py -- Consecutive-failure lockout keyed by submitted username.

Policy:
  - Every failed login for a username increments its counter.
  - The call that brings the counter to `threshold` sets
    locked_until = now + lock_duration and reports the fresh lock.
  - While locked the counter is frozen; further failures are not counted.
  - A success deletes the record unconditionally.
  - A lapsed lock, or a first failure older than `window`, means the next
    failure starts a new count at 1.

Keyed by the username string as submitted, not by client address: the threat
model is credential stuffing against a known account from many sources.
The key is whitespace-stripped only; usernames are case-sensitive in the
credential store, so they are case-sensitive here.

Concurrency: the read-modify-write for one username runs in a single
transaction; on SQLite the store also serializes in-process (see core/db.py).
The increment is expressed in SQL (failed_attempts + 1) so it never writes a
stale in-memory count. A lost update would let a flood of parallel failures
under-count, which is exactly what this guard exists to prevent.

Storage: SQLAlchemy Core table login_attempts, one row per username.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import Column, Integer, MetaData, String, Table, delete, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth.models import LockoutRecord
from core.config import DEFAULT_DB_URL
from core.db import is_sqlite, make_engine, release, serialized
from core.timeutil import Clock, from_iso, to_iso, utcnow

logger = logging.getLogger("sessionkeeper.lockout")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_login_attempts = Table(
    "login_attempts",
    _metadata,
    Column("username", String(255), primary_key=True),
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Column("first_failed_at", String(32), nullable=False),
    Column("last_failed_at", String(32), nullable=False),
    Column("locked_until", String(32)),
)


def _key(username: str) -> str:
    return (username or "").strip()


class LockoutGuard:
    """Tracks failed logins per username and imposes time-boxed locks.

    Usage:
        guard = LockoutGuard("sqlite:///:memory:", threshold=5)
        if guard.is_locked("alice"): ...
        guard.login_failed("alice")
        guard.login_succeeded("alice")
    """

    def __init__(
        self,
        db_url: str = DEFAULT_DB_URL,
        *,
        engine: Engine | None = None,
        threshold: int = 5,
        lock_duration_seconds: int = 30 * 60,
        window_seconds: int = 15 * 60,
        clock: Clock = utcnow,
    ) -> None:
        if threshold <= 0 or lock_duration_seconds <= 0 or window_seconds <= 0:
            raise ValueError("threshold, lock_duration_seconds and window_seconds must be positive")
        self._owns_engine = engine is None
        self.engine: Engine = engine if engine is not None else make_engine(db_url)
        self.threshold = threshold
        self._lock_duration = timedelta(seconds=lock_duration_seconds)
        self._window = timedelta(seconds=window_seconds)
        self._clock = clock
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_record(self, username: str) -> LockoutRecord | None:
        with serialized(self.engine), self.engine.connect() as conn:
            row = conn.execute(select(_login_attempts).where(_login_attempts.c.username == _key(username))).fetchone()
        return _row_to_record(row) if row is not None else None

    def is_locked(self, username: str) -> bool:
        """True iff a lock exists and locked_until is in the future."""
        record = self.get_record(username)
        return record is not None and record.is_locked(self._clock())

    def get_remaining_lockout_time(self, username: str) -> timedelta | None:
        """Time left on the lock, or None when not locked."""
        record = self.get_record(username)
        if record is None or record.locked_until is None:
            return None
        remaining = record.locked_until - self._clock()
        return remaining if remaining > timedelta(0) else None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def login_failed(self, username: str) -> bool:
        """Record one failure. Returns True iff this call created a fresh lock."""
        try:
            return self._record_failure(_key(username))
        except IntegrityError:
            # Another process inserted the first row for this username between
            # our SELECT and INSERT. The row now exists; count against it.
            return self._record_failure(_key(username))

    def _record_failure(self, key: str) -> bool:
        now = self._clock()
        now_iso = to_iso(now)
        with serialized(self.engine), self.engine.begin() as conn:
            record = self._select_for_update(conn, key)

            if record is None:
                conn.execute(
                    insert(_login_attempts).values(
                        username=key,
                        failed_attempts=1,
                        first_failed_at=now_iso,
                        last_failed_at=now_iso,
                        locked_until=None,
                    )
                )
                count = 1
            elif record.is_locked(now):
                return False
            elif self._lapsed(record, now):
                conn.execute(
                    update(_login_attempts)
                    .where(_login_attempts.c.username == key)
                    .values(failed_attempts=1, first_failed_at=now_iso, last_failed_at=now_iso, locked_until=None)
                )
                count = 1
            else:
                conn.execute(
                    update(_login_attempts)
                    .where(_login_attempts.c.username == key)
                    .values(failed_attempts=_login_attempts.c.failed_attempts + 1, last_failed_at=now_iso)
                )
                count = conn.execute(
                    select(_login_attempts.c.failed_attempts).where(_login_attempts.c.username == key)
                ).scalar_one()

            if count < self.threshold:
                return False

            locked_until = now + self._lock_duration
            conn.execute(
                update(_login_attempts)
                .where(_login_attempts.c.username == key)
                .values(locked_until=to_iso(locked_until))
            )
        logger.warning("Account %r locked after %d failed attempts until %s", key, count, locked_until.isoformat())
        return True

    def login_succeeded(self, username: str) -> None:
        """Clear the counter and any lock unconditionally."""
        with serialized(self.engine), self.engine.begin() as conn:
            conn.execute(delete(_login_attempts).where(_login_attempts.c.username == _key(username)))

    def unlock(self, username: str) -> bool:
        """Operator override. Returns True if a record was removed."""
        with serialized(self.engine), self.engine.begin() as conn:
            result = conn.execute(delete(_login_attempts).where(_login_attempts.c.username == _key(username)))
        if result.rowcount:
            logger.info("Lockout record for %r cleared by operator", _key(username))
        return result.rowcount > 0

    def sweep(self, now: datetime | None = None) -> int:
        """Delete records that no longer affect anything. Returns rows removed.

        A record is dead when its lock has lapsed, or when it never locked and
        its first failure has fallen out of the window.
        """
        current = now or self._clock()
        now_iso = to_iso(current)
        window_cutoff = to_iso(current - self._window)
        with serialized(self.engine), self.engine.begin() as conn:
            result = conn.execute(
                delete(_login_attempts).where(
                    (_login_attempts.c.locked_until.is_not(None) & (_login_attempts.c.locked_until <= now_iso))
                    | (_login_attempts.c.locked_until.is_(None) & (_login_attempts.c.first_failed_at < window_cutoff))
                )
            )
        if result.rowcount:
            logger.info("Cleaned up %d stale lockout records", result.rowcount)
        return result.rowcount

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _select_for_update(self, conn: Connection, key: str) -> LockoutRecord | None:
        query = select(_login_attempts).where(_login_attempts.c.username == key)
        if not is_sqlite(self.engine):
            query = query.with_for_update()
        row = conn.execute(query).fetchone()
        return _row_to_record(row) if row is not None else None

    def _lapsed(self, record: LockoutRecord, now: datetime) -> bool:
        if record.locked_until is not None:
            return True  # not locked (checked by caller), so the lock has expired
        return record.first_failed_at is not None and now - record.first_failed_at > self._window

    def close(self) -> None:
        if self._owns_engine:
            release(self.engine)


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_record(row) -> LockoutRecord:
    return LockoutRecord(
        username=row.username,
        failed_attempts=row.failed_attempts,
        first_failed_at=from_iso(row.first_failed_at),
        locked_until=from_iso(row.locked_until),
    )
