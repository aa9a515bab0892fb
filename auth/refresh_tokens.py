"""
auth/refresh_tokens.py -- Refresh-token store: issue, verify, rotate, revoke.

The refresh_tokens table is the authoritative record of every long-lived
token. One row per issued token, keyed by the opaque token string.

State machine per row:
    ACTIVE --revoke()--> REVOKED        (stored flag, revoked_at stamped)
    ACTIVE --time passes expires_at--> EXPIRED   (derived, never stored)
Both terminal states are final; nothing clears the revoked flag.

Rotation and reuse detection:
  rotate() verifies the presented token, then revokes it with a
  compare-and-swap UPDATE (... WHERE token = :t AND revoked = 0). Exactly one
  caller can flip the flag; a concurrent or later second use of the same token
  observes REVOKED. That signal is returned to the caller as-is -- what to do
  about a possible compromise is the caller's policy. The revoke and the
  replacement INSERT commit together or not at all.

Per-user cap:
  create() keeps at most max_per_user valid rows per principal by revoking
  the oldest valid rows before inserting (revoke-oldest, never reject-new).

Timestamps: explicit. create() stamps created_at, revoke() stamps revoked_at.
No ORM hooks.

Pattern: Repository + Data Mapper (same as auth/store.py). Route and service
code never touches SQL directly.

Security: all queries use bound parameters. Raw token strings are never
logged.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, delete, func, insert, select, update
from sqlalchemy.engine import Connection, Engine

from auth.models import RefreshTokenRecord, TokenState
from auth.results import Result, TokenStatus
from auth.tokens import generate_refresh_token
from core.config import DEFAULT_DB_URL
from core.db import is_sqlite, make_engine, release, serialized
from core.timeutil import Clock, from_iso, to_iso, utcnow

logger = logging.getLogger("sessionkeeper.refresh_tokens")

_DEFAULT_TTL_SECONDS = 7 * 24 * 3600
_DEFAULT_MAX_PER_USER = 5
DEFAULT_REVOKED_RETENTION = timedelta(days=30)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", String(64), nullable=False, unique=True),
    Column("user_id", Integer, nullable=False),
    Column("created_from_ip", String(45)),  # IPv6 max textual length
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("revoked_at", String(32)),
    Index("idx_refresh_user_id", "user_id"),
    Index("idx_refresh_expiry", "expires_at"),
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class RefreshTokenStore:
    """Repository and state machine for refresh tokens.

    Usage:
        store = RefreshTokenStore("sqlite:///:memory:", max_per_user=5)
        record = store.create(user_id=1, origin_ip="203.0.113.7")
        result = store.rotate(record.token, origin_ip="203.0.113.7")
        store.revoke(result.value.token)
        store.close()
    """

    def __init__(
        self,
        db_url: str = DEFAULT_DB_URL,
        *,
        engine: Engine | None = None,
        ttl_seconds: int = _DEFAULT_TTL_SECONDS,
        max_per_user: int = _DEFAULT_MAX_PER_USER,
        clock: Clock = utcnow,
    ) -> None:
        if ttl_seconds <= 0 or max_per_user <= 0:
            raise ValueError("ttl_seconds and max_per_user must be positive")
        self._owns_engine = engine is None
        self.engine: Engine = engine if engine is not None else make_engine(db_url)
        self._ttl = timedelta(seconds=ttl_seconds)
        self._max_per_user = max_per_user
        self._clock = clock
        _metadata.create_all(self.engine)

    @property
    def ttl_seconds(self) -> int:
        return int(self._ttl.total_seconds())

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def create(self, user_id: int, origin_ip: str | None = None) -> RefreshTokenRecord:
        """Issue a new refresh token for user_id, enforcing the per-user cap.

        Counting, revoking the oldest, and inserting happen in one
        transaction so concurrent logins for the same principal cannot both
        slip under the cap.
        """
        now = self._clock()
        with serialized(self.engine), self.engine.begin() as conn:
            record, evicted = self._create_in(conn, user_id, origin_ip, now)
        self._log_created(record, evicted)
        return record

    def _create_in(
        self, conn: Connection, user_id: int, origin_ip: str | None, now: datetime
    ) -> tuple[RefreshTokenRecord, int]:
        """Cap check plus INSERT on an open transaction. Returns (record, rows evicted)."""
        record = RefreshTokenRecord(
            token=generate_refresh_token(),
            user_id=user_id,
            expires_at=now + self._ttl,
            created_from_ip=origin_ip,
            created_at=now,
        )
        evicted = self._enforce_cap(conn, user_id, now)
        result = conn.execute(
            insert(_refresh_tokens).values(
                token=record.token,
                user_id=user_id,
                created_from_ip=origin_ip,
                created_at=to_iso(now),
                expires_at=to_iso(record.expires_at),
                revoked=0,
            )
        )
        record.id = result.inserted_primary_key[0]
        return record, evicted

    def _log_created(self, record: RefreshTokenRecord, evicted: int) -> None:
        if evicted:
            logger.info(
                "Revoked %d oldest refresh token(s) for user_id=%s (cap=%d)", evicted, record.user_id, self._max_per_user
            )
        logger.debug("Created refresh token id=%s for user_id=%s", record.id, record.user_id)

    def _enforce_cap(self, conn: Connection, user_id: int, now: datetime) -> int:
        """Revoke oldest valid rows until one slot is free. Returns rows revoked."""
        query = (
            select(_refresh_tokens.c.id)
            .where(
                (_refresh_tokens.c.user_id == user_id)
                & (_refresh_tokens.c.revoked == 0)
                & (_refresh_tokens.c.expires_at > to_iso(now))
            )
            .order_by(_refresh_tokens.c.created_at, _refresh_tokens.c.id)
        )
        if not is_sqlite(self.engine):
            query = query.with_for_update()
        valid_ids = [row.id for row in conn.execute(query)]
        excess = len(valid_ids) - self._max_per_user + 1
        if excess <= 0:
            return 0
        result = conn.execute(
            update(_refresh_tokens)
            .where(_refresh_tokens.c.id.in_(valid_ids[:excess]) & (_refresh_tokens.c.revoked == 0))
            .values(revoked=1, revoked_at=to_iso(now))
        )
        return result.rowcount

    # ------------------------------------------------------------------
    # Verify / rotate
    # ------------------------------------------------------------------

    def verify(self, token: str) -> Result[RefreshTokenRecord]:
        """Look up token and classify it.

        NOT_FOUND: no such row.
        EXPIRED:   past expires_at. The row is deleted as a side effect.
        REVOKED:   revoked flag set. The row is kept for the audit trail and
                   so later reuse is still recognised as reuse.
        """
        now = self._clock()
        record = self.get(token)
        if record is None:
            return Result.failure(TokenStatus.NOT_FOUND)

        state = record.state(now)
        if state is TokenState.EXPIRED:
            self._delete_by_id(record.id)
            logger.warning("Expired refresh token presented for user_id=%s; row removed", record.user_id)
            return Result.failure(TokenStatus.EXPIRED)
        if state is TokenState.REVOKED:
            logger.warning("Revoked refresh token presented for user_id=%s (possible reuse)", record.user_id)
            return Result.failure(TokenStatus.REVOKED)
        return Result.success(record)

    def rotate(self, old_token: str, origin_ip: str | None = None) -> Result[RefreshTokenRecord]:
        """Revoke old_token and issue its replacement for the same principal.

        The sole sanctioned way to extend a session. Of two concurrent
        rotations of one token, exactly one succeeds; the other gets REVOKED.
        The revoke and the insert share one transaction: if issuing the
        replacement fails, the old token is left valid.
        """
        verified = self.verify(old_token)
        if not verified.ok:
            return verified
        old = verified.value

        now = self._clock()
        with serialized(self.engine), self.engine.begin() as conn:
            won = self._compare_and_revoke_in(conn, old_token, now)
            if won:
                new, evicted = self._create_in(conn, old.user_id, origin_ip, now)
        if not won:
            logger.warning("Refresh token for user_id=%s was revoked concurrently (possible reuse)", old.user_id)
            return Result.failure(TokenStatus.REVOKED)

        self._log_created(new, evicted)
        logger.info("Rotated refresh token for user_id=%s", old.user_id)
        return Result.success(new)

    # ------------------------------------------------------------------
    # Revoke
    # ------------------------------------------------------------------

    def revoke(self, token: str | None) -> bool:
        """Revoke one token. Idempotent: missing or already-revoked is a no-op.

        Returns True only when this call flipped the flag.
        """
        if not token:
            return False
        flipped = self._compare_and_revoke(token)
        if flipped:
            logger.info("Revoked refresh token")
        return flipped

    def revoke_all(self, user_id: int) -> int:
        """Revoke every live token for a principal (logout everywhere)."""
        now = to_iso(self._clock())
        with serialized(self.engine), self.engine.begin() as conn:
            result = conn.execute(
                update(_refresh_tokens)
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1, revoked_at=now)
            )
        logger.info("Revoked all refresh tokens for user_id=%s (%d rows)", user_id, result.rowcount)
        return result.rowcount

    def delete_all(self, user_id: int) -> int:
        """Physically delete every token for a principal (account removal)."""
        with serialized(self.engine), self.engine.begin() as conn:
            result = conn.execute(delete(_refresh_tokens).where(_refresh_tokens.c.user_id == user_id))
        logger.info("Deleted all refresh tokens for user_id=%s (%d rows)", user_id, result.rowcount)
        return result.rowcount

    def _compare_and_revoke(self, token: str) -> bool:
        with serialized(self.engine), self.engine.begin() as conn:
            return self._compare_and_revoke_in(conn, token, self._clock())

    @staticmethod
    def _compare_and_revoke_in(conn: Connection, token: str, now: datetime) -> bool:
        result = conn.execute(
            update(_refresh_tokens)
            .where((_refresh_tokens.c.token == token) & (_refresh_tokens.c.revoked == 0))
            .values(revoked=1, revoked_at=to_iso(now))
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep_expired(self, now: datetime | None = None) -> int:
        """Delete every row whose expiry has passed. Returns rows removed."""
        cutoff = to_iso(now or self._clock())
        with serialized(self.engine), self.engine.begin() as conn:
            result = conn.execute(delete(_refresh_tokens).where(_refresh_tokens.c.expires_at < cutoff))
        if result.rowcount:
            logger.info("Cleaned up %d expired refresh tokens", result.rowcount)
        return result.rowcount

    def sweep_old_revoked(self, now: datetime | None = None, retention: timedelta = DEFAULT_REVOKED_RETENTION) -> int:
        """Delete revoked rows older than the retention window."""
        cutoff = to_iso((now or self._clock()) - retention)
        with serialized(self.engine), self.engine.begin() as conn:
            result = conn.execute(
                delete(_refresh_tokens).where(
                    (_refresh_tokens.c.revoked == 1) & (_refresh_tokens.c.revoked_at < cutoff)
                )
            )
        if result.rowcount:
            logger.info("Cleaned up %d old revoked refresh tokens", result.rowcount)
        return result.rowcount

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, token: str) -> RefreshTokenRecord | None:
        """Raw lookup by token string. No state classification, no side effects."""
        if not token:
            return None
        with serialized(self.engine), self.engine.connect() as conn:
            row = conn.execute(select(_refresh_tokens).where(_refresh_tokens.c.token == token)).fetchone()
        return _row_to_record(row) if row is not None else None

    def is_valid(self, token: str) -> bool:
        """Non-mutating validity check (no self-cleaning)."""
        record = self.get(token)
        return record is not None and record.is_valid(self._clock())

    def active_count(self, user_id: int) -> int:
        now = to_iso(self._clock())
        with serialized(self.engine), self.engine.connect() as conn:
            count = conn.execute(
                select(func.count())
                .select_from(_refresh_tokens)
                .where(
                    (_refresh_tokens.c.user_id == user_id)
                    & (_refresh_tokens.c.revoked == 0)
                    & (_refresh_tokens.c.expires_at > now)
                )
            ).scalar()
        return count or 0

    def list_for_user(self, user_id: int) -> list[RefreshTokenRecord]:
        """All rows for a principal, oldest first, regardless of state."""
        with serialized(self.engine), self.engine.connect() as conn:
            rows = conn.execute(
                select(_refresh_tokens)
                .where(_refresh_tokens.c.user_id == user_id)
                .order_by(_refresh_tokens.c.created_at, _refresh_tokens.c.id)
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def _delete_by_id(self, record_id: int) -> None:
        with serialized(self.engine), self.engine.begin() as conn:
            conn.execute(delete(_refresh_tokens).where(_refresh_tokens.c.id == record_id))

    def close(self) -> None:
        if self._owns_engine:
            release(self.engine)


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_record(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row.id,
        token=row.token,
        user_id=row.user_id,
        created_from_ip=row.created_from_ip,
        created_at=from_iso(row.created_at),
        expires_at=from_iso(row.expires_at),
        revoked=bool(row.revoked),
        revoked_at=from_iso(row.revoked_at),
    )
