"""
auth/blacklist.py -- Revoked access-token ids (jti), kept until natural expiry.

An access token is self-contained: once signed it validates until exp. The
blacklist is how logout takes one out of circulation early. An entry only
matters while the token itself would still validate, so every entry carries
the token's exp and is dropped once that instant passes -- lazily on lookup,
and in bulk by sweep() on the maintenance schedule.

Storage: SQLAlchemy Core table token_blacklist on the shared engine, one row
per jti. Every worker process, the CLI, and a restarted server see the same
revocations.

contains() sits on the hot path (every authenticated request): one primary
key lookup, plus a conditional DELETE only when the entry has lapsed.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import Column, Index, MetaData, String, Table, delete, func, insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import BlacklistEntry
from core.config import DEFAULT_DB_URL
from core.db import make_engine, release, serialized
from core.timeutil import Clock, from_iso, to_iso, utcnow

logger = logging.getLogger("sessionkeeper.blacklist")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_token_blacklist = Table(
    "token_blacklist",
    _metadata,
    Column("jti", String(64), primary_key=True),
    Column("expires_at", String(32), nullable=False),
    Index("idx_blacklist_expiry", "expires_at"),
)


class TokenBlacklist:
    """Persistent jti blacklist with per-entry expiry.

    Usage:
        blacklist = TokenBlacklist(engine=engine)
        blacklist.add(jti, token_exp)
        if blacklist.contains(jti): ...
    """

    def __init__(
        self,
        db_url: str = DEFAULT_DB_URL,
        *,
        engine: Engine | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._owns_engine = engine is None
        self.engine: Engine = engine if engine is not None else make_engine(db_url)
        self._clock = clock
        _metadata.create_all(self.engine)

    def add(self, jti: str, expires_at: datetime) -> bool:
        """Reject jti until expires_at. Returns False if it is already past.

        Re-adding a jti keeps the later of the two expiries.
        """
        if not jti:
            return False
        if expires_at < self._clock():
            return False
        try:
            self._upsert(jti, expires_at)
        except IntegrityError:
            # A concurrent add inserted the same jti first; extend its row instead.
            self._upsert(jti, expires_at)
        logger.debug("Blacklisted access token jti=%s until %s", jti, expires_at.isoformat())
        return True

    def _upsert(self, jti: str, expires_at: datetime) -> None:
        exp_iso = to_iso(expires_at)
        with serialized(self.engine), self.engine.begin() as conn:
            extended = conn.execute(
                update(_token_blacklist)
                .where((_token_blacklist.c.jti == jti) & (_token_blacklist.c.expires_at < exp_iso))
                .values(expires_at=exp_iso)
            ).rowcount
            if extended:
                return
            present = conn.execute(
                select(_token_blacklist.c.jti).where(_token_blacklist.c.jti == jti)
            ).first()
            if present is None:
                conn.execute(insert(_token_blacklist).values(jti=jti, expires_at=exp_iso))

    def contains(self, jti: str) -> bool:
        """True while jti is blacklisted and now <= its token exp."""
        if not jti:
            return False
        now_iso = to_iso(self._clock())
        with serialized(self.engine), self.engine.begin() as conn:
            expires_at = conn.execute(
                select(_token_blacklist.c.expires_at).where(_token_blacklist.c.jti == jti)
            ).scalar()
            if expires_at is None:
                return False
            if expires_at < now_iso:
                conn.execute(
                    delete(_token_blacklist).where(
                        (_token_blacklist.c.jti == jti) & (_token_blacklist.c.expires_at < now_iso)
                    )
                )
                return False
            return True

    def sweep(self, now: datetime | None = None) -> int:
        """Evict every entry whose token has expired. Returns entries removed."""
        cutoff = to_iso(now or self._clock())
        with serialized(self.engine), self.engine.begin() as conn:
            result = conn.execute(delete(_token_blacklist).where(_token_blacklist.c.expires_at < cutoff))
        if result.rowcount:
            logger.info("Evicted %d expired blacklist entries", result.rowcount)
        return result.rowcount

    def entries(self) -> list[BlacklistEntry]:
        with serialized(self.engine), self.engine.connect() as conn:
            rows = conn.execute(select(_token_blacklist).order_by(_token_blacklist.c.expires_at)).fetchall()
        return [BlacklistEntry(row.jti, from_iso(row.expires_at)) for row in rows]

    def __len__(self) -> int:
        with serialized(self.engine), self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_token_blacklist)).scalar() or 0

    def close(self) -> None:
        if self._owns_engine:
            release(self.engine)
