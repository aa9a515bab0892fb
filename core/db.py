"""
core/db.py -- SQLAlchemy engine construction shared by every store.

All three stores (users, refresh tokens, login attempts) may share a single
Engine or each build their own from a URL; either way they go through
make_engine() so SQLite gets the same treatment everywhere:

  File databases: WAL journal mode so readers proceed during writes.
  ":memory:" databases: StaticPool, so every thread sees the SAME in-memory
      database. The default SingletonThreadPool would hand each thread its
      own blank database.

SQLite allows one writer at a time and pysqlite's deferred transactions can
fail with "database is locked" when two connections upgrade concurrently.
Stores therefore serialize through one lock per engine in-process when
is_sqlite(engine) is true (see serialized()). Other backends rely on row
locks (SELECT ... FOR UPDATE) and compare-and-swap UPDATEs instead.
"""

from __future__ import annotations

import threading
from contextlib import nullcontext
from typing import ContextManager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL per connection -- SQLite PRAGMAs are not inherited from the pool."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    if not db_url.startswith("sqlite"):
        return create_engine(db_url, pool_pre_ping=True)

    connect_args: dict = {"check_same_thread": False}
    if ":memory:" in db_url or db_url in ("sqlite://", "sqlite:///"):
        return create_engine(db_url, connect_args=connect_args, poolclass=StaticPool)

    engine = create_engine(db_url, connect_args=connect_args)
    event.listen(engine, "connect", _set_wal_mode)
    return engine


def is_sqlite(engine: Engine) -> bool:
    return engine.dialect.name == "sqlite"


_engine_locks: dict[Engine, threading.RLock] = {}
_registry_lock = threading.Lock()


def serialized(engine: Engine) -> ContextManager:
    """Return the engine-wide lock for SQLite engines, a no-op context otherwise.

    The lock belongs to the engine, not to a store, so stores sharing one
    engine (and, for ":memory:", one connection) serialize against each other.
    """
    if not is_sqlite(engine):
        return nullcontext()
    with _registry_lock:
        lock = _engine_locks.get(engine)
        if lock is None:
            lock = _engine_locks[engine] = threading.RLock()
    return lock


def release(engine: Engine) -> None:
    """Dispose an engine and forget its lock."""
    with _registry_lock:
        _engine_locks.pop(engine, None)
    engine.dispose()
