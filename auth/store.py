"""
auth/store.py -- SQLAlchemy Core persistence for principals (the credential store).

This is the external collaborator the orchestrator looks principals up in.
The session engine only reads from it (plus create_user() on registration);
profile management is out of scope, so the surface is deliberately small.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Service code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.
  UNIQUE(username) and UNIQUE(email) are enforced by the schema. create_user()
  lets IntegrityError propagate so a registration racing another one for the
  same name is reported as a conflict, not silently merged.

Roles are stored as a JSON array in a TEXT column. Role CRUD is not this
store's job; roles arrive with the principal and are read back verbatim.
"""

from __future__ import annotations

import json

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, insert, select, update
from sqlalchemy.engine import Engine

from auth.models import Principal
from core.config import DEFAULT_DB_URL
from core.db import make_engine, release, serialized
from core.timeutil import from_iso, to_iso, utcnow

DEFAULT_ROLE = "ROLE_USER"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(50), nullable=False, unique=True),
    Column("email", String(100), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("roles", Text, nullable=False, server_default="[]"),  # JSON array
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for Principal records.

    Usage:
        store = UserStore()
        store.create_user(Principal(username="alice", email="a@example.com",
                                    roles=["ROLE_USER"], hashed_password=hash_password("s3cret")))
        principal = store.get_by_username("alice")
        store.close()
    """

    def __init__(self, db_url: str = DEFAULT_DB_URL, *, engine: Engine | None = None) -> None:
        self._owns_engine = engine is None
        self.engine: Engine = engine if engine is not None else make_engine(db_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_by_username(self, username: str) -> Principal | None:
        """Look up a principal by exact username (case-sensitive)."""
        with serialized(self.engine), self.engine.connect() as conn:
            row = conn.execute(select(_users).where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> Principal | None:
        with serialized(self.engine), self.engine.connect() as conn:
            row = conn.execute(select(_users).where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def exists_by_username(self, username: str) -> bool:
        with serialized(self.engine), self.engine.connect() as conn:
            row = conn.execute(select(_users.c.id).where(_users.c.username == username)).fetchone()
        return row is not None

    def exists_by_email(self, email: str) -> bool:
        """Emails compare case-insensitively; they are stored lowercased."""
        with serialized(self.engine), self.engine.connect() as conn:
            row = conn.execute(select(_users.c.id).where(_users.c.email == email.strip().lower())).fetchone()
        return row is not None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_user(self, user: Principal) -> int:
        """Insert a new principal and return its assigned ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email is taken.
        """
        with serialized(self.engine), self.engine.begin() as conn:
            result = conn.execute(
                insert(_users).values(
                    username=user.username,
                    email=user.email.strip().lower(),
                    hashed_password=user.hashed_password,
                    roles=json.dumps(sorted(set(user.roles or [DEFAULT_ROLE]))),
                    is_active=1 if user.is_active else 0,
                    created_at=to_iso(utcnow()),
                )
            )
            return result.inserted_primary_key[0]

    def set_roles(self, user_id: int, roles: list[str]) -> bool:
        """Replace a principal's roles. Takes effect on the next refresh."""
        with serialized(self.engine), self.engine.begin() as conn:
            result = conn.execute(update(_users).where(_users.c.id == user_id).values(roles=json.dumps(sorted(set(roles)))))
        return result.rowcount > 0

    def set_active(self, user_id: int, is_active: bool) -> bool:
        with serialized(self.engine), self.engine.begin() as conn:
            result = conn.execute(update(_users).where(_users.c.id == user_id).values(is_active=1 if is_active else 0))
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC time as last_login after a successful login."""
        with serialized(self.engine), self.engine.begin() as conn:
            conn.execute(update(_users).where(_users.c.id == user_id).values(last_login=to_iso(utcnow())))

    def close(self) -> None:
        if self._owns_engine:
            release(self.engine)


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> Principal:
    try:
        roles = json.loads(row.roles or "[]")
    except ValueError:
        roles = []
    return Principal(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        roles=[str(r) for r in roles],
        is_active=bool(row.is_active),
        created_at=from_iso(row.created_at),
    )
