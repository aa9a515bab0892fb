"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class. Stores and services do the work; these own the domain
shape. The only logic here is the derived refresh-token state, which is a
pure function of the record and an instant.

All instants are timezone-aware UTC datetimes.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


@dataclass
class Principal:
    """An identity owned by the credential store.

    The core only reads principals: id and roles feed access tokens, is_active
    gates login and refresh. hashed_password is a bcrypt hash.
    """

    username: str
    email: str
    roles: list[str] = field(default_factory=list)
    id: int | None = None
    hashed_password: str | None = None
    is_active: bool = True
    created_at: datetime | None = None

    def summary(self) -> dict:
        """Public view returned alongside a token pair. Never includes the hash."""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "roles": sorted(self.roles),
            "is_active": self.is_active,
        }


@dataclass(frozen=True)
class TokenClaims:
    """Verified claims of an access token."""

    sub: str
    roles: list[str]
    jti: str
    issued_at: datetime
    expires_at: datetime

    @property
    def principal_id(self) -> int:
        return int(self.sub)


@dataclass(frozen=True)
class AccessToken:
    """A freshly minted access token and the claims it carries."""

    token: str
    claims: TokenClaims

    @property
    def jti(self) -> str:
        return self.claims.jti

    @property
    def expires_at(self) -> datetime:
        return self.claims.expires_at


class TokenState(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


@dataclass
class RefreshTokenRecord:
    """One row per issued refresh token.

    EXPIRED is derived from expires_at, never stored. REVOKED is the stored
    flag. Both are terminal. When both hold, EXPIRED wins: an expired row is
    garbage regardless of how it got there.
    """

    token: str
    user_id: int
    expires_at: datetime
    created_from_ip: str | None = None
    created_at: datetime | None = None
    revoked: bool = False
    revoked_at: datetime | None = None
    id: int | None = None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def is_valid(self, now: datetime) -> bool:
        return not self.is_expired(now) and not self.revoked

    def state(self, now: datetime) -> TokenState:
        if self.is_expired(now):
            return TokenState.EXPIRED
        if self.revoked:
            return TokenState.REVOKED
        return TokenState.ACTIVE


@dataclass(frozen=True)
class BlacklistEntry:
    jti: str
    expires_at: datetime


@dataclass
class LockoutRecord:
    """Failure counter for one submitted username (pre-authentication)."""

    username: str
    failed_attempts: int = 0
    first_failed_at: datetime | None = None
    locked_until: datetime | None = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass(frozen=True)
class AuthSession:
    """The {access token, refresh token, principal summary} triple."""

    access_token: str
    refresh_token: str
    expires_in: int
    user: dict
    token_type: str = "bearer"  # noqa: S105 # nosec B105 -- OAuth token type, not a password
