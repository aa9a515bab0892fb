"""
auth/tokens.py -- Access-token issuer, password hashing, refresh token strings.

Security design decisions:
  Access tokens: python-jose with HS256. Tokens carry sub (principal id),
       roles, jti, iat, exp, iss and type="access". They are self-contained:
       any holder of SECRET_KEY can verify them without a DB round-trip. The
       issuer never consults the blacklist -- AuthService.authenticate() does.

       exp is always iat + TTL exactly. iat is truncated to whole seconds
       before the addition because JWT NumericDate claims are integers; doing
       the arithmetic on the truncated value keeps the invariant exact after
       a round trip through the token.

       Expiry is checked here, not by jose, so the injected clock and the
       configured skew tolerance apply and so EXPIRED can be told apart from
       INVALID_SIGNATURE.

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization in AuthService.login() so response time
       does not reveal whether a username exists [C1].

  Refresh tokens: secrets.token_urlsafe(32) gives 256 bits of entropy. They
       are opaque random strings, not JWTs -- the store row is the authority.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.models import AccessToken, TokenClaims
from auth.results import Result, TokenStatus
from core.timeutil import Clock, utcnow

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("sessionkeeper.tokens")

_ALGORITHM = "HS256"
_TOKEN_TYPE = "access"
_REQUIRED_CLAIMS = ("sub", "jti", "iat", "exp")

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. The API layer caps
    password length well below that threshold.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in storage -- treat as a non-match.
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("sessionkeeper_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run a bcrypt comparison whose result is discarded [C1]."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Refresh token strings
# ---------------------------------------------------------------------------


def generate_refresh_token() -> str:
    """Return a new opaque refresh token (43 url-safe chars, 256 bits)."""
    return secrets.token_urlsafe(32)


# ---------------------------------------------------------------------------
# Access-token issuer
# ---------------------------------------------------------------------------


class AccessTokenIssuer:
    """Mints and validates signed access tokens.

    Stateless apart from the signing key, which is read once at construction
    and never mutated -- one instance is safe to share across threads.

    Usage:
        issuer = AccessTokenIssuer(secret_key, ttl_seconds=900)
        token = issuer.issue(42, ["ROLE_USER"])
        result = issuer.validate(token.token)
    """

    def __init__(
        self,
        secret_key: str,
        ttl_seconds: int = 900,
        issuer: str = "sessionkeeper",
        clock_skew_seconds: int = 0,
        clock: Clock = utcnow,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._secret_key = secret_key
        self._ttl = timedelta(seconds=ttl_seconds)
        self._issuer = issuer
        self._skew = timedelta(seconds=clock_skew_seconds)
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, clock: Clock = utcnow) -> AccessTokenIssuer:
        return cls(
            settings.secret_key,
            ttl_seconds=settings.access_token_expire_seconds,
            issuer=settings.token_issuer,
            clock_skew_seconds=settings.clock_skew_seconds,
            clock=clock,
        )

    @property
    def ttl_seconds(self) -> int:
        return int(self._ttl.total_seconds())

    def issue(self, principal_id: int | str, roles: list[str]) -> AccessToken:
        """Mint a token for principal_id. No side effects beyond randomness."""
        issued_at = self._clock().replace(microsecond=0)
        expires_at = issued_at + self._ttl
        jti = uuid.uuid4().hex
        payload = {
            "sub": str(principal_id),
            "roles": sorted(roles),
            "jti": jti,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "iss": self._issuer,
            "type": _TOKEN_TYPE,
        }
        token = jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)
        logger.debug("Issued access token jti=%s for sub=%s", jti, payload["sub"])
        claims = TokenClaims(
            sub=payload["sub"],
            roles=payload["roles"],
            jti=jti,
            issued_at=issued_at,
            expires_at=expires_at,
        )
        return AccessToken(token=token, claims=claims)

    def validate(self, token: str) -> Result[TokenClaims]:
        """Verify signature, issuer, type and expiry.

        Returns MALFORMED when the text is not a readable JWS at all,
        INVALID_SIGNATURE when it is readable but not ours, EXPIRED when it is
        ours but past exp (+ skew). Does NOT check the blacklist.
        """
        if self._read_unverified(token) is None:
            return Result.failure(TokenStatus.MALFORMED)
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                issuer=self._issuer,
                options={"verify_exp": False},
            )
        except JWTError as exc:
            logger.debug("Access token rejected: %s", exc)
            return Result.failure(TokenStatus.INVALID_SIGNATURE)

        if payload.get("type") != _TOKEN_TYPE or any(c not in payload for c in _REQUIRED_CLAIMS):
            return Result.failure(TokenStatus.INVALID_SIGNATURE)

        claims = _claims_from_payload(payload)
        if claims is None:
            return Result.failure(TokenStatus.MALFORMED)
        if self._clock() > claims.expires_at + self._skew:
            return Result.failure(TokenStatus.EXPIRED)
        return Result.success(claims)

    def extract_jti(self, token: str) -> str | None:
        """Read jti without verifying signature or expiry. None if unreadable."""
        payload = self._read_unverified(token)
        if payload is None:
            return None
        jti = payload.get("jti")
        return str(jti) if jti else None

    def extract_expiry(self, token: str) -> datetime | None:
        """Read exp without verifying signature or expiry. None if unreadable."""
        payload = self._read_unverified(token)
        if payload is None:
            return None
        try:
            return datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        except (KeyError, TypeError, ValueError, OverflowError):
            return None

    @staticmethod
    def _read_unverified(token: str) -> dict | None:
        if not token:
            return None
        try:
            payload = jwt.get_unverified_claims(token)
        except JWTError:
            return None
        return payload if isinstance(payload, dict) else None


def _claims_from_payload(payload: dict) -> TokenClaims | None:
    try:
        roles = payload.get("roles") or []
        return TokenClaims(
            sub=str(payload["sub"]),
            roles=[str(r) for r in roles],
            jti=str(payload["jti"]),
            issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
        )
    except (KeyError, TypeError, ValueError, OverflowError):
        return None
