"""
auth/service.py -- Authentication orchestrator: register, login, refresh, logout.

AuthService composes the four token components with a credential store. It
holds no state of its own; everything durable lives in the stores it was
handed, so one instance is shared across every request.

Flow summary:
  register  conflict checks -> create principal (ROLE_USER) -> issue session
  login     lockout gate -> bcrypt check -> failure counting / reset -> issue session
  refresh   rotate refresh token -> re-read principal -> new access token
  logout    revoke refresh token -> blacklist access token jti until its exp
  authenticate  issuer validation -> blacklist check

Error boundary: stores and the issuer return Result values; this module is the
only place those become AuthError subclasses. Anything else (database errors,
signing errors) propagates untouched and no step is retried.

Security notes:
  [C1] Unknown usernames still cost one bcrypt comparison against a dummy hash
       so response time does not reveal which usernames exist.

  [C2] The lockout gate runs BEFORE the credential store is consulted. A locked
       account never reaches bcrypt, so a lock also caps the CPU an attacker
       can burn.

  [C3] Revoked refresh token reuse is reported (TokenRevokedError and a
       WARNING in the store) but the principal's other sessions are left
       alone. Policy belongs to the caller; see logout_all().

  Fail-closed by default: if the lockout guard or blacklist raises, the
  request fails. lockout_fail_open / blacklist_fail_open downgrade that to a
  WARNING and carry on as "not locked" / "not blacklisted".

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Protocol

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.blacklist import TokenBlacklist
from auth.lockout import LockoutGuard
from auth.models import AuthSession, Principal, TokenClaims
from auth.refresh_tokens import RefreshTokenStore
from auth.results import TokenStatus
from auth.store import DEFAULT_ROLE, UserStore
from auth.tokens import AccessTokenIssuer, burn_password_check, hash_password, verify_password
from core.db import make_engine
from core.errors import (
    AccountLockedError,
    ConflictError,
    ErrorCode,
    InvalidCredentialsError,
    RegistrationDisabledError,
    TokenExpiredError,
    TokenInvalidError,
    TokenRevokedError,
)
from core.timeutil import Clock, utcnow

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("sessionkeeper.auth")


class CredentialStore(Protocol):
    """What the orchestrator needs from wherever principals live."""

    def get_by_username(self, username: str) -> Principal | None: ...

    def get_by_id(self, user_id: int) -> Principal | None: ...

    def exists_by_username(self, username: str) -> bool: ...

    def exists_by_email(self, email: str) -> bool: ...

    def create_user(self, user: Principal) -> int: ...

    def update_last_login(self, user_id: int) -> None: ...


class AuthService:
    """Orchestrates the token lifecycle for one credential store.

    Usage:
        service = AuthService(users, issuer, refresh_tokens, blacklist, lockout)
        session = service.login("alice", "s3cret", origin_ip="203.0.113.7")
        session = service.refresh(session.refresh_token, origin_ip="203.0.113.7")
        service.logout(session.refresh_token, session.access_token)
    """

    def __init__(
        self,
        users: CredentialStore,
        issuer: AccessTokenIssuer,
        refresh_tokens: RefreshTokenStore,
        blacklist: TokenBlacklist,
        lockout: LockoutGuard,
        *,
        clock_skew_seconds: int = 0,
        lockout_fail_open: bool = False,
        blacklist_fail_open: bool = False,
        self_registration_enabled: bool = True,
    ) -> None:
        self.users = users
        self.issuer = issuer
        self.refresh_tokens = refresh_tokens
        self.blacklist = blacklist
        self.lockout = lockout
        self._skew = timedelta(seconds=clock_skew_seconds)
        self._lockout_fail_open = lockout_fail_open
        self._blacklist_fail_open = blacklist_fail_open
        self._registration_enabled = self_registration_enabled

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        users: CredentialStore,
        issuer: AccessTokenIssuer,
        refresh_tokens: RefreshTokenStore,
        blacklist: TokenBlacklist,
        lockout: LockoutGuard,
    ) -> AuthService:
        return cls(
            users,
            issuer,
            refresh_tokens,
            blacklist,
            lockout,
            clock_skew_seconds=settings.clock_skew_seconds,
            lockout_fail_open=settings.lockout_fail_open,
            blacklist_fail_open=settings.blacklist_fail_open,
            self_registration_enabled=settings.self_registration_enabled,
        )

    # ------------------------------------------------------------------
    # Register
    # ------------------------------------------------------------------

    def register(self, username: str, email: str, password: str, origin_ip: str | None = None) -> AuthSession:
        """Create a principal with the default role and log it straight in.

        Raises:
            RegistrationDisabledError: self-registration is switched off.
            ConflictError: username or email already in use (code tells which).
        """
        if not self._registration_enabled:
            raise RegistrationDisabledError()
        self._check_available(username, email)

        principal = Principal(
            username=username,
            email=email,
            roles=[DEFAULT_ROLE],
            hashed_password=hash_password(password),
        )
        try:
            principal.id = self.users.create_user(principal)
        except IntegrityError as exc:
            # A concurrent registration took the name between the checks above
            # and the INSERT. UNIQUE(username) / UNIQUE(email) caught it; the
            # committed row now tells which one.
            self._check_available(username, email, cause=exc)
            raise

        logger.info("Registered user %r (id=%s)", username, principal.id)
        return self._issue_session(principal, origin_ip)

    def _check_available(self, username: str, email: str, cause: Exception | None = None) -> None:
        if self.users.exists_by_username(username):
            raise ConflictError("Username is already taken.", code=ErrorCode.USERNAME_ALREADY_EXISTS) from cause
        if self.users.exists_by_email(email):
            raise ConflictError("Email is already registered.", code=ErrorCode.EMAIL_ALREADY_EXISTS) from cause

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, username: str, password: str, origin_ip: str | None = None) -> AuthSession:
        """Authenticate with username + password.

        Raises:
            AccountLockedError: locked before this attempt, or this attempt
                tripped the lock (just_locked=True).
            InvalidCredentialsError: unknown user, wrong password, or inactive
                principal. The message is identical in every case.
        """
        remaining = self._remaining_lock(username)
        if remaining is not None:
            logger.info("Login rejected for locked account %r", username)
            raise AccountLockedError(remaining)

        principal = self.users.get_by_username(username)
        if principal is None or not principal.hashed_password:
            burn_password_check(password)
            self._record_failure(username)
            raise InvalidCredentialsError()

        if not verify_password(password, principal.hashed_password):
            self._record_failure(username)
            raise InvalidCredentialsError()

        if not principal.is_active:
            logger.info("Login rejected for inactive user %r", username)
            raise InvalidCredentialsError()

        self._record_success(username)
        self.users.update_last_login(principal.id)
        logger.info("User %r logged in", username)
        return self._issue_session(principal, origin_ip)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str, origin_ip: str | None = None) -> AuthSession:
        """Rotate refresh_token and mint a fresh access token.

        Roles are re-read from the credential store, so a role change takes
        effect at the next refresh rather than at the next login.

        Raises:
            TokenInvalidError: unknown token, or its principal is gone/inactive.
            TokenExpiredError: token past its expiry (the row is deleted).
            TokenRevokedError: token already revoked -- possible reuse [C3].
        """
        result = self.refresh_tokens.rotate(refresh_token, origin_ip)
        if result.status is TokenStatus.EXPIRED:
            raise TokenExpiredError("Refresh token has expired. Please log in again.")
        if result.status is TokenStatus.REVOKED:
            raise TokenRevokedError("Refresh token has been revoked.")
        if not result.ok:
            raise TokenInvalidError("Invalid refresh token.")

        record = result.value
        principal = self.users.get_by_id(record.user_id)
        if principal is None or not principal.is_active:
            # The replacement must not outlive a principal who cannot use it.
            self.refresh_tokens.revoke(record.token)
            logger.warning("Refresh refused for missing or inactive user_id=%s", record.user_id)
            raise TokenInvalidError("Invalid refresh token.")

        access = self.issuer.issue(principal.id, principal.roles)
        return AuthSession(
            access_token=access.token,
            refresh_token=record.token,
            expires_in=self.issuer.ttl_seconds,
            user=principal.summary(),
        )

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(self, refresh_token: str | None, access_token: str | None = None) -> None:
        """End one session. Idempotent; never raises for unknown tokens.

        The access token is read without signature or expiry verification:
        a client logging out with a just-expired token should not get an
        error, and blacklisting a jti we did not issue harms nothing.
        """
        self.refresh_tokens.revoke(refresh_token)

        if not access_token:
            return
        jti = self.issuer.extract_jti(access_token)
        expires_at = self.issuer.extract_expiry(access_token)
        if jti is None or expires_at is None:
            logger.debug("Logout skipped unreadable access token")
            return
        try:
            self.blacklist.add(jti, expires_at + self._skew)
        except Exception:
            if not self._blacklist_fail_open:
                raise
            logger.warning("Blacklist unavailable during logout; access token left to expire", exc_info=True)

    def logout_all(self, user_id: int) -> int:
        """Revoke every refresh token of a principal. Returns rows revoked.

        Access tokens already handed out stay valid until their exp; they are
        short-lived by construction.
        """
        return self.refresh_tokens.revoke_all(user_id)

    # ------------------------------------------------------------------
    # Request authentication
    # ------------------------------------------------------------------

    def authenticate(self, access_token: str) -> TokenClaims:
        """Validate an access token for a protected request.

        Raises:
            TokenInvalidError: malformed, bad signature, wrong issuer/type.
            TokenExpiredError: past exp (+ skew).
            TokenRevokedError: jti is on the blacklist (logged out).
        """
        result = self.issuer.validate(access_token)
        if result.status is TokenStatus.EXPIRED:
            raise TokenExpiredError()
        if not result.ok:
            raise TokenInvalidError()

        claims = result.value
        if self._is_blacklisted(claims.jti):
            raise TokenRevokedError()
        return claims

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _issue_session(self, principal: Principal, origin_ip: str | None) -> AuthSession:
        access = self.issuer.issue(principal.id, principal.roles)
        refresh = self.refresh_tokens.create(principal.id, origin_ip)
        return AuthSession(
            access_token=access.token,
            refresh_token=refresh.token,
            expires_in=self.issuer.ttl_seconds,
            user=principal.summary(),
        )

    def _remaining_lock(self, username: str) -> timedelta | None:
        try:
            return self.lockout.get_remaining_lockout_time(username)
        except Exception:
            if not self._lockout_fail_open:
                raise
            logger.warning("Lockout guard unavailable; treating %r as not locked", username, exc_info=True)
            return None

    def _record_failure(self, username: str) -> None:
        """Count a failed attempt; raise AccountLockedError if it tripped the lock."""
        try:
            just_locked = self.lockout.login_failed(username)
        except Exception:
            if not self._lockout_fail_open:
                raise
            logger.warning("Lockout guard unavailable; failure for %r not counted", username, exc_info=True)
            return
        if just_locked:
            raise AccountLockedError(self.lockout.get_remaining_lockout_time(username), just_locked=True)

    def _record_success(self, username: str) -> None:
        try:
            self.lockout.login_succeeded(username)
        except Exception:
            if not self._lockout_fail_open:
                raise
            logger.warning("Lockout guard unavailable; counter for %r not reset", username, exc_info=True)

    def _is_blacklisted(self, jti: str) -> bool:
        try:
            return self.blacklist.contains(jti)
        except Exception:
            if not self._blacklist_fail_open:
                raise
            logger.warning("Blacklist unavailable; accepting token jti=%s", jti, exc_info=True)
            return False


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_service(settings: Settings, engine: Engine | None = None, clock: Clock = utcnow) -> AuthService:
    """Wire every component from settings onto one shared engine.

    The caller owns the engine: release it with core.db.release() on shutdown.
    """
    engine = engine if engine is not None else make_engine(settings.database_url)
    return AuthService.from_settings(
        settings,
        users=UserStore(engine=engine),
        issuer=AccessTokenIssuer.from_settings(settings, clock=clock),
        refresh_tokens=RefreshTokenStore(
            engine=engine,
            ttl_seconds=settings.refresh_token_expire_seconds,
            max_per_user=settings.max_refresh_tokens_per_user,
            clock=clock,
        ),
        blacklist=TokenBlacklist(engine=engine, clock=clock),
        lockout=LockoutGuard(
            engine=engine,
            threshold=settings.lockout_threshold,
            lock_duration_seconds=settings.lockout_duration_seconds,
            window_seconds=settings.lockout_window_seconds,
            clock=clock,
        ),
    )
