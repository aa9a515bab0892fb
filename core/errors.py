"""
core/errors.py -- Error taxonomy for the session lifecycle engine.

Every failure a caller is expected to handle is an AuthError subclass carrying
a machine-readable ErrorCode. The transport layer (api/) maps these to HTTP
status codes; the core never does.

Anything that is NOT an AuthError (SQLAlchemy errors, signing failures) is an
unexpected collaborator failure and propagates untouched. The core performs no
retries: re-running login or refresh after a timeout could leave an orphaned
refresh token row.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

from __future__ import annotations

from datetime import timedelta
from enum import Enum


class ErrorCode(str, Enum):
    """Machine-readable identifiers surfaced verbatim to API clients."""

    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    TOKEN_INVALID = "TOKEN_INVALID"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_REVOKED = "TOKEN_REVOKED"
    USERNAME_ALREADY_EXISTS = "USERNAME_ALREADY_EXISTS"
    EMAIL_ALREADY_EXISTS = "EMAIL_ALREADY_EXISTS"
    REGISTRATION_DISABLED = "REGISTRATION_DISABLED"


class AuthError(Exception):
    """Base class for recoverable-by-caller authentication failures."""

    code: ErrorCode = ErrorCode.TOKEN_INVALID
    default_message: str = "Authentication failed."

    def __init__(self, message: str | None = None, code: ErrorCode | None = None) -> None:
        self.message = message or self.default_message
        if code is not None:
            self.code = code
        super().__init__(self.message)


class InvalidCredentialsError(AuthError):
    """Wrong password OR unknown user. The message never says which."""

    code = ErrorCode.INVALID_CREDENTIALS
    default_message = "Invalid username or password."


class AccountLockedError(AuthError):
    """Lockout gate tripped.

    just_locked is True when this very attempt pushed the failure count over
    the threshold, so callers can tell "you are now locked" from "you were
    already locked".
    """

    code = ErrorCode.ACCOUNT_LOCKED

    def __init__(self, remaining: timedelta | None, just_locked: bool = False) -> None:
        self.remaining = remaining if remaining is not None else timedelta(0)
        self.just_locked = just_locked
        minutes = max(1, -(-int(self.remaining.total_seconds()) // 60))
        if just_locked:
            message = f"Account locked due to multiple failed login attempts. Try again in {minutes} minutes."
        else:
            message = (
                "Account is locked due to multiple failed login attempts. " f"Try again in {minutes} minutes."
            )
        super().__init__(message)

    @property
    def retry_after_seconds(self) -> int:
        return max(1, int(self.remaining.total_seconds()))


class TokenInvalidError(AuthError):
    """Token failed signature, lookup, or format checks."""

    code = ErrorCode.TOKEN_INVALID
    default_message = "Invalid token."


class TokenExpiredError(AuthError):
    """Token is structurally valid but past its expiry."""

    code = ErrorCode.TOKEN_EXPIRED
    default_message = "Token has expired. Please log in again."


class TokenRevokedError(AuthError):
    """Refresh token was found but already revoked -- possible reuse."""

    code = ErrorCode.TOKEN_REVOKED
    default_message = "Token has been revoked."


class ConflictError(AuthError):
    """Registration against an already-used username or email."""

    code = ErrorCode.USERNAME_ALREADY_EXISTS
    default_message = "Username is already taken."


class RegistrationDisabledError(AuthError):
    """Self-registration is switched off by configuration."""

    code = ErrorCode.REGISTRATION_DISABLED
    default_message = "Self-registration is disabled."
