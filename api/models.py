"""
API request and response models for SessionKeeper REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import AuthSession, TokenClaims

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USERNAME_PATTERN = r"^[A-Za-z0-9_.-]+$"

# bcrypt silently truncates at 72 bytes; cap well below so no two distinct
# accepted passwords can collide on the truncated prefix.
_PASSWORD_MAX = 64


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    username: str = Field(min_length=3, max_length=50, pattern=USERNAME_PATTERN)
    email: str = Field(min_length=3, max_length=100)
    password: str = Field(min_length=8, max_length=_PASSWORD_MAX)

    @field_validator("email")
    @classmethod
    def check_email(cls, value: str) -> str:
        """Minimal shape check: one @ with something on both sides."""
        value = value.strip()
        local, sep, domain = value.rpartition("@")
        if not sep or not local or "." not in domain:
            raise ValueError("must be a valid email address")
        return value.lower()


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    Only emptiness is rejected here. A login attempt with a short password
    must still be counted by the lockout guard, not bounced with 422.
    """

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh."""

    refresh_token: str = Field(min_length=1, max_length=128)


class LogoutRequest(BaseModel):
    """Request body for POST /api/v1/auth/logout.

    access_token is optional; when omitted the Authorization header is used
    if present.
    """

    refresh_token: Optional[str] = Field(default=None, max_length=128)
    access_token: Optional[str] = Field(default=None, max_length=4096)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    roles: list[str]
    is_active: bool


class SessionResponse(BaseModel):
    """Token pair returned by register, login and refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"  # noqa: S105 # nosec B105 -- OAuth token type, not a password
    expires_in: int
    user: UserSummary

    @classmethod
    def from_session(cls, session: AuthSession) -> "SessionResponse":
        """Factory Method: the domain -> transport mapping lives with the output model."""
        return cls(
            access_token=session.access_token,
            refresh_token=session.refresh_token,
            token_type=session.token_type,
            expires_in=session.expires_in,
            user=UserSummary(**session.user),
        )


class MeResponse(BaseModel):
    """Identity carried by the presented access token."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    roles: list[str]
    jti: str
    expires_at: str

    @classmethod
    def from_claims(cls, claims: TokenClaims) -> "MeResponse":
        return cls(
            user_id=claims.principal_id,
            roles=list(claims.roles),
            jti=claims.jti,
            expires_at=claims.expires_at.isoformat(),
        )


class LogoutAllResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    revoked: int


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
