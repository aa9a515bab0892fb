"""
api/routes/v1/auth.py -- Session lifecycle REST endpoints.

Routes:
  POST /api/v1/auth/register     -- create account; returns a token pair (201)
  POST /api/v1/auth/login        -- password login; returns a token pair
  POST /api/v1/auth/refresh      -- rotate refresh token; returns a new pair
  POST /api/v1/auth/logout       -- revoke refresh token, blacklist access token
  POST /api/v1/auth/logout-all   -- revoke every refresh token of the caller (requires auth)
  GET  /api/v1/auth/me           -- claims of the presented access token (requires auth)

Handlers are thin: they pull the client address, call AuthService, and map
the domain result onto a response model. AuthError subclasses raised by the
service are turned into status codes by the handlers in api/main.py.

Handlers are plain `def`: AuthService does blocking bcrypt and SQLAlchemy
work, and FastAPI runs sync handlers on its threadpool.

Security:
  [H2] login / register / refresh are rate-limited per client IP
       (LOGIN_RATE_LIMIT, default 10/minute).
  [M5] Cache-Control: no-store on every response that carries tokens.
  Client IP for refresh-token provenance is the first X-Forwarded-For hop,
  else the socket peer. Deploy behind a proxy that overwrites that header.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import limiter
from api.models import (
    LoginRequest,
    LogoutAllResponse,
    LogoutRequest,
    MeResponse,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    SessionResponse,
)
from auth.dependencies import bearer_token, get_current_claims
from auth.models import TokenClaims
from auth.service import AuthService
from core.config import get_settings

# Auth policy:
# - POST /api/v1/auth/register:    public (may be disabled by SELF_REGISTRATION_ENABLED)
# - POST /api/v1/auth/login:       public
# - POST /api/v1/auth/refresh:     public -- the refresh token is the credential
# - POST /api/v1/auth/logout:      public -- the tokens in the body are the credential
# - POST /api/v1/auth/logout-all:  requires auth (get_current_claims)
# - GET  /api/v1/auth/me:          requires auth (get_current_claims)
router = APIRouter()


def _login_rate_limit() -> str:
    return get_settings().login_rate_limit


def client_ip(request: Request) -> str | None:
    """First X-Forwarded-For hop if present, else the direct peer address."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else None


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=SessionResponse, status_code=201)
def register(request: Request, response: Response, body: RegisterRequest) -> SessionResponse:
    """Create a principal with ROLE_USER and return its first token pair."""
    session = _service(request).register(body.username, body.email, body.password, client_ip(request))
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return SessionResponse.from_session(session)


@limiter.limit(_login_rate_limit)  # [H2]
@router.post("/auth/login", response_model=SessionResponse)
def login(request: Request, response: Response, body: LoginRequest) -> SessionResponse:
    """Authenticate with username and password.

    Wrong username and wrong password produce the same 401 INVALID_CREDENTIALS
    so the endpoint does not leak which usernames exist. A locked account gets
    423 with Retry-After.
    """
    session = _service(request).login(body.username, body.password, client_ip(request))
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return SessionResponse.from_session(session)


@limiter.limit(_login_rate_limit)  # [H2]
@router.post("/auth/refresh", response_model=SessionResponse)
def refresh(request: Request, response: Response, body: RefreshRequest) -> SessionResponse:
    """Exchange a refresh token for a new pair. The presented token is revoked."""
    session = _service(request).refresh(body.refresh_token, client_ip(request))
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return SessionResponse.from_session(session)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, body: LogoutRequest) -> MessageResponse:
    """End one session. Always 200, even for unknown or already-revoked tokens."""
    access_token = body.access_token or bearer_token(request)
    _service(request).logout(body.refresh_token, access_token)
    return MessageResponse(message="Logged out.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout-all", response_model=LogoutAllResponse)
def logout_all(request: Request, claims: TokenClaims = Depends(get_current_claims)) -> LogoutAllResponse:
    """Revoke every refresh token of the caller and blacklist the presented access token."""
    service = _service(request)
    revoked = service.logout_all(claims.principal_id)
    service.logout(None, bearer_token(request))
    return LogoutAllResponse(revoked=revoked)


@router.get("/auth/me", response_model=MeResponse)
async def me(claims: TokenClaims = Depends(get_current_claims)) -> MeResponse:
    """Return the identity carried by the current access token."""
    return MeResponse.from_claims(claims)
