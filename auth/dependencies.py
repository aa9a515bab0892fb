"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The access token arrives as an Authorization: Bearer <token> header and goes
through AuthService.authenticate(), which validates the signature
and expiry and then consults the blacklist. The request is authenticated by
the token's claims alone; the credential store is not read per request.

get_current_claims() raises HTTP 401 carrying the failure's error code
(TOKEN_INVALID, TOKEN_EXPIRED, TOKEN_REVOKED) so clients know whether to
refresh or log in again.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import TokenClaims
from auth.service import AuthService
from core.errors import AuthError


def bearer_token(request: Request) -> str | None:
    """Return the raw access token from the Authorization header, if any."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def get_current_claims(request: Request) -> TokenClaims:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(claims: TokenClaims = Depends(get_current_claims)): ...
    """
    token = bearer_token(request)
    if not token:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    service: AuthService = request.app.state.auth_service
    try:
        return service.authenticate(token)
    except AuthError as exc:
        raise HTTPException(
            status_code=401,
            detail={"code": exc.code.value, "message": exc.message},
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
