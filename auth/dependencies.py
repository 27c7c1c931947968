"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token sources are checked in priority order:
  1. Authorization: Bearer <token> header -- API clients.
  2. JWT cookie ("access_token") -- set by the ceremony finish routes.

Bearer wins so that an API client holding an impersonation pair is never
silently downgraded to whatever cookie the browser happens to carry.

try_get_principal() is the soft variant (returns None on failure).
get_current_principal() wraps it and raises HTTP 401 if unauthenticated.
require_admin() runs the role check through auth.roles.require_role(); a
failure surfaces as InsufficientPrivilege, which api/main.py renders as 403.

Layer rule: no imports from api/, sessions/, or ratelimit/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from auth.models import Principal
from auth.roles import require_role


def _bearer_or_cookie(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:]
    return request.cookies.get("access_token")


def try_get_principal(request: Request) -> Principal | None:
    """Authenticate the request. Returns None on any failure, never raises."""
    token = _bearer_or_cookie(request)
    if not token:
        return None
    provider = request.app.state.identity_provider
    claims = provider.decode(token)
    if claims is None:
        return None
    subject = provider.resolve_subject(claims["sub"])
    if subject is None or not subject.is_active:
        return None
    return Principal(subject=subject, claims=claims)


def get_current_principal(request: Request) -> Principal:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(principal: Principal = Depends(get_current_principal)): ...
    """
    principal = try_get_principal(request)
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return principal


def require_admin(request: Request, principal: Principal = Depends(get_current_principal)) -> Principal:
    """Require the configured admin role. 401 if unauthenticated, 403 if not admin."""
    settings = request.app.state.settings
    require_role(request.app.state.identity_store, principal.subject.id, settings.admin_role)
    return principal
