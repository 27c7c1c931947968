"""
api/routes/v1/auth.py -- Token lifecycle and recovery-code login.

Routes:
  POST /api/v1/auth/refresh    -- rotate a token pair (public, rl:refresh)
  POST /api/v1/auth/logout     -- revoke the current pair, clear cookie (requires auth)
  GET  /api/v1/auth/me         -- current identity, including impersonation (requires auth)
  POST /api/v1/auth/recovery   -- one-time recovery-code login (public, rl:recovery)

Security:
  [H3] /refresh and /recovery go through the durable rate limiter.
  [M5] Cache-Control: no-store on every response carrying tokens.
  Recovery failures return the same CodeInvalid error whether the email is
  unknown or the code is wrong, so the route does not reveal which emails
  have accounts.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.guards import rate_limit
from api.models import MeResponse, RecoveryLoginRequest, RefreshRequest, TokenResponse
from auth.dependencies import get_current_principal
from auth.models import Principal, TokenPair
from auth.tokens import set_auth_cookie
from core.errors import CodeInvalid

# Auth policy:
# - POST /auth/refresh:    public -- the refresh token is the credential; rl:refresh
# - POST /auth/logout:     requires auth (get_current_principal)
# - GET  /auth/me:         requires auth (get_current_principal)
# - POST /auth/recovery:   public -- rl:recovery
router = APIRouter()


def _token_response(pair: TokenPair) -> JSONResponse:
    resp = JSONResponse(content=TokenResponse.from_pair(pair).model_dump(mode="json"))
    set_auth_cookie(resp, pair.access_token, pair.expires_in)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/refresh", response_model=TokenResponse, dependencies=[Depends(rate_limit("refresh"))])
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Rotate the pair. The presented refresh token is revoked and cannot be reused."""
    pair = request.app.state.identity_provider.refresh(body.refresh_token)
    return _token_response(pair)


@router.post("/auth/logout")
def logout(request: Request, principal: Principal = Depends(get_current_principal)) -> JSONResponse:
    """Revoke the current pair (access and refresh) and clear the cookie."""
    request.app.state.identity_provider.revoke_session(principal.session_id)
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie("access_token")
    return resp


@router.get("/auth/me", response_model=MeResponse)
def me(principal: Principal = Depends(get_current_principal)) -> MeResponse:
    """Return identity information for the authenticated caller.

    impersonated_by is the admin's subject id when the caller holds an
    impersonation pair.
    """
    subject = principal.subject
    return MeResponse(
        subject_id=subject.id,
        email=subject.email,
        display_name=subject.display_name,
        role=subject.role,
        impersonated_by=principal.actor,
    )


@router.post("/auth/recovery", response_model=TokenResponse, dependencies=[Depends(rate_limit("recovery"))])
def recovery_login(request: Request, body: RecoveryLoginRequest) -> JSONResponse:
    """Sign in with a single-use recovery code when no authenticator is available."""
    state = request.app.state
    subject = state.identity_store.get_by_email(body.email)
    if subject is None or not subject.is_active or not state.mfa.use_recovery_code(subject.id, body.code):
        raise CodeInvalid()
    pair = state.identity_provider.issue_token_pair(subject.id)
    return _token_response(pair)
