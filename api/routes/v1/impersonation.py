"""
api/routes/v1/impersonation.py -- Admin impersonation.

Routes:
  POST /api/v1/impersonation/start    -- admin only, rl:impersonate
  POST /api/v1/impersonation/stop     -- impersonation pair or the admin's own pair
  GET  /api/v1/impersonation/status   -- who is acting as whom

Stop accepts either credential:
  - the impersonation pair itself: restoration uses its signed actor claim,
    so any instance can serve it;
  - the admin's own pair: restoration uses the context this instance holds.
Both return a fresh pair for the admin and install it as the cookie.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.guards import rate_limit
from api.models import ImpersonationStartRequest, ImpersonationStatusResponse, TokenResponse
from auth.dependencies import get_current_principal, require_admin
from auth.models import Principal, TokenPair
from auth.tokens import set_auth_cookie

router = APIRouter()


def _install(pair: TokenPair) -> JSONResponse:
    resp = JSONResponse(content=TokenResponse.from_pair(pair).model_dump(mode="json"))
    set_auth_cookie(resp, pair.access_token, pair.expires_in)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post(
    "/impersonation/start",
    response_model=TokenResponse,
    dependencies=[Depends(rate_limit("impersonate"))],
)
def start(
    request: Request,
    body: ImpersonationStartRequest,
    admin: Principal = Depends(require_admin),
) -> JSONResponse:
    pair = request.app.state.impersonation.start(admin.subject.id, body.target_subject_id)
    return _install(pair)


@router.post("/impersonation/stop", response_model=TokenResponse)
def stop(request: Request, principal: Principal = Depends(get_current_principal)) -> JSONResponse:
    broker = request.app.state.impersonation
    if principal.actor:
        pair = broker.stop_with_claims(principal.claims)
    else:
        pair = broker.stop(principal.subject.id)
    return _install(pair)


@router.get("/impersonation/status", response_model=ImpersonationStatusResponse)
def status(request: Request, principal: Principal = Depends(get_current_principal)) -> ImpersonationStatusResponse:
    if principal.actor:
        return ImpersonationStatusResponse(
            impersonating=True,
            target_subject_id=principal.subject.id,
            original_subject_id=principal.actor,
        )
    context = request.app.state.impersonation.context_for(principal.subject.id)
    if context is None:
        return ImpersonationStatusResponse(impersonating=False)
    return ImpersonationStatusResponse(
        impersonating=True,
        target_subject_id=context.target_subject_id,
        original_subject_id=context.admin_subject_id,
        issued_at=context.issued_at,
    )
