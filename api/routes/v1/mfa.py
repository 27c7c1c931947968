"""
api/routes/v1/mfa.py -- TOTP enrollment and recovery codes.

Routes:
  POST   /api/v1/mfa/totp/enroll       -- start enrollment, returns secret + otpauth URI
  POST   /api/v1/mfa/totp/confirm      -- confirm with a first code, returns recovery codes
  POST   /api/v1/mfa/totp/verify       -- check a code (rl:mfa)
  DELETE /api/v1/mfa/totp              -- disable TOTP and drop recovery codes (current code, rl:mfa)
  POST   /api/v1/mfa/recovery-codes    -- replace recovery codes

All routes require auth and act on the caller's own subject only.
Secrets and recovery codes are returned once and never logged.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.guards import rate_limit
from api.models import RecoveryCodesResponse, TotpCodeRequest, TotpEnrollResponse, TotpVerifyResponse
from auth.dependencies import get_current_principal
from auth.models import Principal
from core.errors import MfaNotEnrolled

router = APIRouter()


@router.post("/mfa/totp/enroll", response_model=TotpEnrollResponse)
def enroll(request: Request, response: Response, principal: Principal = Depends(get_current_principal)):
    secret, uri = request.app.state.mfa.begin_enrollment(principal.subject.id)
    response.headers["Cache-Control"] = "no-store"
    return TotpEnrollResponse(secret=secret, provisioning_uri=uri)


@router.post("/mfa/totp/confirm", response_model=RecoveryCodesResponse)
def confirm(
    request: Request,
    response: Response,
    body: TotpCodeRequest,
    principal: Principal = Depends(get_current_principal),
):
    codes = request.app.state.mfa.confirm_enrollment(principal.subject.id, body.code)
    response.headers["Cache-Control"] = "no-store"
    return RecoveryCodesResponse(codes=codes)


@router.post("/mfa/totp/verify", response_model=TotpVerifyResponse, dependencies=[Depends(rate_limit("mfa"))])
def verify(request: Request, body: TotpCodeRequest, principal: Principal = Depends(get_current_principal)):
    return TotpVerifyResponse(valid=request.app.state.mfa.verify(principal.subject.id, body.code))


@router.delete("/mfa/totp", status_code=204, dependencies=[Depends(rate_limit("mfa"))])
def disable(
    request: Request,
    body: TotpCodeRequest,
    principal: Principal = Depends(get_current_principal),
) -> Response:
    """Turn TOTP off and drop recovery codes. The body must carry a current code."""
    request.app.state.mfa.disable(principal.subject.id, body.code)
    return Response(status_code=204)


@router.post("/mfa/recovery-codes", response_model=RecoveryCodesResponse)
def regenerate(request: Request, response: Response, principal: Principal = Depends(get_current_principal)):
    mfa = request.app.state.mfa
    if not mfa.is_enabled(principal.subject.id):
        raise MfaNotEnrolled()
    codes = mfa.regenerate_recovery_codes(principal.subject.id)
    response.headers["Cache-Control"] = "no-store"
    return RecoveryCodesResponse(codes=codes)
