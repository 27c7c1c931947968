"""
api/routes/v1/sessions.py -- Device session tracking for the caller's own account.

Routes:
  POST   /api/v1/sessions/track              -- upsert the current device session
  GET    /api/v1/sessions                    -- list active sessions
  GET    /api/v1/sessions/anomalies          -- anomaly report for own sessions
  DELETE /api/v1/sessions/{id}               -- terminate one own session
  POST   /api/v1/sessions/terminate-others   -- terminate all but one own session
  POST   /api/v1/sessions/trust              -- mark a device as trusted

All routes require auth. IDOR guard: every tracker call is scoped to the
caller's subject id, so another subject's session ids behave as unknown ids.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.guards import client_address
from api.models import (
    AnomalyReportResponse,
    SessionResponse,
    TerminateOthersRequest,
    TerminateOthersResponse,
    TrackSessionRequest,
    TrustDeviceRequest,
)
from auth.dependencies import get_current_principal
from auth.models import Principal
from core.errors import SessionNotFound

router = APIRouter()


@router.post("/sessions/track", response_model=SessionResponse)
def track(
    request: Request,
    body: TrackSessionRequest,
    principal: Principal = Depends(get_current_principal),
) -> SessionResponse:
    """Called after login and periodically while the client stays open."""
    record = request.app.state.session_tracker.track(
        principal.subject.id,
        body.device_fingerprint,
        body.user_agent or request.headers.get("User-Agent", ""),
        client_address(request),
    )
    return SessionResponse.from_record(record)


@router.get("/sessions", response_model=list[SessionResponse])
def list_sessions(request: Request, principal: Principal = Depends(get_current_principal)) -> list[SessionResponse]:
    records = request.app.state.session_tracker.list_active(principal.subject.id)
    return [SessionResponse.from_record(r) for r in records]


@router.get("/sessions/anomalies", response_model=AnomalyReportResponse)
def anomalies(request: Request, principal: Principal = Depends(get_current_principal)) -> AnomalyReportResponse:
    report = request.app.state.anomaly_detector.detect(principal.subject.id)
    return AnomalyReportResponse.from_report(report)


@router.delete("/sessions/{session_id}", status_code=204)
def terminate(session_id: str, request: Request, principal: Principal = Depends(get_current_principal)) -> Response:
    request.app.state.session_tracker.terminate(session_id, subject_id=principal.subject.id)
    return Response(status_code=204)


@router.post("/sessions/terminate-others", response_model=TerminateOthersResponse)
def terminate_others(
    request: Request,
    body: TerminateOthersRequest,
    principal: Principal = Depends(get_current_principal),
) -> TerminateOthersResponse:
    tracker = request.app.state.session_tracker
    keep = tracker.get(body.keep_session_id)
    if keep.subject_id != principal.subject.id:
        raise SessionNotFound()
    return TerminateOthersResponse(terminated=tracker.terminate_others(principal.subject.id, keep.session_id))


@router.post("/sessions/trust", response_model=SessionResponse)
def trust(
    request: Request,
    body: TrustDeviceRequest,
    principal: Principal = Depends(get_current_principal),
) -> SessionResponse:
    record = request.app.state.session_tracker.trust_device(principal.subject.id, body.device_fingerprint, body.days)
    return SessionResponse.from_record(record)
