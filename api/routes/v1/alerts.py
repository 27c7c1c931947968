"""
api/routes/v1/alerts.py -- Security alerts and admin anomaly tooling.

Routes:
  GET  /api/v1/alerts                          -- own unresolved alerts (requires auth)
  GET  /api/v1/admin/alerts                    -- all unresolved alerts (admin)
  POST /api/v1/admin/alerts                    -- raise an alert (admin)
  POST /api/v1/admin/alerts/{id}/resolve       -- resolve an alert (admin)
  GET  /api/v1/admin/subjects/{id}/anomalies   -- anomaly report for a subject (admin)
  POST /api/v1/admin/subjects/{id}/scan        -- detect and escalate (admin)

Only unresolved alerts are surfaced. Resolution is idempotent and one-way.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request

from api.models import AlertResponse, AnomalyReportResponse, RaiseAlertRequest, ScanResponse
from auth.dependencies import get_current_principal, require_admin
from auth.models import Principal
from core.errors import SubjectNotFound

router = APIRouter()


def _require_subject(request: Request, subject_id: str) -> None:
    if request.app.state.identity_store.get_subject(subject_id) is None:
        raise SubjectNotFound()


@router.get("/alerts", response_model=list[AlertResponse])
def own_alerts(request: Request, principal: Principal = Depends(get_current_principal)) -> list[AlertResponse]:
    alerts = request.app.state.alert_service.list_unresolved(principal.subject.id)
    return [AlertResponse.from_alert(a) for a in alerts]


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


@router.get("/admin/alerts", response_model=list[AlertResponse])
def all_alerts(
    request: Request,
    subject_id: Optional[str] = None,
    _admin: Principal = Depends(require_admin),
) -> list[AlertResponse]:
    alerts = request.app.state.alert_service.list_unresolved(subject_id)
    return [AlertResponse.from_alert(a) for a in alerts]


@router.post("/admin/alerts", response_model=AlertResponse, status_code=201)
def raise_alert(
    request: Request,
    body: RaiseAlertRequest,
    _admin: Principal = Depends(require_admin),
) -> AlertResponse:
    _require_subject(request, body.subject_id)
    alert = request.app.state.alert_service.raise_alert(body.subject_id, body.alert_type, body.metadata)
    return AlertResponse.from_alert(alert)


@router.post("/admin/alerts/{alert_id}/resolve", response_model=AlertResponse)
def resolve_alert(alert_id: str, request: Request, _admin: Principal = Depends(require_admin)) -> AlertResponse:
    return AlertResponse.from_alert(request.app.state.alert_service.resolve(alert_id))


@router.get("/admin/subjects/{subject_id}/anomalies", response_model=AnomalyReportResponse)
def subject_anomalies(
    subject_id: str,
    request: Request,
    _admin: Principal = Depends(require_admin),
) -> AnomalyReportResponse:
    _require_subject(request, subject_id)
    return AnomalyReportResponse.from_report(request.app.state.anomaly_detector.detect(subject_id))


@router.post("/admin/subjects/{subject_id}/scan", response_model=ScanResponse)
def scan_subject(subject_id: str, request: Request, _admin: Principal = Depends(require_admin)) -> ScanResponse:
    _require_subject(request, subject_id)
    result = request.app.state.security_monitor.scan(subject_id)
    return ScanResponse(
        report=AnomalyReportResponse.from_report(result.report),
        raised=[AlertResponse.from_alert(a) for a in result.raised],
        skipped=result.skipped,
    )
