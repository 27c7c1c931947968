"""
sessions/monitor.py -- Scheduled escalation of anomaly reports into alerts.

The detector never writes; this is the caller that decides. scan() is meant
to be run by an external scheduler (`python main.py scan SUBJECT_ID`) or on
demand from the admin API. Re-running it is harmless: an alert type that
already has an unresolved alert for the subject is skipped, and new-device
sessions are acknowledged once their alert exists so they are not reported
again.
"""

from __future__ import annotations

import logging

from sessions.alerts import AlertService
from sessions.detector import AnomalyDetector
from sessions.models import AlertType, AnomalyReport, ScanResult
from sessions.tracker import SessionTracker

logger = logging.getLogger("sessionguard.monitor")


def _alert_metadata(alert_type: AlertType, report: AnomalyReport) -> dict:
    if alert_type is AlertType.impossible_travel:
        return {
            "message": f"Login from {len(report.network_addresses)} different IP addresses within active sessions",
            "ip_addresses": report.network_addresses,
        }
    if alert_type is AlertType.new_device:
        return {"message": "Login from a device not seen before", "sessions": report.new_device_sessions}
    return {
        "message": f"{report.simultaneous_sessions} simultaneous active sessions",
        "simultaneous_sessions": report.simultaneous_sessions,
    }


class SecurityMonitor:
    def __init__(self, detector: AnomalyDetector, alerts: AlertService, tracker: SessionTracker) -> None:
        self._detector = detector
        self._alerts = alerts
        self._tracker = tracker

    def scan(self, subject_id: str) -> ScanResult:
        report = self._detector.detect(subject_id)
        result = ScanResult(report=report)
        for alert_type in report.recommended_alerts:
            if self._alerts.has_unresolved(subject_id, alert_type):
                result.skipped.append(alert_type)
                continue
            result.raised.append(
                self._alerts.raise_alert(subject_id, alert_type, _alert_metadata(alert_type, report))
            )

        if AlertType.new_device in report.recommended_alerts:
            for session_id in report.new_device_sessions:
                self._tracker.acknowledge_device(session_id)

        logger.info(
            "Scan subject=%s... raised=%d skipped=%d",
            subject_id[:8],
            len(result.raised),
            len(result.skipped),
        )
        return result
