"""
sessions/models.py -- Domain dataclasses for device sessions and security alerts.

These are pure data containers with zero logic. Session upsert rules live in
sessions/store.py; anomaly policy lives in sessions/detector.py.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class AlertType(str, Enum):
    new_device = "new_device"
    impossible_travel = "impossible_travel"
    multiple_failures = "multiple_failures"
    recovery_code_used = "recovery_code_used"


@dataclass
class SessionRecord:
    """One (subject, device fingerprint) pair and its activity.

    active is the soft-delete flag; terminated sessions are kept for audit.
    trusted_until is independent of active: a device is trusted only while
    the session is active AND trusted_until is in the future.

    new_device stays True from first sighting until the monitor acknowledges
    it. is_new_device is set on the record returned by track() only, and
    tells the caller that this very call created the row.
    """

    session_id: str
    subject_id: str
    device_fingerprint: str
    user_agent: str
    created_at: datetime
    last_active_at: datetime
    active: bool = True
    ip_address: str | None = None
    trusted_until: datetime | None = None
    new_device: bool = False
    is_new_device: bool = False


@dataclass
class SecurityAlert:
    """An append-only security event. resolved_at only ever goes from None to a time."""

    id: str
    subject_id: str
    alert_type: AlertType
    created_at: datetime
    resolved_at: datetime | None = None
    metadata: dict = field(default_factory=dict)

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None


@dataclass
class AnomalyPolicy:
    stale_days: int = 30
    simultaneous_session_threshold: int = 5
    impossible_travel_threshold: int = 2


@dataclass
class AnomalyReport:
    """Structured result of DetectAnomalies. Computed, never stored."""

    subject_id: str
    generated_at: datetime
    simultaneous_sessions: int = 0
    device_count: int = 0
    browsers: list[str] = field(default_factory=list)
    network_addresses: list[str] = field(default_factory=list)
    multiple_browsers: bool = False
    multiple_locations: bool = False
    suspicious_location: bool = False
    new_device: bool = False
    new_device_sessions: list[str] = field(default_factory=list)
    stale_sessions: list[str] = field(default_factory=list)
    recent_activity: list[dict] = field(default_factory=list)
    recommended_alerts: list[AlertType] = field(default_factory=list)


@dataclass
class ScanResult:
    """What one SecurityMonitor.scan() pass did."""

    report: AnomalyReport
    raised: list[SecurityAlert] = field(default_factory=list)
    skipped: list[AlertType] = field(default_factory=list)
