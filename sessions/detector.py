"""
sessions/detector.py -- Anomaly Detector over active device sessions.

build_report() is a pure function of the session rows it is given and `now`;
AnomalyDetector.detect() only reads the store and hands the rows over. Nothing
here writes alerts -- sessions/monitor.py decides what to escalate -- so
detect() can run on any cadence without changing behavior.

Policy (thresholds from AnomalyPolicy / Settings):
  multiple_browsers    more than one browser/platform signature
  multiple_locations   more than one distinct network address
  suspicious_location  more addresses than impossible_travel_threshold
                       -> recommends impossible_travel
  new_device           a session still marked first-seen, and the subject has
                       more than one known device (the first device ever seen
                       is the baseline, not an anomaly) -> recommends new_device
  simultaneous         more active sessions than the threshold
                       -> recommends multiple_failures
  stale                last_active_at older than stale_days
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from core.clock import Clock, utc_now
from core.config import Settings, get_settings
from core.errors import storage_errors
from sessions.models import AlertType, AnomalyPolicy, AnomalyReport, SessionRecord
from sessions.store import SessionStore

logger = logging.getLogger("sessionguard.detector")

# Order matters: Edge and Opera UAs also contain "Chrome", Chrome UAs also
# contain "Safari".
_BROWSER_RULES: list[tuple[tuple[str, ...], str]] = [
    (("Edg/", "Edge"), "Edge"),
    (("OPR/", "Opera"), "Opera"),
    (("Firefox", "FxiOS"), "Firefox"),
    (("Chrome", "CriOS"), "Chrome"),
    (("Safari",), "Safari"),
    (("MSIE", "Trident"), "Internet Explorer"),
]

_PLATFORM_RULES: list[tuple[tuple[str, ...], str]] = [
    (("iPhone", "iPad", "iPod"), "iOS"),
    (("Android",), "Android"),
    (("Windows",), "Windows"),
    (("Macintosh", "Mac OS X"), "macOS"),
    (("CrOS",), "ChromeOS"),
    (("Linux",), "Linux"),
]


def _first_match(value: str, rules: list[tuple[tuple[str, ...], str]]) -> str:
    for needles, label in rules:
        if any(n in value for n in needles):
            return label
    return "Unknown"


def classify_user_agent(user_agent: str | None) -> tuple[str, str]:
    """Return (browser, platform) by substring classification."""
    ua = user_agent or ""
    return _first_match(ua, _BROWSER_RULES), _first_match(ua, _PLATFORM_RULES)


def build_report(
    subject_id: str,
    sessions: list[SessionRecord],
    known_devices: int,
    now: datetime,
    policy: AnomalyPolicy,
) -> AnomalyReport:
    active = [s for s in sessions if s.active]
    signatures: set[str] = set()
    addresses: list[str] = []
    stale_before = now - timedelta(days=policy.stale_days)
    report = AnomalyReport(subject_id=subject_id, generated_at=now, simultaneous_sessions=len(active))

    for session in active:
        browser, platform = classify_user_agent(session.user_agent)
        signatures.add(f"{browser} on {platform}")
        if session.ip_address and session.ip_address not in addresses:
            addresses.append(session.ip_address)
        if session.last_active_at < stale_before:
            report.stale_sessions.append(session.session_id)
        if session.new_device:
            report.new_device_sessions.append(session.session_id)
        report.recent_activity.append(
            {
                "session_id": session.session_id,
                "last_active_at": session.last_active_at.isoformat(),
                "browser": browser,
                "platform": platform,
                "ip_address": session.ip_address or "Unknown",
            }
        )

    report.device_count = len({s.device_fingerprint for s in active})
    report.browsers = sorted(signatures)
    report.network_addresses = addresses
    report.multiple_browsers = len(signatures) > 1
    report.multiple_locations = len(addresses) > 1
    report.suspicious_location = len(addresses) > policy.impossible_travel_threshold
    report.new_device = bool(report.new_device_sessions) and known_devices > 1

    if report.new_device:
        report.recommended_alerts.append(AlertType.new_device)
    if report.suspicious_location:
        report.recommended_alerts.append(AlertType.impossible_travel)
    if report.simultaneous_sessions > policy.simultaneous_session_threshold:
        report.recommended_alerts.append(AlertType.multiple_failures)
    return report


class AnomalyDetector:
    def __init__(self, store: SessionStore, settings: Settings | None = None, clock: Clock = utc_now) -> None:
        self._store = store
        settings = settings or get_settings()
        self._policy = AnomalyPolicy(
            stale_days=settings.session_stale_days,
            simultaneous_session_threshold=settings.simultaneous_session_threshold,
            impossible_travel_threshold=settings.impossible_travel_threshold,
        )
        self._clock = clock

    @property
    def policy(self) -> AnomalyPolicy:
        return self._policy

    def detect(self, subject_id: str) -> AnomalyReport:
        """Read-only: compute the anomaly report for the subject's active sessions."""
        with storage_errors("detector.detect"):
            sessions = self._store.list_sessions(subject_id, active_only=True)
            known_devices = self._store.count_known_devices(subject_id)
        report = build_report(subject_id, sessions, known_devices, self._clock(), self._policy)
        if report.recommended_alerts:
            logger.info(
                "Anomalies for subject=%s...: %s",
                subject_id[:8],
                ",".join(a.value for a in report.recommended_alerts),
            )
        return report
