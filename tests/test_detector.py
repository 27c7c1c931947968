"""
tests/test_detector.py -- Anomaly Detector: UA classification and report policy.

build_report() is exercised directly with hand-built SessionRecords; the
AnomalyDetector tests go through the tracker and store.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from sessions.detector import AnomalyDetector, build_report, classify_user_agent
from sessions.models import AlertType, AnomalyPolicy, SessionRecord
from sessions.tracker import SessionTracker

_NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

UA_CHROME_WIN = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/126.0 Safari/537.36"
UA_EDGE_WIN = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/126.0 Safari/537.36 Edg/126.0"
UA_SAFARI_IOS = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_5 like Mac OS X) AppleWebKit/605.1.15 Version/17.5 Safari/604.1"
UA_FIREFOX_LINUX = "Mozilla/5.0 (X11; Linux x86_64; rv:128.0) Gecko/20100101 Firefox/128.0"
UA_CHROME_ANDROID = "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 Chrome/126.0 Mobile Safari/537.36"


@pytest.mark.parametrize(
    ("ua", "expected"),
    [
        (UA_CHROME_WIN, ("Chrome", "Windows")),
        (UA_EDGE_WIN, ("Edge", "Windows")),
        (UA_SAFARI_IOS, ("Safari", "iOS")),
        (UA_FIREFOX_LINUX, ("Firefox", "Linux")),
        (UA_CHROME_ANDROID, ("Chrome", "Android")),
        ("curl/8.5.0", ("Unknown", "Unknown")),
        (None, ("Unknown", "Unknown")),
    ],
)
def test_classify_user_agent(ua, expected):
    assert classify_user_agent(ua) == expected


def _session(sid: str, fp: str, ua: str, ip: str | None = None, age: timedelta = timedelta(0), **kwargs):
    return SessionRecord(
        session_id=sid,
        subject_id="subject-x",
        device_fingerprint=fp,
        user_agent=ua,
        created_at=_NOW - age,
        last_active_at=_NOW - age,
        ip_address=ip,
        **kwargs,
    )


def test_single_session_is_quiet():
    report = build_report("subject-x", [_session("s1", "fp-a", UA_CHROME_WIN, "203.0.113.1")], 1, _NOW, AnomalyPolicy())
    assert report.simultaneous_sessions == 1
    assert report.device_count == 1
    assert not report.multiple_browsers
    assert not report.multiple_locations
    assert report.recommended_alerts == []


def test_first_device_is_baseline_not_new():
    report = build_report(
        "subject-x", [_session("s1", "fp-a", UA_CHROME_WIN, new_device=True)], 1, _NOW, AnomalyPolicy()
    )
    assert report.new_device is False
    assert report.new_device_sessions == ["s1"]


def test_browsers_and_locations():
    sessions = [
        _session("s1", "fp-a", UA_CHROME_WIN, "203.0.113.1"),
        _session("s2", "fp-b", UA_SAFARI_IOS, "198.51.100.7"),
    ]
    report = build_report("subject-x", sessions, 2, _NOW, AnomalyPolicy())
    assert report.multiple_browsers
    assert report.browsers == ["Chrome on Windows", "Safari on iOS"]
    assert report.multiple_locations
    assert not report.suspicious_location  # two addresses is at, not over, the threshold
    assert report.network_addresses == ["203.0.113.1", "198.51.100.7"]


def test_impossible_travel_over_threshold():
    sessions = [
        _session(f"s{i}", f"fp-{i}", UA_FIREFOX_LINUX, f"203.0.113.{i}") for i in range(1, 4)
    ]
    report = build_report("subject-x", sessions, 3, _NOW, AnomalyPolicy(impossible_travel_threshold=2))
    assert report.suspicious_location
    assert AlertType.impossible_travel in report.recommended_alerts


def test_simultaneous_session_threshold():
    sessions = [_session(f"s{i}", f"fp-{i}", UA_CHROME_WIN) for i in range(4)]
    policy = AnomalyPolicy(simultaneous_session_threshold=3)
    report = build_report("subject-x", sessions, 4, _NOW, policy)
    assert report.simultaneous_sessions == 4
    assert AlertType.multiple_failures in report.recommended_alerts


def test_stale_sessions_and_inactive_rows():
    sessions = [
        _session("fresh", "fp-a", UA_CHROME_WIN),
        _session("stale", "fp-b", UA_CHROME_WIN, age=timedelta(days=31)),
        _session("gone", "fp-c", UA_CHROME_WIN, active=False),
    ]
    report = build_report("subject-x", sessions, 3, _NOW, AnomalyPolicy(stale_days=30))
    assert report.stale_sessions == ["stale"]
    assert report.simultaneous_sessions == 2
    assert {a["session_id"] for a in report.recent_activity} == {"fresh", "stale"}


def test_missing_address_is_reported_as_unknown():
    report = build_report("subject-x", [_session("s1", "fp-a", UA_CHROME_WIN)], 1, _NOW, AnomalyPolicy())
    assert report.network_addresses == []
    assert report.recent_activity[0]["ip_address"] == "Unknown"


# ---------------------------------------------------------------------------
# AnomalyDetector over the store
# ---------------------------------------------------------------------------


@pytest.fixture
def tracker(session_store, settings, clock) -> SessionTracker:
    return SessionTracker(session_store, settings, clock=clock)


@pytest.fixture
def detector(session_store, settings, clock) -> AnomalyDetector:
    return AnomalyDetector(session_store, settings, clock=clock)


def test_second_fingerprint_is_a_new_device(tracker, detector):
    tracker.track("subject-x", "fingerprintA", UA_CHROME_WIN)
    tracker.track("subject-x", "fingerprintB", UA_SAFARI_IOS)
    report = detector.detect("subject-x")
    assert report.new_device is True
    assert report.device_count == 2
    assert AlertType.new_device in report.recommended_alerts


def test_detect_is_read_only(tracker, detector, session_store):
    tracker.track("subject-x", "fingerprintA", UA_CHROME_WIN)
    tracker.track("subject-x", "fingerprintB", UA_SAFARI_IOS)
    first = detector.detect("subject-x")
    second = detector.detect("subject-x")
    assert first.recommended_alerts == second.recommended_alerts
    assert session_store.list_unresolved("subject-x") == []


def test_acknowledged_devices_are_not_new(tracker, detector):
    for fp in ("fingerprintA", "fingerprintB"):
        record = tracker.track("subject-x", fp, UA_CHROME_WIN)
        tracker.acknowledge_device(record.session_id)
    assert detector.detect("subject-x").new_device is False


def test_terminated_sessions_are_ignored(tracker, detector):
    tracker.track("subject-x", "fingerprintA", UA_CHROME_WIN, "203.0.113.1")
    other = tracker.track("subject-x", "fingerprintB", UA_SAFARI_IOS, "198.51.100.7")
    tracker.terminate(other.session_id)
    report = detector.detect("subject-x")
    assert report.device_count == 1
    assert not report.multiple_locations


def test_policy_comes_from_settings(detector, settings):
    assert detector.policy.stale_days == settings.session_stale_days
    assert detector.policy.impossible_travel_threshold == settings.impossible_travel_threshold
