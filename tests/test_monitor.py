"""
tests/test_monitor.py -- SecurityMonitor.scan(): detection escalated to alerts.
"""

from __future__ import annotations

import pytest
from conftest import RecordingNotifier

from sessions.alerts import AlertService
from sessions.detector import AnomalyDetector
from sessions.models import AlertType
from sessions.monitor import SecurityMonitor
from sessions.tracker import SessionTracker

UA_CHROME = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/126.0 Safari/537.36"
UA_FIREFOX = "Mozilla/5.0 (X11; Linux x86_64; rv:128.0) Gecko/20100101 Firefox/128.0"


@pytest.fixture
def tracker(session_store, settings, clock) -> SessionTracker:
    return SessionTracker(session_store, settings, clock=clock)


@pytest.fixture
def alerts(session_store, identity_store, clock) -> AlertService:
    return AlertService(session_store, RecordingNotifier(), subjects=identity_store, clock=clock)


@pytest.fixture
def monitor(session_store, settings, clock, alerts, tracker) -> SecurityMonitor:
    return SecurityMonitor(AnomalyDetector(session_store, settings, clock=clock), alerts, tracker)


def test_quiet_subject_raises_nothing(monitor, tracker, customer):
    tracker.track(customer.id, "fp-a", UA_CHROME, "203.0.113.1")
    result = monitor.scan(customer.id)
    assert result.raised == [] and result.skipped == []


def test_new_device_raises_once(monitor, tracker, alerts, customer):
    tracker.track(customer.id, "fp-a", UA_CHROME)
    tracker.track(customer.id, "fp-b", UA_FIREFOX)

    result = monitor.scan(customer.id)
    assert [a.alert_type for a in result.raised] == [AlertType.new_device]
    assert len(result.raised[0].metadata["sessions"]) == 2

    # Sessions are acknowledged, so a rescan finds nothing new.
    again = monitor.scan(customer.id)
    assert again.raised == []
    assert again.report.new_device is False
    assert len(alerts.list_unresolved(customer.id)) == 1


def test_open_alert_of_same_type_is_skipped(monitor, tracker, alerts, customer):
    for i in range(1, 4):
        tracker.track(customer.id, f"fp-{i}", UA_CHROME, f"203.0.113.{i}")
    first = monitor.scan(customer.id)
    assert AlertType.impossible_travel in [a.alert_type for a in first.raised]

    second = monitor.scan(customer.id)
    assert second.skipped == [AlertType.impossible_travel]

    travel = next(a for a in first.raised if a.alert_type is AlertType.impossible_travel)
    assert set(travel.metadata["ip_addresses"]) == {"203.0.113.1", "203.0.113.2", "203.0.113.3"}

    alerts.resolve(travel.id)
    third = monitor.scan(customer.id)
    assert [a.alert_type for a in third.raised] == [AlertType.impossible_travel]
