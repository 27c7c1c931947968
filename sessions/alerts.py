"""
sessions/alerts.py -- Security alerts and out-of-band notifier delivery.

raise_alert() is a pure append followed by a fire-and-forget notification.
The alert row is committed before the notifier runs, and any notifier
failure is logged and dropped: a broken mail relay or webhook must never
lose or roll back the security record. On successful delivery the alert's
metadata is stamped with notification_sent / notification_time.

Notifiers:
  LoggingNotifier  renders the subject line and body an email would carry and
                   writes them to the log. Default when no webhook is set.
  WebhookNotifier  POSTs the alert as JSON to ALERT_WEBHOOK_URL via requests.
"""

from __future__ import annotations

import logging
from typing import Protocol

import requests

from auth.models import Subject
from auth.roles import RoleStore
from core.clock import Clock, utc_now
from core.config import Settings
from core.errors import AlertNotFound, storage_errors
from sessions.models import AlertType, SecurityAlert
from sessions.store import SessionStore

logger = logging.getLogger("sessionguard.alerts")

ALERT_TITLES: dict[AlertType, str] = {
    AlertType.new_device: "New Device Login",
    AlertType.impossible_travel: "Login from Unusual Location",
    AlertType.multiple_failures: "Multiple Failed Login Attempts",
    AlertType.recovery_code_used: "Recovery Code Used",
}

_WEBHOOK_TIMEOUT = 5


def render_alert(alert: SecurityAlert) -> tuple[str, str]:
    """Return (subject line, body) for a human-facing notification."""
    title = ALERT_TITLES.get(alert.alert_type, alert.alert_type.value)
    details = "\n".join(f"{k}: {v}" for k, v in alert.metadata.items()) or "(none)"
    body = (
        "A security alert has been triggered for your account.\n"
        f"Alert Type: {title}\n"
        f"Time: {alert.created_at.isoformat()}\n"
        f"Details:\n{details}\n"
        "If this wasn't you, please secure your account immediately."
    )
    return f"Security Alert: {title}", body


# ---------------------------------------------------------------------------
# Notifiers
# ---------------------------------------------------------------------------


class Notifier(Protocol):
    def notify(self, alert: SecurityAlert, recipient: Subject | None) -> None:
        """Deliver the alert. Raise on failure; the caller logs and moves on."""


class LoggingNotifier:
    def notify(self, alert: SecurityAlert, recipient: Subject | None) -> None:
        subject_line, body = render_alert(alert)
        logger.info(
            "Notification to=%s subject=%r\n%s",
            recipient.email if recipient else "unknown",
            subject_line,
            body,
        )


class WebhookNotifier:
    """POST alerts to a webhook. One pooled session; redirects capped like every outbound call."""

    def __init__(self, url: str, session: requests.Session | None = None) -> None:
        self.url = url
        self._session = session or requests.Session()
        self._session.max_redirects = 3

    def notify(self, alert: SecurityAlert, recipient: Subject | None) -> None:
        subject_line, body = render_alert(alert)
        payload = {
            "id": alert.id,
            "subject_id": alert.subject_id,
            "email": recipient.email if recipient else None,
            "alert_type": alert.alert_type.value,
            "created_at": alert.created_at.isoformat(),
            "metadata": alert.metadata,
            "title": subject_line,
            "body": body,
        }
        resp = self._session.post(self.url, json=payload, timeout=_WEBHOOK_TIMEOUT)
        resp.raise_for_status()


def build_notifier(settings: Settings) -> Notifier:
    if settings.alert_webhook_url:
        return WebhookNotifier(settings.alert_webhook_url)
    return LoggingNotifier()


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class AlertService:
    def __init__(
        self,
        store: SessionStore,
        notifier: Notifier | None = None,
        subjects: RoleStore | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._notifier = notifier or LoggingNotifier()
        self._subjects = subjects
        self._clock = clock

    def raise_alert(self, subject_id: str, alert_type: AlertType | str, metadata: dict | None = None) -> SecurityAlert:
        """Append a new unresolved alert, then hand it to the notifier."""
        kind = AlertType(alert_type)
        with storage_errors("alerts.raise"):
            alert = self._store.insert_alert(subject_id, kind, metadata or {})
        logger.warning("Security alert raised type=%s subject=%s...", kind.value, subject_id[:8])
        self._deliver(alert)
        return alert

    def _deliver(self, alert: SecurityAlert) -> None:
        try:
            recipient = self._subjects.get_subject(alert.subject_id) if self._subjects else None
            self._notifier.notify(alert, recipient)
            alert.metadata = {
                **alert.metadata,
                "notification_sent": True,
                "notification_time": self._clock().isoformat(),
            }
            self._store.update_alert_metadata(alert.id, alert.metadata)
        except Exception:
            logger.exception("Notification delivery failed for alert=%s", alert.id[:8])

    def resolve(self, alert_id: str) -> SecurityAlert:
        """Mark resolved. Resolving an already-resolved alert is a no-op."""
        with storage_errors("alerts.resolve"):
            if self._store.resolve_alert(alert_id):
                logger.info("Alert resolved alert=%s", alert_id[:8])
            alert = self._store.get_alert(alert_id)
        if alert is None:
            raise AlertNotFound()
        return alert

    def get(self, alert_id: str) -> SecurityAlert:
        with storage_errors("alerts.get"):
            alert = self._store.get_alert(alert_id)
        if alert is None:
            raise AlertNotFound()
        return alert

    def list_unresolved(self, subject_id: str | None = None) -> list[SecurityAlert]:
        with storage_errors("alerts.list_unresolved"):
            return self._store.list_unresolved(subject_id)

    def has_unresolved(self, subject_id: str, alert_type: AlertType) -> bool:
        with storage_errors("alerts.has_unresolved"):
            return self._store.has_unresolved(subject_id, alert_type)
