"""
sessions/tracker.py -- Session Tracker: device sessions per subject.

track() is called on every successful authentication and periodically while
a client stays open. It is an idempotent upsert keyed by (subject,
fingerprint), safe to call concurrently from several devices.

Terminating is a soft delete. Trust is separate from activity: a device is
trusted only while its session is active and trusted_until lies ahead.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from core.clock import Clock, utc_now
from core.config import Settings, get_settings
from core.errors import SessionNotFound, storage_errors
from sessions.models import SessionRecord
from sessions.store import SessionStore

logger = logging.getLogger("sessionguard.sessions")


class SessionTracker:
    def __init__(self, store: SessionStore, settings: Settings | None = None, clock: Clock = utc_now) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._clock = clock

    def track(
        self,
        subject_id: str,
        device_fingerprint: str,
        user_agent: str,
        ip_address: str | None = None,
    ) -> SessionRecord:
        """Create or refresh the session for this device.

        The returned record has is_new_device=True only when this call saw the
        fingerprint for the first time.
        """
        with storage_errors("sessions.track"):
            record, created = self._store.upsert_session(subject_id, device_fingerprint, user_agent, ip_address)
        record.is_new_device = created
        if created:
            logger.info("New device session subject=%s... session=%s", subject_id[:8], record.session_id[:8])
        return record

    def get(self, session_id: str) -> SessionRecord:
        with storage_errors("sessions.get"):
            record = self._store.get_session(session_id)
        if record is None:
            raise SessionNotFound()
        return record

    def list_active(self, subject_id: str) -> list[SessionRecord]:
        with storage_errors("sessions.list_active"):
            return self._store.list_sessions(subject_id, active_only=True)

    def terminate(self, session_id: str, subject_id: str | None = None) -> bool:
        """Deactivate one session. With subject_id, only the owner's session matches.

        Raises SessionNotFound when nothing matches; terminating an already
        inactive session succeeds.
        """
        with storage_errors("sessions.terminate"):
            found = self._store.deactivate(session_id, subject_id)
        if not found:
            raise SessionNotFound()
        logger.info("Session terminated session=%s", session_id[:8])
        return True

    def terminate_others(self, subject_id: str, keep_session_id: str) -> int:
        """Deactivate every other active session. keep_session_id is never touched."""
        with storage_errors("sessions.terminate_others"):
            count = self._store.deactivate_others(subject_id, keep_session_id)
        logger.info("Terminated %d other session(s) subject=%s...", count, subject_id[:8])
        return count

    # ------------------------------------------------------------------
    # Trusted devices
    # ------------------------------------------------------------------

    def trust_device(self, subject_id: str, device_fingerprint: str, days: int | None = None) -> SessionRecord:
        until = self._clock() + timedelta(days=days or self._settings.device_trust_days)
        with storage_errors("sessions.trust_device"):
            if not self._store.set_trusted_until(subject_id, device_fingerprint, until):
                raise SessionNotFound()
            record = self._store.get_by_fingerprint(subject_id, device_fingerprint)
        logger.info("Device trusted subject=%s... until=%s", subject_id[:8], until.isoformat())
        return record

    def is_trusted(self, subject_id: str, device_fingerprint: str) -> bool:
        with storage_errors("sessions.is_trusted"):
            record = self._store.get_by_fingerprint(subject_id, device_fingerprint)
        if record is None or not record.active or record.trusted_until is None:
            return False
        return record.trusted_until > self._clock()

    def acknowledge_device(self, session_id: str) -> bool:
        """Clear the new-device mark once the subject has been alerted about it."""
        with storage_errors("sessions.acknowledge_device"):
            return self._store.clear_new_device(session_id)
