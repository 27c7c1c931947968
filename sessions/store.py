"""
sessions/store.py -- SQLAlchemy Core persistence for device sessions and alerts.

Pattern: Repository + Data Mapper. SessionStore is the repository for both
collections; _row_to_session / _row_to_alert are the mappers.

Sessions:
  UNIQUE(subject_id, device_fingerprint) is the upsert key. upsert_session()
  runs INSERT ... ON CONFLICT DO NOTHING followed by an UPDATE in the same
  transaction, so concurrent track() calls for the same device converge on a
  single row and the caller learns whether *its* insert created it.
  Rows are never deleted; terminate flips `active`.

Alerts:
  Append-only. resolve_alert() is a conditional UPDATE on resolved_at IS NULL,
  so resolution is monotonic even under concurrent resolvers.

Security: all queries use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, Float, MetaData, String, Table, Text, UniqueConstraint, func, select

from core.clock import Clock, from_epoch, to_epoch, utc_now
from core.config import get_settings
from core.db import create_store_engine, dialect_insert
from sessions.models import AlertType, SecurityAlert, SessionRecord

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_sessions = Table(
    "sessions",
    _metadata,
    Column("session_id", String(64), primary_key=True),
    Column("subject_id", String(64), nullable=False, index=True),
    Column("device_fingerprint", String(255), nullable=False),
    Column("user_agent", Text, nullable=False, server_default=""),
    Column("ip_address", String(45), nullable=True),
    Column("created_at", Float, nullable=False),
    Column("last_active_at", Float, nullable=False),
    Column("active", Boolean, nullable=False, server_default="1"),
    Column("trusted_until", Float, nullable=True),
    Column("new_device", Boolean, nullable=False, server_default="0"),
    UniqueConstraint("subject_id", "device_fingerprint", name="uq_subject_fingerprint"),
)

_alerts = Table(
    "alerts",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("subject_id", String(64), nullable=False, index=True),
    Column("alert_type", String(40), nullable=False),
    Column("created_at", Float, nullable=False),
    Column("resolved_at", Float, nullable=True),
    Column("metadata_json", Text, nullable=False, server_default="{}"),  # JSON object
)


class SessionStore:
    """Repository for session records and security alerts.

    Usage:
        store = SessionStore("sqlite:///:memory:")
        record, created = store.upsert_session("subj", "fp-1", "Mozilla/5.0 ...")
        store.deactivate(record.session_id)
        store.close()
    """

    def __init__(self, db_url: str | None = None, clock: Clock = utc_now) -> None:
        self.engine = create_store_engine(db_url or get_settings().database_url)
        self._clock = clock
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def upsert_session(
        self,
        subject_id: str,
        device_fingerprint: str,
        user_agent: str,
        ip_address: str | None = None,
    ) -> tuple[SessionRecord, bool]:
        """Create or refresh the session for (subject, fingerprint).

        Returns (record, created). created is True only for the call whose
        INSERT produced the row.
        """
        now = to_epoch(self._clock())
        insert = (
            dialect_insert(self.engine, _sessions)
            .values(
                session_id=uuid.uuid4().hex,
                subject_id=subject_id,
                device_fingerprint=device_fingerprint,
                user_agent=user_agent,
                ip_address=ip_address,
                created_at=now,
                last_active_at=now,
                active=True,
                new_device=True,
            )
            .on_conflict_do_nothing(index_elements=[_sessions.c.subject_id, _sessions.c.device_fingerprint])
        )
        refresh = {"last_active_at": now, "user_agent": user_agent, "active": True}
        if ip_address is not None:
            refresh["ip_address"] = ip_address
        key = (_sessions.c.subject_id == subject_id) & (_sessions.c.device_fingerprint == device_fingerprint)

        with self.engine.begin() as conn:
            created = conn.execute(insert).rowcount == 1
            if not created:
                conn.execute(_sessions.update().where(key).values(**refresh))
            row = conn.execute(_sessions.select().where(key)).fetchone()
        return _row_to_session(row), created

    def get_session(self, session_id: str) -> SessionRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.session_id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_by_fingerprint(self, subject_id: str, device_fingerprint: str) -> SessionRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _sessions.select().where(
                    (_sessions.c.subject_id == subject_id) & (_sessions.c.device_fingerprint == device_fingerprint)
                )
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_sessions(self, subject_id: str, active_only: bool = True) -> list[SessionRecord]:
        stmt = _sessions.select().where(_sessions.c.subject_id == subject_id)
        if active_only:
            stmt = stmt.where(_sessions.c.active.is_(True))
        with self.engine.connect() as conn:
            rows = conn.execute(stmt.order_by(_sessions.c.last_active_at.desc())).fetchall()
        return [_row_to_session(r) for r in rows]

    def count_known_devices(self, subject_id: str) -> int:
        """Distinct fingerprints ever seen for the subject, terminated sessions included."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_sessions).where(_sessions.c.subject_id == subject_id)
            ).scalar()
        return result or 0

    def deactivate(self, session_id: str, subject_id: str | None = None) -> bool:
        """Soft-delete one session. Returns False if no matching row exists."""
        where = _sessions.c.session_id == session_id
        if subject_id is not None:
            where = where & (_sessions.c.subject_id == subject_id)
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.update().where(where).values(active=False))
            conn.commit()
        return result.rowcount > 0

    def deactivate_others(self, subject_id: str, keep_session_id: str) -> int:
        """Soft-delete every active session of the subject except keep_session_id."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where(
                    (_sessions.c.subject_id == subject_id)
                    & (_sessions.c.session_id != keep_session_id)
                    & (_sessions.c.active.is_(True))
                )
                .values(active=False)
            )
            conn.commit()
        return result.rowcount

    def set_trusted_until(self, subject_id: str, device_fingerprint: str, until: datetime | None) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where(
                    (_sessions.c.subject_id == subject_id) & (_sessions.c.device_fingerprint == device_fingerprint)
                )
                .values(trusted_until=to_epoch(until) if until is not None else None)
            )
            conn.commit()
        return result.rowcount > 0

    def clear_new_device(self, session_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update().where(_sessions.c.session_id == session_id).values(new_device=False)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def insert_alert(self, subject_id: str, alert_type: AlertType, metadata: dict) -> SecurityAlert:
        alert = SecurityAlert(
            id=uuid.uuid4().hex,
            subject_id=subject_id,
            alert_type=alert_type,
            created_at=self._clock(),
            metadata=dict(metadata),
        )
        with self.engine.connect() as conn:
            conn.execute(
                _alerts.insert().values(
                    id=alert.id,
                    subject_id=subject_id,
                    alert_type=alert_type.value,
                    created_at=to_epoch(alert.created_at),
                    resolved_at=None,
                    metadata_json=json.dumps(alert.metadata, default=str),
                )
            )
            conn.commit()
        return alert

    def get_alert(self, alert_id: str) -> SecurityAlert | None:
        with self.engine.connect() as conn:
            row = conn.execute(_alerts.select().where(_alerts.c.id == alert_id)).fetchone()
        return _row_to_alert(row) if row is not None else None

    def resolve_alert(self, alert_id: str) -> bool:
        """Set resolved_at if still unresolved. True only for the call that resolved it."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _alerts.update()
                .where((_alerts.c.id == alert_id) & (_alerts.c.resolved_at.is_(None)))
                .values(resolved_at=to_epoch(self._clock()))
            )
            conn.commit()
        return result.rowcount == 1

    def update_alert_metadata(self, alert_id: str, metadata: dict) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _alerts.update().where(_alerts.c.id == alert_id).values(metadata_json=json.dumps(metadata, default=str))
            )
            conn.commit()

    def list_unresolved(self, subject_id: str | None = None) -> list[SecurityAlert]:
        stmt = _alerts.select().where(_alerts.c.resolved_at.is_(None))
        if subject_id is not None:
            stmt = stmt.where(_alerts.c.subject_id == subject_id)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt.order_by(_alerts.c.created_at.desc())).fetchall()
        return [_row_to_alert(r) for r in rows]

    def has_unresolved(self, subject_id: str, alert_type: AlertType) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_alerts.c.id)
                .where(
                    (_alerts.c.subject_id == subject_id)
                    & (_alerts.c.alert_type == alert_type.value)
                    & (_alerts.c.resolved_at.is_(None))
                )
                .limit(1)
            ).fetchone()
        return row is not None

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_session(row) -> SessionRecord:
    return SessionRecord(
        session_id=row.session_id,
        subject_id=row.subject_id,
        device_fingerprint=row.device_fingerprint,
        user_agent=row.user_agent or "",
        created_at=from_epoch(row.created_at),
        last_active_at=from_epoch(row.last_active_at),
        active=bool(row.active),
        ip_address=row.ip_address,
        trusted_until=from_epoch(row.trusted_until),
        new_device=bool(row.new_device),
    )


def _row_to_alert(row) -> SecurityAlert:
    return SecurityAlert(
        id=row.id,
        subject_id=row.subject_id,
        alert_type=AlertType(row.alert_type),
        created_at=from_epoch(row.created_at),
        resolved_at=from_epoch(row.resolved_at),
        metadata=json.loads(row.metadata_json or "{}"),
    )
