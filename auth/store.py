"""
auth/store.py -- SQLAlchemy Core persistence for identity-provider state.

Pattern: Repository + Data Mapper. IdentityStore is the repository;
_row_to_subject is the mapper. Service and route code never touches SQL.

Tables:
  subjects          the profile/role store the core reads (email, role, status)
  revoked_sessions  token-pair revocation list keyed by the JWT `sid` claim
  mfa_secrets       TOTP secrets, pending until the first code is confirmed
  recovery_codes    HMAC hashes of single-use recovery codes

Security:
  All queries use bound parameters. No f-strings in SQL.
  Recovery codes are stored only as HMAC-SHA256 digests (see auth/tokens.py).
  consume_recovery_code() is a conditional DELETE, so two concurrent requests
  presenting the same code cannot both succeed.

Layer rule: no imports from api/, sessions/, or ratelimit/.
"""

from __future__ import annotations

import uuid

from sqlalchemy import Boolean, Column, Float, MetaData, String, Table, Text, func, select

from auth.models import Subject
from core.clock import Clock, from_epoch, to_epoch, utc_now
from core.config import get_settings
from core.db import create_store_engine, dialect_insert

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_subjects = Table(
    "subjects",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("display_name", String(255), nullable=False, server_default=""),
    Column("role", String(30), nullable=False, server_default="customer"),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("created_at", Float, nullable=False),
)

_revoked_sessions = Table(
    "revoked_sessions",
    _metadata,
    Column("session_id", String(64), primary_key=True),
    Column("revoked_at", Float, nullable=False),
    # Rows are only useful until the refresh token they revoke would have
    # expired anyway; the reaper deletes them after that.
    Column("expires_at", Float, nullable=False),
)

_mfa_secrets = Table(
    "mfa_secrets",
    _metadata,
    Column("subject_id", String(64), primary_key=True),
    Column("secret", Text, nullable=False),  # base32 TOTP secret
    Column("enabled", Boolean, nullable=False, server_default="0"),
    Column("created_at", Float, nullable=False),
)

_recovery_codes = Table(
    "recovery_codes",
    _metadata,
    Column("code_hash", String(64), primary_key=True),  # HMAC-SHA256 hex
    Column("subject_id", String(64), nullable=False, index=True),
    Column("created_at", Float, nullable=False),
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for subjects, token revocations, and MFA material.

    Usage:
        store = IdentityStore("sqlite:///:memory:")
        subject = store.create_subject("ops@example.com", role="admin")
        store.get_subject(subject.id)
        store.close()
    """

    def __init__(self, db_url: str | None = None, clock: Clock = utc_now) -> None:
        self.engine = create_store_engine(db_url or get_settings().database_url)
        self._clock = clock
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Subjects (role store)
    # ------------------------------------------------------------------

    def create_subject(
        self,
        email: str,
        role: str = "customer",
        display_name: str = "",
        subject_id: str | None = None,
    ) -> Subject:
        """Insert a subject and return it.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        subject = Subject(
            id=subject_id or uuid.uuid4().hex,
            email=email.strip().lower(),
            role=role,
            display_name=display_name,
            is_active=True,
            created_at=self._clock(),
        )
        with self.engine.connect() as conn:
            conn.execute(
                _subjects.insert().values(
                    id=subject.id,
                    email=subject.email,
                    display_name=subject.display_name,
                    role=subject.role,
                    is_active=True,
                    created_at=to_epoch(subject.created_at),
                )
            )
            conn.commit()
        return subject

    def get_subject(self, subject_id: str) -> Subject | None:
        with self.engine.connect() as conn:
            row = conn.execute(_subjects.select().where(_subjects.c.id == subject_id)).fetchone()
        return _row_to_subject(row) if row is not None else None

    def get_by_email(self, email: str) -> Subject | None:
        """Case-insensitive lookup -- emails are normalized to lowercase on insert."""
        with self.engine.connect() as conn:
            row = conn.execute(_subjects.select().where(_subjects.c.email == email.strip().lower())).fetchone()
        return _row_to_subject(row) if row is not None else None

    def set_role(self, subject_id: str, role: str) -> bool:
        """Returns True if a row was updated, False if subject_id was not found."""
        with self.engine.connect() as conn:
            result = conn.execute(_subjects.update().where(_subjects.c.id == subject_id).values(role=role))
            conn.commit()
        return result.rowcount > 0

    def set_active(self, subject_id: str, is_active: bool) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _subjects.update().where(_subjects.c.id == subject_id).values(is_active=is_active)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Token-pair revocation
    # ------------------------------------------------------------------

    def revoke_session(self, session_id: str, expires_at: float) -> bool:
        """Record a revoked token pair. Idempotent.

        Returns True if this call revoked the pair, False if it was already
        revoked. The boolean lets callers treat "already revoked" as a state
        signal (e.g. an impersonation that was already stopped elsewhere).
        """
        stmt = (
            dialect_insert(self.engine, _revoked_sessions)
            .values(session_id=session_id, revoked_at=to_epoch(self._clock()), expires_at=expires_at)
            .on_conflict_do_nothing(index_elements=[_revoked_sessions.c.session_id])
        )
        with self.engine.connect() as conn:
            result = conn.execute(stmt)
            conn.commit()
        return result.rowcount > 0

    def is_session_revoked(self, session_id: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_revoked_sessions.c.session_id).where(_revoked_sessions.c.session_id == session_id)
            ).fetchone()
        return row is not None

    def purge_expired_revocations(self) -> int:
        """Delete revocations whose tokens have expired on their own. Returns rows removed."""
        now = to_epoch(self._clock())
        with self.engine.connect() as conn:
            result = conn.execute(_revoked_sessions.delete().where(_revoked_sessions.c.expires_at <= now))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # MFA secrets
    # ------------------------------------------------------------------

    def save_mfa_secret(self, subject_id: str, secret: str) -> None:
        """Store a pending (not yet enabled) TOTP secret, replacing any previous one."""
        insert = dialect_insert(self.engine, _mfa_secrets).values(
            subject_id=subject_id,
            secret=secret,
            enabled=False,
            created_at=to_epoch(self._clock()),
        )
        stmt = insert.on_conflict_do_update(
            index_elements=[_mfa_secrets.c.subject_id],
            set_={"secret": insert.excluded.secret, "enabled": False, "created_at": insert.excluded.created_at},
        )
        with self.engine.connect() as conn:
            conn.execute(stmt)
            conn.commit()

    def get_mfa_secret(self, subject_id: str) -> tuple[str, bool] | None:
        """Return (secret, enabled) or None if the subject never started enrollment."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_mfa_secrets.c.secret, _mfa_secrets.c.enabled).where(_mfa_secrets.c.subject_id == subject_id)
            ).fetchone()
        return (row.secret, bool(row.enabled)) if row is not None else None

    def enable_mfa(self, subject_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _mfa_secrets.update().where(_mfa_secrets.c.subject_id == subject_id).values(enabled=True)
            )
            conn.commit()
        return result.rowcount > 0

    def delete_mfa(self, subject_id: str) -> None:
        """Remove the TOTP secret and every recovery code for the subject."""
        with self.engine.connect() as conn:
            conn.execute(_mfa_secrets.delete().where(_mfa_secrets.c.subject_id == subject_id))
            conn.execute(_recovery_codes.delete().where(_recovery_codes.c.subject_id == subject_id))
            conn.commit()

    # ------------------------------------------------------------------
    # Recovery codes
    # ------------------------------------------------------------------

    def replace_recovery_codes(self, subject_id: str, code_hashes: list[str]) -> None:
        """Atomically swap the subject's recovery codes for a new set."""
        created_at = to_epoch(self._clock())
        with self.engine.begin() as conn:
            conn.execute(_recovery_codes.delete().where(_recovery_codes.c.subject_id == subject_id))
            if code_hashes:
                conn.execute(
                    _recovery_codes.insert(),
                    [{"code_hash": h, "subject_id": subject_id, "created_at": created_at} for h in code_hashes],
                )

    def consume_recovery_code(self, subject_id: str, code_hash: str) -> bool:
        """Delete the matching code. True only for the one caller that removed it."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _recovery_codes.delete().where(
                    (_recovery_codes.c.subject_id == subject_id) & (_recovery_codes.c.code_hash == code_hash)
                )
            )
            conn.commit()
        return result.rowcount == 1

    def count_recovery_codes(self, subject_id: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_recovery_codes).where(_recovery_codes.c.subject_id == subject_id)
            ).scalar()
        return result or 0

    def ping(self) -> bool:
        """Cheap connectivity probe for the health endpoint."""
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_subject(row) -> Subject:
    return Subject(
        id=row.id,
        email=row.email,
        display_name=row.display_name or "",
        role=row.role,
        is_active=bool(row.is_active),
        created_at=from_epoch(row.created_at),
    )


