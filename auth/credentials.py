"""
auth/credentials.py -- Credential Registry: verified WebAuthn public keys.

credential_id is the primary key, so global uniqueness is enforced by the
database. add() is an INSERT ... ON CONFLICT DO NOTHING; when the insert is a
no-op the existing row decides the outcome:

  same subject      -> returns the existing credential (re-registering the
                       same authenticator is harmless)
  different subject -> CredentialAlreadyRegistered

revoke() is owner-scoped: the DELETE filters on subject_id as well, so a
caller can never remove another subject's key by guessing its id. Deleting a
subject's last credential leaves the subject row untouched.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy import Column, Float, Integer, MetaData, String, Table, Text

from auth.models import Credential
from core.clock import Clock, from_epoch, to_epoch, utc_now
from core.config import get_settings
from core.db import create_store_engine, dialect_insert
from core.errors import CredentialAlreadyRegistered

logger = logging.getLogger("sessionguard.credentials")

_metadata = MetaData()

_credentials = Table(
    "credentials",
    _metadata,
    Column("credential_id", String(512), primary_key=True),  # base64url
    Column("subject_id", String(64), nullable=False, index=True),
    Column("public_key", Text, nullable=False),  # base64url COSE key
    Column("sign_count", Integer, nullable=False, server_default="0"),
    Column("transports", Text, nullable=False, server_default="[]"),  # JSON list
    Column("display_name", String(255), nullable=False, server_default="Security Key"),
    Column("created_at", Float, nullable=False),
    Column("last_used_at", Float, nullable=True),
)


class CredentialRegistry:
    """Repository for registered credentials.

    Usage:
        registry = CredentialRegistry("sqlite:///:memory:")
        registry.add(Credential(credential_id="...", subject_id="...", public_key="..."))
        registry.list_for_subject("...")
    """

    def __init__(self, db_url: str | None = None, clock: Clock = utc_now) -> None:
        self.engine = create_store_engine(db_url or get_settings().database_url)
        self._clock = clock
        _metadata.create_all(self.engine)

    def add(self, credential: Credential) -> Credential:
        """Insert a credential. See module docstring for duplicate handling."""
        created_at = credential.created_at or self._clock()
        stmt = (
            dialect_insert(self.engine, _credentials)
            .values(
                credential_id=credential.credential_id,
                subject_id=credential.subject_id,
                public_key=credential.public_key,
                sign_count=credential.sign_count,
                transports=json.dumps(credential.transports),
                display_name=credential.display_name,
                created_at=to_epoch(created_at),
                last_used_at=None,
            )
            .on_conflict_do_nothing(index_elements=[_credentials.c.credential_id])
        )
        with self.engine.connect() as conn:
            result = conn.execute(stmt)
            conn.commit()

        if result.rowcount == 1:
            credential.created_at = created_at
            return credential

        existing = self.get(credential.credential_id)
        if existing is None or existing.subject_id != credential.subject_id:
            raise CredentialAlreadyRegistered()
        logger.info("Credential already registered to subject=%s...; no-op", credential.subject_id[:8])
        return existing

    def get(self, credential_id: str) -> Credential | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _credentials.select().where(_credentials.c.credential_id == credential_id)
            ).fetchone()
        return _row_to_credential(row) if row is not None else None

    def list_for_subject(self, subject_id: str) -> list[Credential]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _credentials.select()
                .where(_credentials.c.subject_id == subject_id)
                .order_by(_credentials.c.created_at)
            ).fetchall()
        return [_row_to_credential(r) for r in rows]

    def record_use(self, credential_id: str, sign_count: int) -> bool:
        """Stamp last_used_at and store the authenticator's new signature counter."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _credentials.update()
                .where(_credentials.c.credential_id == credential_id)
                .values(sign_count=sign_count, last_used_at=to_epoch(self._clock()))
            )
            conn.commit()
        return result.rowcount > 0

    def rename(self, credential_id: str, subject_id: str, display_name: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _credentials.update()
                .where((_credentials.c.credential_id == credential_id) & (_credentials.c.subject_id == subject_id))
                .values(display_name=display_name)
            )
            conn.commit()
        return result.rowcount > 0

    def revoke(self, credential_id: str, subject_id: str) -> bool:
        """Owner-scoped delete. Returns False if the id is unknown or belongs to someone else."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _credentials.delete().where(
                    (_credentials.c.credential_id == credential_id) & (_credentials.c.subject_id == subject_id)
                )
            )
            conn.commit()
        if result.rowcount:
            logger.info("Credential revoked by owner subject=%s...", subject_id[:8])
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


def _row_to_credential(row) -> Credential:
    return Credential(
        credential_id=row.credential_id,
        subject_id=row.subject_id,
        public_key=row.public_key,
        display_name=row.display_name,
        sign_count=row.sign_count or 0,
        transports=json.loads(row.transports or "[]"),
        created_at=from_epoch(row.created_at),
        last_used_at=from_epoch(row.last_used_at),
    )
