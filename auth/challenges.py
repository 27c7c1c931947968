"""
auth/challenges.py -- Challenge Store: short-lived, single-use ceremony challenges.

A challenge row exists from ceremony start until exactly one of:
  - a finish attempt consumes it (success or failure), or
  - the reaper deletes it after expires_at.

Expiry is enforced reactively: find_active() and consume() both filter on
expires_at > now, so an expired row is indistinguishable from a missing one.
purge_expired() is housekeeping only.

consume() is a conditional DELETE. Of any number of concurrent finish
attempts presenting the same challenge, only the one whose DELETE removed the
row sees True -- the single-use guarantee lives in the database, not in a
read-then-write sequence.
"""

from __future__ import annotations

import base64
import logging
import secrets
from datetime import timedelta

from sqlalchemy import Column, Float, MetaData, String, Table

from auth.models import Challenge, ChallengePurpose
from core.clock import Clock, from_epoch, to_epoch, utc_now
from core.config import get_settings
from core.db import create_store_engine

logger = logging.getLogger("sessionguard.challenges")

_CHALLENGE_BYTES = 32

_metadata = MetaData()

_challenges = Table(
    "challenges",
    _metadata,
    Column("value", String(64), primary_key=True),  # base64url of 32 random bytes
    Column("purpose", String(20), nullable=False),
    Column("subject_id", String(64), nullable=True, index=True),
    Column("label", String(255), nullable=True),
    Column("created_at", Float, nullable=False),
    Column("expires_at", Float, nullable=False, index=True),
)


def _new_value() -> str:
    return base64.urlsafe_b64encode(secrets.token_bytes(_CHALLENGE_BYTES)).rstrip(b"=").decode("ascii")


class ChallengeStore:
    """Repository for ceremony challenges.

    Usage:
        store = ChallengeStore("sqlite:///:memory:")
        challenge = store.issue(ChallengePurpose.registration, subject_id="abc")
        found = store.find_active(challenge.value, ChallengePurpose.registration)
        store.consume(found)   # True once, False forever after
    """

    def __init__(self, db_url: str | None = None, ttl_seconds: int | None = None, clock: Clock = utc_now) -> None:
        settings = get_settings()
        self.engine = create_store_engine(db_url or settings.database_url)
        self._ttl = ttl_seconds or settings.challenge_ttl_seconds
        self._clock = clock
        _metadata.create_all(self.engine)

    def issue(
        self,
        purpose: ChallengePurpose,
        subject_id: str | None = None,
        label: str | None = None,
    ) -> Challenge:
        now = self._clock()
        challenge = Challenge(
            value=_new_value(),
            purpose=purpose,
            created_at=now,
            expires_at=now + timedelta(seconds=self._ttl),
            subject_id=subject_id,
            label=label,
        )
        with self.engine.connect() as conn:
            conn.execute(
                _challenges.insert().values(
                    value=challenge.value,
                    purpose=purpose.value,
                    subject_id=subject_id,
                    label=label,
                    created_at=to_epoch(challenge.created_at),
                    expires_at=to_epoch(challenge.expires_at),
                )
            )
            conn.commit()
        return challenge

    def find_active(self, value: str, purpose: ChallengePurpose) -> Challenge | None:
        """Return the unexpired challenge with this value and purpose, else None."""
        now = to_epoch(self._clock())
        with self.engine.connect() as conn:
            row = conn.execute(
                _challenges.select().where(
                    (_challenges.c.value == value)
                    & (_challenges.c.purpose == purpose.value)
                    & (_challenges.c.expires_at > now)
                )
            ).fetchone()
        return _row_to_challenge(row) if row is not None else None

    def consume(self, challenge: Challenge) -> bool:
        """Delete the challenge if it is still present and unexpired.

        Returns True only for the single caller whose DELETE removed the row.
        """
        now = to_epoch(self._clock())
        with self.engine.connect() as conn:
            result = conn.execute(
                _challenges.delete().where(
                    (_challenges.c.value == challenge.value)
                    & (_challenges.c.purpose == challenge.purpose.value)
                    & (_challenges.c.expires_at > now)
                )
            )
            conn.commit()
        return result.rowcount == 1

    def purge_expired(self) -> int:
        """Delete every challenge past expires_at. Returns the number removed."""
        now = to_epoch(self._clock())
        with self.engine.connect() as conn:
            result = conn.execute(_challenges.delete().where(_challenges.c.expires_at <= now))
            conn.commit()
        if result.rowcount:
            logger.info("Purged %d expired challenge(s)", result.rowcount)
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


def _row_to_challenge(row) -> Challenge:
    return Challenge(
        value=row.value,
        purpose=ChallengePurpose(row.purpose),
        created_at=from_epoch(row.created_at),
        expires_at=from_epoch(row.expires_at),
        subject_id=row.subject_id,
        label=row.label,
    )
