"""
ratelimit/store.py -- Durable fixed-window counters.

hit() is one statement:

    INSERT INTO rate_limits (key, hits, window_expires_at) VALUES (?, 1, now + window)
    ON CONFLICT (key) DO UPDATE SET
        hits              = CASE WHEN window_expires_at <= now THEN 1 ELSE hits + 1 END,
        window_expires_at = CASE WHEN window_expires_at <= now THEN excluded.window_expires_at
                                 ELSE window_expires_at END
    RETURNING hits, window_expires_at

Both CASE arms read the pre-update row, so the expiry check and the reset or
increment happen atomically. Concurrent callers on the same key serialize on
the row and every one of them gets a distinct count -- there is no
read-modify-write gap for an attacker to squeeze extra attempts through.

Requires SQLite >= 3.35 or PostgreSQL (RETURNING support).
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import Column, Float, Integer, MetaData, String, Table, case

from core.clock import Clock, from_epoch, to_epoch, utc_now
from core.config import get_settings
from core.db import create_store_engine, dialect_insert

logger = logging.getLogger("sessionguard.ratelimit")

_metadata = MetaData()

_rate_limits = Table(
    "rate_limits",
    _metadata,
    Column("key", String(255), primary_key=True),  # "<route>:<caller identity>"
    Column("hits", Integer, nullable=False),
    Column("window_expires_at", Float, nullable=False, index=True),
)


class RateLimitStore:
    """Repository for rate-limit counters.

    Usage:
        store = RateLimitStore("sqlite:///:memory:")
        hits, expires_at = store.hit("login:203.0.113.7", now, window_seconds=900)
    """

    def __init__(self, db_url: str | None = None, clock: Clock = utc_now) -> None:
        self.engine = create_store_engine(db_url or get_settings().database_url)
        self._clock = clock
        _metadata.create_all(self.engine)

    def hit(self, key: str, now: datetime, window_seconds: int) -> tuple[int, datetime]:
        """Count one request against `key`. Returns (hits in window, window expiry)."""
        now_epoch = to_epoch(now)
        insert = dialect_insert(self.engine, _rate_limits).values(
            key=key,
            hits=1,
            window_expires_at=now_epoch + window_seconds,
        )
        expired = _rate_limits.c.window_expires_at <= now_epoch
        stmt = insert.on_conflict_do_update(
            index_elements=[_rate_limits.c.key],
            set_={
                "hits": case((expired, 1), else_=_rate_limits.c.hits + 1),
                "window_expires_at": case(
                    (expired, insert.excluded.window_expires_at),
                    else_=_rate_limits.c.window_expires_at,
                ),
            },
        ).returning(_rate_limits.c.hits, _rate_limits.c.window_expires_at)

        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
            conn.commit()
        return int(row.hits), from_epoch(row.window_expires_at)

    def purge_expired(self) -> int:
        """Delete counters whose window has closed. Returns rows removed."""
        now = to_epoch(self._clock())
        with self.engine.connect() as conn:
            result = conn.execute(_rate_limits.delete().where(_rate_limits.c.window_expires_at <= now))
            conn.commit()
        if result.rowcount:
            logger.info("Purged %d expired rate-limit window(s)", result.rowcount)
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()
