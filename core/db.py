"""
core/db.py -- SQLAlchemy engine factory shared by every store.

Each store owns its engine (same as one store per bounded context), but all
of them build it here so SQLite connections get identical treatment:

  check_same_thread=False  FastAPI runs sync route handlers in a thread pool.
  WAL journal mode         readers proceed without blocking during writes.

dialect_insert() returns the dialect-specific INSERT construct. Both the
SQLite and PostgreSQL variants support ON CONFLICT, which is how the stores
express check-then-act sequences (session upsert, rate-limit increment) as a
single atomic statement instead of a read followed by a write.
"""

from __future__ import annotations

from sqlalchemy import Table, create_engine, event
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_store_engine(db_url: str) -> Engine:
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


def dialect_insert(engine: Engine, table: Table):
    """Return an INSERT for `table` that supports on_conflict_do_* for this engine."""
    if engine.dialect.name == "postgresql":
        return postgresql.insert(table)
    if engine.dialect.name == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"Atomic upserts are not implemented for dialect {engine.dialect.name!r}")
