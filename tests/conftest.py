"""
tests/conftest.py -- Shared test fixtures for SessionGuard.

This module provides:
  - FrozenClock: an injectable clock tests can move forward explicitly
  - db_url: a fresh named shared-memory SQLite database per test
  - store/service fixtures wired to that database and clock
  - api_client: TestClient over the real app with isolated state

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool and several stores
share one database. Plain :memory: DBs are per-connection and would present a
blank schema to each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

The DEBUG env var must be set before any core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import app, close_state, configure_state
from auth.ceremony import CeremonyEngine
from auth.challenges import ChallengeStore
from auth.credentials import CredentialRegistry
from auth.store import IdentityStore
from auth.tokens import IdentityProvider
from core.config import Settings
from ratelimit.store import RateLimitStore
from sessions.store import SessionStore

TEST_SECRET = "test-secret-key-0123456789abcdef-0123456789"


# ---------------------------------------------------------------------------
# Clock and settings
# ---------------------------------------------------------------------------


class FrozenClock:
    """Callable clock that only moves when a test calls advance()."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class RecordingNotifier:
    """Collects delivered alerts; set fail=True to make delivery raise."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.delivered = []

    def notify(self, alert, recipient) -> None:
        if self.fail:
            raise ConnectionError("relay unreachable")
        self.delivered.append((alert, recipient))


def make_settings(**overrides) -> Settings:
    values = {"debug": True, "secret_key": TEST_SECRET}
    values.update(overrides)
    return Settings(**values)


def _memory_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def db_url() -> str:
    return _memory_url("sg_test")


@pytest.fixture
def file_db_url(tmp_path) -> str:
    """A file-backed SQLite database, for tests that hit it from several threads."""
    return f"sqlite:///{tmp_path / 'sessionguard.db'}"


# ---------------------------------------------------------------------------
# Stores (closed after each test)
# ---------------------------------------------------------------------------


@pytest.fixture
def identity_store(db_url, clock) -> Generator[IdentityStore, None, None]:
    store = IdentityStore(db_url, clock=clock)
    yield store
    store.close()


@pytest.fixture
def challenge_store(db_url, clock, settings) -> Generator[ChallengeStore, None, None]:
    store = ChallengeStore(db_url, ttl_seconds=settings.challenge_ttl_seconds, clock=clock)
    yield store
    store.close()


@pytest.fixture
def registry(db_url, clock) -> Generator[CredentialRegistry, None, None]:
    store = CredentialRegistry(db_url, clock=clock)
    yield store
    store.close()


@pytest.fixture
def session_store(db_url, clock) -> Generator[SessionStore, None, None]:
    store = SessionStore(db_url, clock=clock)
    yield store
    store.close()


@pytest.fixture
def rate_limit_store(db_url, clock) -> Generator[RateLimitStore, None, None]:
    store = RateLimitStore(db_url, clock=clock)
    yield store
    store.close()


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@pytest.fixture
def provider(identity_store, settings, clock) -> IdentityProvider:
    return IdentityProvider(identity_store, settings, clock=clock)


@pytest.fixture
def ceremony(challenge_store, registry, identity_store, settings) -> CeremonyEngine:
    return CeremonyEngine(challenge_store, registry, identity_store, settings)


@pytest.fixture
def admin(identity_store):
    return identity_store.create_subject("admin@example.com", role="admin", display_name="Ada Admin")


@pytest.fixture
def customer(identity_store):
    return identity_store.create_subject("bob@example.com", role="customer", display_name="Bob")


# ---------------------------------------------------------------------------
# API client -- one TestClient per test module
# ---------------------------------------------------------------------------


@asynccontextmanager
async def _no_op_lifespan(app):
    # State is configured by the fixture before the client starts; the real
    # lifespan would rebuild it against the production database.
    yield


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str, str], None, None]:
    """Yield (client, admin_token, admin_id) for API integration tests.

    The TestClient uses the real FastAPI app and its middleware stack, with
    app.state built by configure_state() over an isolated in-memory database,
    a FrozenClock (app.state.clock) and a RecordingNotifier
    (app.state.notifier). base_url uses "localhost" because TrustedHost
    rejects TestClient's default "testserver" host.
    """
    clock = FrozenClock()
    notifier = RecordingNotifier()
    configure_state(
        app,
        settings=make_settings(),
        db_url=_memory_url(f"sg_api_{request.module.__name__.rsplit('.', 1)[-1]}"),
        clock=clock,
        notifier=notifier,
    )
    app.state.clock = clock
    app.state.notifier = notifier

    admin = app.state.identity_store.create_subject("root@example.com", role="admin", display_name="Root")
    token = app.state.identity_provider.issue_token_pair(admin.id, expire_seconds=3600).access_token

    app.router.lifespan_context = _no_op_lifespan
    app.state.limiter.reset()

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield client, token, admin.id

    close_state(app)
