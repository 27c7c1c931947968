"""
tests/test_errors.py -- The error taxonomy and the storage seam.

A storage outage must surface as UpstreamUnavailable, never as a verification
failure a client would read as "bad credential".
"""

from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from core.errors import (
    ChallengeNotFound,
    CodeInvalid,
    ImpersonationAlreadyActive,
    NotFound,
    RateLimited,
    RateLimitExceeded,
    SessionGuardError,
    StateConflict,
    UpstreamUnavailable,
    VerificationFailed,
    storage_errors,
)
from ratelimit.limiter import RateLimiter
from sessions.tracker import SessionTracker


def _outage(*args, **kwargs):
    raise OperationalError("SELECT 1", {}, Exception("database is locked"))


def test_kinds_are_distinct():
    assert issubclass(ChallengeNotFound, NotFound)
    assert issubclass(CodeInvalid, VerificationFailed)
    assert issubclass(ImpersonationAlreadyActive, StateConflict)
    assert issubclass(RateLimitExceeded, RateLimited)
    assert not issubclass(UpstreamUnavailable, VerificationFailed)
    for kind in (NotFound, VerificationFailed, StateConflict, RateLimited, UpstreamUnavailable):
        assert issubclass(kind, SessionGuardError)


def test_default_messages_are_user_safe():
    err = ChallengeNotFound()
    assert err.to_detail() == {"code": "challenge_not_found", "message": "Challenge not found or expired."}


def test_storage_errors_translates_sqlalchemy():
    with pytest.raises(UpstreamUnavailable) as exc_info:
        with storage_errors("unit.test"):
            _outage()
    assert exc_info.value.context == {"operation": "unit.test"}
    assert isinstance(exc_info.value.__cause__, OperationalError)


def test_storage_errors_passes_domain_errors_through():
    with pytest.raises(CodeInvalid):
        with storage_errors("unit.test"):
            raise CodeInvalid()


def test_ceremony_storage_failure_is_not_a_verification_failure(ceremony, registry, monkeypatch):
    opts = ceremony.start_authentication()
    monkeypatch.setattr(registry, "get", _outage)
    assertion = {"id": "Y3JlZC0x", "rawId": "Y3JlZC0x", "type": "public-key", "response": {}}
    with pytest.raises(UpstreamUnavailable):
        ceremony.finish_authentication(assertion, opts.challenge)


def test_challenge_store_outage_on_start(ceremony, challenge_store, customer, monkeypatch):
    monkeypatch.setattr(challenge_store, "issue", _outage)
    with pytest.raises(UpstreamUnavailable):
        ceremony.start_registration(customer.id)


def test_tracker_storage_failure(session_store, settings, clock, monkeypatch):
    tracker = SessionTracker(session_store, settings, clock=clock)
    monkeypatch.setattr(session_store, "upsert_session", _outage)
    with pytest.raises(UpstreamUnavailable):
        tracker.track("subject-x", "fp-a", "ua")


def test_rate_limiter_storage_failure(rate_limit_store, settings, clock, monkeypatch):
    limiter = RateLimiter(rate_limit_store, settings, clock=clock)
    monkeypatch.setattr(rate_limit_store, "hit", _outage)
    with pytest.raises(UpstreamUnavailable):
        limiter.check("login:ip1")
