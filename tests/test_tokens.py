"""
tests/test_tokens.py -- Identity provider: issue, decode, refresh rotation, revocation.
"""

from __future__ import annotations

import pytest
from jose import jwt

from auth.tokens import hash_secret
from core.errors import SubjectNotFound, TokenInvalid
from conftest import TEST_SECRET


def test_issue_pair_claims(provider, customer, settings):
    pair = provider.issue_token_pair(customer.id)
    claims = provider.decode(pair.access_token)
    assert claims["sub"] == customer.id
    assert claims["role"] == "customer"
    assert claims["sid"] == pair.session_id
    assert claims["typ"] == "access"
    assert "act" not in claims
    assert pair.expires_in == settings.access_token_expire_seconds


def test_access_and_refresh_are_not_interchangeable(provider, customer):
    pair = provider.issue_token_pair(customer.id)
    assert provider.decode(pair.refresh_token) is None
    assert provider.decode(pair.access_token, token_type="refresh") is None
    assert provider.decode(pair.refresh_token, token_type="refresh") is not None


def test_issue_for_unknown_or_inactive_subject(provider, identity_store, customer):
    with pytest.raises(SubjectNotFound):
        provider.issue_token_pair("nobody")
    identity_store.set_active(customer.id, False)
    with pytest.raises(SubjectNotFound):
        provider.issue_token_pair(customer.id)


def test_expiry_follows_injected_clock(provider, customer, clock, settings):
    pair = provider.issue_token_pair(customer.id)
    clock.advance(seconds=settings.access_token_expire_seconds - 1)
    assert provider.decode(pair.access_token) is not None
    clock.advance(seconds=1)
    assert provider.decode(pair.access_token) is None


def test_tampered_or_foreign_tokens_are_rejected(provider, customer):
    pair = provider.issue_token_pair(customer.id)
    assert provider.decode(pair.access_token[:-2] + "xx") is None
    foreign = jwt.encode({"sub": customer.id, "sid": "x", "typ": "access", "exp": 4102444800}, "0" * 40)
    assert provider.decode(foreign) is None
    assert provider.decode("not-a-jwt") is None


def test_revoke_session_invalidates_both_tokens(provider, customer):
    pair = provider.issue_token_pair(customer.id)
    assert provider.revoke_session(pair.session_id) is True
    assert provider.revoke_session(pair.session_id) is False
    assert provider.decode(pair.access_token) is None
    assert provider.decode(pair.refresh_token, token_type="refresh") is None
    assert provider.decode(pair.access_token, check_revoked=False) is not None


def test_refresh_rotates_pair(provider, customer):
    pair = provider.issue_token_pair(customer.id)
    rotated = provider.refresh(pair.refresh_token)
    assert rotated.session_id != pair.session_id
    assert provider.decode(rotated.access_token)["sub"] == customer.id
    # The old pair is revoked by rotation.
    assert provider.decode(pair.access_token) is None
    with pytest.raises(TokenInvalid):
        provider.refresh(pair.refresh_token)


def test_refresh_rejects_access_token(provider, customer):
    pair = provider.issue_token_pair(customer.id)
    with pytest.raises(TokenInvalid):
        provider.refresh(pair.access_token)


def test_refresh_preserves_actor_and_caps_lifetime(provider, admin, customer, clock):
    pair = provider.issue_token_pair(customer.id, actor=admin.id, expire_seconds=600)
    clock.advance(seconds=100)
    rotated = provider.refresh(pair.refresh_token)
    claims = provider.decode(rotated.access_token)
    assert claims["act"] == {"sub": admin.id, "sid": pair.impersonation_id}
    assert pair.impersonation_id != pair.session_id
    assert rotated.actor == admin.id
    assert rotated.expires_in == 500


def test_revoking_impersonation_id_ends_rotated_descendants(provider, admin, customer):
    pair = provider.issue_token_pair(customer.id, actor=admin.id, expire_seconds=600)
    rotated = provider.refresh(pair.refresh_token)
    assert provider.decode(rotated.access_token) is not None
    provider.revoke_session(pair.impersonation_id)
    assert provider.decode(rotated.access_token) is None


def test_hash_secret_is_keyed():
    assert hash_secret("ABCD-EFGH-JKLM", TEST_SECRET) == hash_secret("ABCD-EFGH-JKLM", TEST_SECRET)
    assert hash_secret("ABCD-EFGH-JKLM", TEST_SECRET) != hash_secret("ABCD-EFGH-JKLM", "k" * 40)
