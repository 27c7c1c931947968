"""
tests/test_ceremony.py -- WebAuthn ceremonies end to end through py_webauthn.

Every response comes from SoftAuthenticator and goes through the real
attestation/assertion verification -- nothing on the server side is mocked.

Coverage:
  - registration: happy path, label carried through, excludeCredentials
  - single-use and expiry of challenges; failed verification burns the challenge
  - duplicate credential ids across subjects
  - authentication: happy path, sign counter stored, cloned-key rejection
  - credential/subject mismatches, and which failures leave the challenge intact
"""

from __future__ import annotations

import pytest
from authenticator import SoftAuthenticator, register

from auth.models import ChallengePurpose
from core.errors import (
    AttestationInvalid,
    ChallengeNotFound,
    CredentialAlreadyRegistered,
    CredentialNotFound,
    SubjectMismatch,
    SubjectNotFound,
)


@pytest.fixture
def key() -> SoftAuthenticator:
    return SoftAuthenticator()


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegistration:
    def test_register_stores_credential(self, ceremony, registry, customer, key):
        cid = register(ceremony, customer.id, key, label="Work laptop")
        assert cid == key.credential_id
        stored = registry.get(cid)
        assert stored.subject_id == customer.id
        assert stored.display_name == "Work laptop"
        assert stored.transports == ["internal"]
        assert stored.sign_count == 0

    def test_start_returns_creation_options(self, ceremony, customer, settings):
        opts = ceremony.start_registration(customer.id)
        assert opts.options["challenge"] == opts.challenge
        assert opts.options["rp"]["id"] == settings.rp_id
        assert opts.options["user"]["name"] == customer.email
        algs = [p["alg"] for p in opts.options["pubKeyCredParams"]]
        assert algs == [-7, -257]

    def test_start_excludes_existing_credentials(self, ceremony, customer, key):
        cid = register(ceremony, customer.id, key)
        opts = ceremony.start_registration(customer.id)
        assert [c["id"] for c in opts.options["excludeCredentials"]] == [cid]

    def test_start_for_unknown_subject(self, ceremony):
        with pytest.raises(SubjectNotFound):
            ceremony.start_registration("no-such-subject")

    def test_challenge_is_single_use(self, ceremony, customer, key):
        opts = ceremony.start_registration(customer.id)
        attestation = key.create(opts.options)
        ceremony.finish_registration(customer.id, attestation, opts.challenge)
        with pytest.raises(ChallengeNotFound):
            ceremony.finish_registration(customer.id, attestation, opts.challenge)

    def test_expired_challenge_is_rejected(self, ceremony, registry, customer, key, clock, settings):
        opts = ceremony.start_registration(customer.id)
        clock.advance(seconds=settings.challenge_ttl_seconds + 1)
        with pytest.raises(ChallengeNotFound):
            ceremony.finish_registration(customer.id, key.create(opts.options), opts.challenge)
        assert registry.list_for_subject(customer.id) == []

    def test_challenge_bound_to_other_subject(self, ceremony, challenge_store, admin, customer, key):
        opts = ceremony.start_registration(customer.id)
        with pytest.raises(ChallengeNotFound):
            ceremony.finish_registration(admin.id, key.create(opts.options), opts.challenge)
        # Rejected before consumption: the rightful subject can still finish.
        assert challenge_store.find_active(opts.challenge, ChallengePurpose.registration) is not None

    def test_failed_verification_burns_challenge(self, ceremony, registry, customer, key):
        opts = ceremony.start_registration(customer.id)
        with pytest.raises(AttestationInvalid):
            ceremony.finish_registration(
                customer.id, key.create(opts.options, origin="https://evil.example"), opts.challenge
            )
        with pytest.raises(ChallengeNotFound):
            ceremony.finish_registration(customer.id, key.create(opts.options), opts.challenge)
        assert registry.list_for_subject(customer.id) == []

    def test_wrong_rp_id_is_rejected(self, ceremony, customer, key):
        opts = ceremony.start_registration(customer.id)
        with pytest.raises(AttestationInvalid):
            ceremony.finish_registration(customer.id, key.create(opts.options, rp_id="evil.example"), opts.challenge)

    def test_same_authenticator_for_two_subjects(self, ceremony, registry, admin, customer, key):
        register(ceremony, customer.id, key)
        opts = ceremony.start_registration(admin.id)
        with pytest.raises(CredentialAlreadyRegistered):
            ceremony.finish_registration(admin.id, key.create(opts.options), opts.challenge)
        assert registry.get(key.credential_id).subject_id == customer.id

    def test_display_name_overrides_label(self, ceremony, registry, customer, key):
        opts = ceremony.start_registration(customer.id, "Label")
        cid = ceremony.finish_registration(customer.id, key.create(opts.options), opts.challenge, display_name="Named")
        assert registry.get(cid).display_name == "Named"


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class TestAuthentication:
    def test_authenticate_returns_owner(self, ceremony, registry, customer, key):
        register(ceremony, customer.id, key)
        opts = ceremony.start_authentication(customer.id)
        assert [c["id"] for c in opts.options["allowCredentials"]] == [key.credential_id]
        assert ceremony.finish_authentication(key.get(opts.options), opts.challenge) == customer.id
        assert registry.get(key.credential_id).sign_count == 1

    def test_discoverable_flow_without_subject(self, ceremony, customer, key):
        register(ceremony, customer.id, key)
        opts = ceremony.start_authentication()
        assert not opts.options.get("allowCredentials")
        assert ceremony.finish_authentication(key.get(opts.options), opts.challenge) == customer.id

    def test_sign_count_increases_across_logins(self, ceremony, registry, customer, key):
        register(ceremony, customer.id, key)
        for _ in range(3):
            opts = ceremony.start_authentication(customer.id)
            ceremony.finish_authentication(key.get(opts.options), opts.challenge)
        assert registry.get(key.credential_id).sign_count == 3

    def test_replayed_counter_is_rejected(self, ceremony, customer, key):
        register(ceremony, customer.id, key)
        opts = ceremony.start_authentication(customer.id)
        ceremony.finish_authentication(key.get(opts.options), opts.challenge)
        opts = ceremony.start_authentication(customer.id)
        with pytest.raises(AttestationInvalid):
            ceremony.finish_authentication(key.get(opts.options, sign_count=1), opts.challenge)

    def test_assertion_challenge_is_single_use(self, ceremony, customer, key):
        register(ceremony, customer.id, key)
        opts = ceremony.start_authentication(customer.id)
        assertion = key.get(opts.options)
        ceremony.finish_authentication(assertion, opts.challenge)
        with pytest.raises(ChallengeNotFound):
            ceremony.finish_authentication(assertion, opts.challenge)

    def test_registration_challenge_cannot_authenticate(self, ceremony, customer, key):
        register(ceremony, customer.id, key)
        opts = ceremony.start_registration(customer.id)
        with pytest.raises(ChallengeNotFound):
            ceremony.finish_authentication(key.get(opts.options), opts.challenge)

    def test_unknown_credential_leaves_challenge(self, ceremony, challenge_store, customer, key):
        register(ceremony, customer.id, key)
        opts = ceremony.start_authentication(customer.id)
        stranger = SoftAuthenticator()
        with pytest.raises(CredentialNotFound):
            ceremony.finish_authentication(stranger.get(opts.options), opts.challenge)
        assert challenge_store.find_active(opts.challenge, ChallengePurpose.authentication) is not None
        assert ceremony.finish_authentication(key.get(opts.options), opts.challenge) == customer.id

    def test_missing_credential_id(self, ceremony):
        opts = ceremony.start_authentication()
        with pytest.raises(CredentialNotFound):
            ceremony.finish_authentication({"response": {}}, opts.challenge)

    def test_expected_subject_mismatch(self, ceremony, admin, customer, key):
        register(ceremony, customer.id, key)
        opts = ceremony.start_authentication()
        with pytest.raises(SubjectMismatch):
            ceremony.finish_authentication(key.get(opts.options), opts.challenge, subject_id=admin.id)

    def test_challenge_scoped_to_other_subject(self, ceremony, admin, customer, key):
        register(ceremony, customer.id, key)
        opts = ceremony.start_authentication(admin.id)
        with pytest.raises(SubjectMismatch):
            ceremony.finish_authentication(key.get(opts.options), opts.challenge)

    def test_bad_signature_burns_challenge(self, ceremony, customer, key):
        register(ceremony, customer.id, key)
        opts = ceremony.start_authentication(customer.id)
        assertion = key.get(opts.options)
        imposter = SoftAuthenticator()
        imposter.raw_credential_id = key.raw_credential_id
        forged = imposter.get(opts.options, sign_count=5)
        with pytest.raises(AttestationInvalid):
            ceremony.finish_authentication(forged, opts.challenge)
        with pytest.raises(ChallengeNotFound):
            ceremony.finish_authentication(assertion, opts.challenge)
