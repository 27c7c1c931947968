"""
auth/ceremony.py -- WebAuthn registration and authentication ceremonies.

Protocol work (options encoding, attestation/assertion parsing, signature and
sign-counter checks) is delegated to py_webauthn. This module owns the
state around it:

  start  -> issue a challenge in the Challenge Store, return options
  finish -> find the challenge, consume it atomically, verify, persist

A ceremony instance is identified only by its challenge. The challenge is
consumed *before* the cryptographic check, so a failed verification burns it
and the ceremony cannot be resumed -- the client must start over. Checks that
happen before consumption (unknown credential, wrong subject) leave the
challenge untouched.

Error mapping:
  ChallengeNotFound           challenge absent, expired, wrong purpose/subject,
                              or already consumed
  AttestationInvalid          py_webauthn rejected the response
  CredentialNotFound          assertion names an unregistered credential
  SubjectMismatch             assertion or challenge bound to another subject
  UpstreamUnavailable         storage failure (never reported as invalid)
"""

from __future__ import annotations

import json
import logging

from webauthn import (
    base64url_to_bytes,
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import bytes_to_base64url
from webauthn.helpers.cose import COSEAlgorithmIdentifier
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from auth.challenges import ChallengeStore
from auth.credentials import CredentialRegistry
from auth.models import CeremonyOptions, Challenge, ChallengePurpose, Credential
from auth.roles import RoleStore
from core.config import Settings, get_settings
from core.errors import (
    AttestationInvalid,
    ChallengeNotFound,
    CredentialNotFound,
    SubjectMismatch,
    SubjectNotFound,
    storage_errors,
)

logger = logging.getLogger("sessionguard.ceremony")

_SUPPORTED_ALGORITHMS = [
    COSEAlgorithmIdentifier.ECDSA_SHA_256,
    COSEAlgorithmIdentifier.RSASSA_PKCS1_v1_5_SHA_256,
]
_KNOWN_TRANSPORTS = {t.value for t in AuthenticatorTransport}


def _descriptors(credentials: list[Credential]) -> list[PublicKeyCredentialDescriptor]:
    return [
        PublicKeyCredentialDescriptor(
            id=base64url_to_bytes(c.credential_id),
            transports=[AuthenticatorTransport(t) for t in c.transports if t in _KNOWN_TRANSPORTS] or None,
        )
        for c in credentials
    ]


def _normalize_credential_id(raw: str) -> str:
    """Re-encode so padded and unpadded base64url ids compare equal."""
    return bytes_to_base64url(base64url_to_bytes(raw))


class CeremonyEngine:
    """Orchestrates WebAuthn ceremonies over the Challenge Store and Credential Registry."""

    def __init__(
        self,
        challenges: ChallengeStore,
        registry: CredentialRegistry,
        subjects: RoleStore,
        settings: Settings | None = None,
    ) -> None:
        self._challenges = challenges
        self._registry = registry
        self._subjects = subjects
        self._settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def start_registration(self, subject_id: str, device_label: str = "Security Key") -> CeremonyOptions:
        """Issue a registration challenge scoped to subject_id and return creation options."""
        with storage_errors("ceremony.start_registration"):
            subject = self._subjects.get_subject(subject_id)
            if subject is None or not subject.is_active:
                raise SubjectNotFound()
            existing = self._registry.list_for_subject(subject_id)
            challenge = self._challenges.issue(
                ChallengePurpose.registration,
                subject_id=subject_id,
                label=device_label or "Security Key",
            )

        uv = (
            UserVerificationRequirement.REQUIRED
            if self._settings.require_user_verification
            else UserVerificationRequirement.PREFERRED
        )
        options = generate_registration_options(
            rp_id=self._settings.rp_id,
            rp_name=self._settings.rp_name,
            user_id=subject.id.encode(),
            user_name=subject.email,
            user_display_name=subject.display_name or subject.email,
            challenge=base64url_to_bytes(challenge.value),
            timeout=self._settings.ceremony_timeout_ms,
            attestation=AttestationConveyancePreference.NONE,
            authenticator_selection=AuthenticatorSelectionCriteria(
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=uv,
            ),
            exclude_credentials=_descriptors(existing),
            supported_pub_key_algs=_SUPPORTED_ALGORITHMS,
        )
        logger.info("Registration started subject=%s... existing_credentials=%d", subject_id[:8], len(existing))
        return CeremonyOptions(
            challenge=challenge.value,
            options=json.loads(options_to_json(options)),
            expires_at=challenge.expires_at,
        )

    def finish_registration(
        self,
        subject_id: str,
        attestation: dict,
        challenge_ref: str,
        display_name: str | None = None,
    ) -> str:
        """Verify an attestation and register the credential. Returns the credential id."""
        with storage_errors("ceremony.finish_registration"):
            challenge = self._challenges.find_active(challenge_ref, ChallengePurpose.registration)
            if challenge is None or challenge.subject_id != subject_id:
                raise ChallengeNotFound()
            self._consume(challenge)

        try:
            verified = verify_registration_response(
                credential=attestation,
                expected_challenge=base64url_to_bytes(challenge.value),
                expected_rp_id=self._settings.rp_id,
                expected_origin=self._settings.expected_origins,
                require_user_verification=self._settings.require_user_verification,
                supported_pub_key_algs=_SUPPORTED_ALGORITHMS,
            )
        except (WebAuthnException, ValueError) as exc:
            logger.warning("Registration verification failed subject=%s...: %s", subject_id[:8], exc)
            raise AttestationInvalid() from exc

        transports = attestation.get("response", {}).get("transports") or []
        credential = Credential(
            credential_id=bytes_to_base64url(verified.credential_id),
            subject_id=subject_id,
            public_key=bytes_to_base64url(verified.credential_public_key),
            display_name=display_name or challenge.label or "Security Key",
            sign_count=verified.sign_count,
            transports=[t for t in transports if isinstance(t, str)],
        )
        with storage_errors("ceremony.finish_registration"):
            stored = self._registry.add(credential)
        logger.info("Registration verified subject=%s...", subject_id[:8])
        return stored.credential_id

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def start_authentication(self, subject_id: str | None = None) -> CeremonyOptions:
        """Issue an authentication challenge.

        With subject_id the options carry an allow-list of that subject's
        credentials; without it the challenge is unscoped and the
        authenticator picks a discoverable credential.
        """
        with storage_errors("ceremony.start_authentication"):
            allowed = self._registry.list_for_subject(subject_id) if subject_id else []
            challenge = self._challenges.issue(ChallengePurpose.authentication, subject_id=subject_id)

        options = generate_authentication_options(
            rp_id=self._settings.rp_id,
            challenge=base64url_to_bytes(challenge.value),
            timeout=self._settings.ceremony_timeout_ms,
            allow_credentials=_descriptors(allowed),
            user_verification=(
                UserVerificationRequirement.REQUIRED
                if self._settings.require_user_verification
                else UserVerificationRequirement.PREFERRED
            ),
        )
        return CeremonyOptions(
            challenge=challenge.value,
            options=json.loads(options_to_json(options)),
            expires_at=challenge.expires_at,
        )

    def finish_authentication(
        self,
        assertion: dict,
        challenge_ref: str,
        subject_id: str | None = None,
    ) -> str:
        """Verify an assertion. Returns the subject id that owns the credential."""
        raw_id = assertion.get("id") or assertion.get("rawId")
        if not isinstance(raw_id, str) or not raw_id:
            raise CredentialNotFound()
        try:
            credential_id = _normalize_credential_id(raw_id)
        except ValueError as exc:
            raise CredentialNotFound() from exc

        with storage_errors("ceremony.finish_authentication"):
            credential = self._registry.get(credential_id)
            if credential is None:
                raise CredentialNotFound()
            if subject_id is not None and subject_id != credential.subject_id:
                logger.warning("Assertion subject mismatch for credential owner=%s...", credential.subject_id[:8])
                raise SubjectMismatch()

            challenge = self._challenges.find_active(challenge_ref, ChallengePurpose.authentication)
            if challenge is None:
                raise ChallengeNotFound()
            if challenge.subject_id is not None and challenge.subject_id != credential.subject_id:
                raise SubjectMismatch()
            self._consume(challenge)

        try:
            verified = verify_authentication_response(
                credential=assertion,
                expected_challenge=base64url_to_bytes(challenge.value),
                expected_rp_id=self._settings.rp_id,
                expected_origin=self._settings.expected_origins,
                credential_public_key=base64url_to_bytes(credential.public_key),
                credential_current_sign_count=credential.sign_count,
                require_user_verification=self._settings.require_user_verification,
            )
        except (WebAuthnException, ValueError) as exc:
            logger.warning("Authentication verification failed subject=%s...: %s", credential.subject_id[:8], exc)
            raise AttestationInvalid() from exc

        with storage_errors("ceremony.finish_authentication"):
            self._registry.record_use(credential.credential_id, verified.new_sign_count)
        logger.info("Authentication verified subject=%s...", credential.subject_id[:8])
        return credential.subject_id

    # ------------------------------------------------------------------

    def _consume(self, challenge: Challenge) -> None:
        # Losing the race to a concurrent finish is the same as the challenge
        # never having existed.
        if not self._challenges.consume(challenge):
            raise ChallengeNotFound()
