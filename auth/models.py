"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; stores and services do the work.

Timestamps are timezone-aware UTC datetimes. Stores persist them as epoch
seconds and convert in their row mappers.

Layer rule: no imports from api/, sessions/, or ratelimit/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class ChallengePurpose(str, Enum):
    registration = "registration"
    authentication = "authentication"


@dataclass
class Subject:
    """An identity known to the role/profile store.

    The core never stores passwords. role is compared against
    Settings.admin_role by auth.roles.require_role() -- never inline.
    """

    id: str
    email: str
    role: str  # "admin", "staff", "customer"
    display_name: str = ""
    is_active: bool = True
    created_at: datetime | None = None


@dataclass
class Challenge:
    """A server-issued, single-use, time-limited ceremony challenge.

    value is the base64url encoding of 32 random bytes and doubles as the
    challenge reference handed to the client. subject_id is None for
    discoverable-credential authentication. label carries the device label
    chosen at registration start through to the stored credential.
    """

    value: str
    purpose: ChallengePurpose
    created_at: datetime
    expires_at: datetime
    subject_id: str | None = None
    label: str | None = None


@dataclass
class Credential:
    """A registered WebAuthn public key.

    credential_id and public_key are base64url strings (the COSE-encoded key
    as returned by the authenticator). sign_count is the authenticator's
    signature counter, used by the verifier to detect cloned keys.
    """

    credential_id: str
    subject_id: str
    public_key: str
    display_name: str = "Security Key"
    sign_count: int = 0
    transports: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    last_used_at: datetime | None = None


@dataclass
class CeremonyOptions:
    """What a ceremony start returns to the client.

    options is the JSON-ready PublicKeyCredentialCreationOptions /
    PublicKeyCredentialRequestOptions dict; challenge is the reference the
    client must echo back on finish.
    """

    challenge: str
    options: dict
    expires_at: datetime


@dataclass
class TokenPair:
    """An access/refresh token pair minted by the identity provider.

    session_id is the `sid` claim shared by both tokens; revoking it
    invalidates the pair. actor is the impersonating admin, if any, and
    impersonation_id the `act.sid` that every pair rotated from an
    impersonated one shares.
    """

    access_token: str
    refresh_token: str
    subject_id: str
    session_id: str
    expires_in: int
    actor: str | None = None
    impersonation_id: str | None = None


@dataclass
class ImpersonationContext:
    """Transient record of an admin acting as another subject. Never persisted."""

    admin_subject_id: str
    target_subject_id: str
    issued_at: datetime
    impersonation_id: str  # act.sid of every pair issued for this impersonation


@dataclass
class Principal:
    """The authenticated caller of a request: the subject plus its verified token claims."""

    subject: Subject
    claims: dict

    @property
    def session_id(self) -> str:
        return self.claims["sid"]

    @property
    def actor(self) -> str | None:
        """Admin subject id when this request comes from an impersonated pair."""
        act = self.claims.get("act")
        return act.get("sub") if isinstance(act, dict) else None
