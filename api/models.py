"""
API request and response models for SessionGuard REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
sessions/models.py, which own the internal domain representation. Route
handlers map between the two with the from_* helpers below.

Separation of concerns: domain dataclasses = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import CeremonyOptions, Credential, TokenPair
from sessions.models import AlertType, AnomalyReport, SecurityAlert, SessionRecord

# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# WebAuthn ceremonies
# ---------------------------------------------------------------------------


class CeremonyOptionsResponse(BaseModel):
    """Options for navigator.credentials.create() / .get().

    challenge is the reference the client must send back on finish.
    """

    challenge: str
    options: dict
    expires_at: datetime

    @classmethod
    def from_options(cls, opts: CeremonyOptions) -> "CeremonyOptionsResponse":
        return cls(challenge=opts.challenge, options=opts.options, expires_at=opts.expires_at)


class RegisterStartRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    device_label: str = Field(default="Security Key", min_length=1, max_length=100)


class RegisterFinishRequest(BaseModel):
    """credential is the PublicKeyCredential JSON produced by the browser."""

    model_config = ConfigDict(str_strip_whitespace=True)

    challenge: str = Field(min_length=1, max_length=128)
    credential: dict
    display_name: Optional[str] = Field(default=None, max_length=100)


class RenameCredentialRequest(BaseModel):
    display_name: str = Field(min_length=1, max_length=100)


class RegisterFinishResponse(BaseModel):
    credential_id: str


class AuthenticateStartRequest(BaseModel):
    """Omit email for discoverable-credential (username-less) login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: Optional[str] = Field(default=None, max_length=255)


class AuthenticateFinishRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    challenge: str = Field(min_length=1, max_length=128)
    credential: dict
    email: Optional[str] = Field(default=None, max_length=255)
    device_fingerprint: Optional[str] = Field(default=None, min_length=1, max_length=255)


class CredentialResponse(BaseModel):
    credential_id: str
    display_name: str
    transports: list[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    @classmethod
    def from_credential(cls, c: Credential) -> "CredentialResponse":
        return cls(
            credential_id=c.credential_id,
            display_name=c.display_name,
            transports=c.transports,
            created_at=c.created_at,
            last_used_at=c.last_used_at,
        )


# ---------------------------------------------------------------------------
# Tokens and identity
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """A freshly minted token pair.

    device_session_id / new_device are set only when the login also tracked a
    device session.
    """

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    subject_id: str
    session_id: str
    actor: Optional[str] = None
    device_session_id: Optional[str] = None
    new_device: bool = False

    @classmethod
    def from_pair(cls, pair: TokenPair, **extra) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
            subject_id=pair.subject_id,
            session_id=pair.session_id,
            actor=pair.actor,
            **extra,
        )


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


class RecoveryLoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)
    code: str = Field(min_length=12, max_length=20)


class MeResponse(BaseModel):
    subject_id: str
    email: str
    display_name: str
    role: str
    impersonated_by: Optional[str] = None


# ---------------------------------------------------------------------------
# MFA
# ---------------------------------------------------------------------------


class TotpEnrollResponse(BaseModel):
    secret: str
    provisioning_uri: str


class TotpCodeRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(min_length=6, max_length=8)


class TotpVerifyResponse(BaseModel):
    valid: bool


class RecoveryCodesResponse(BaseModel):
    """Shown exactly once. Only HMAC digests are stored."""

    codes: list[str]


# ---------------------------------------------------------------------------
# Sessions and anomalies
# ---------------------------------------------------------------------------


class TrackSessionRequest(BaseModel):
    """user_agent defaults to the request's User-Agent header."""

    model_config = ConfigDict(str_strip_whitespace=True)

    device_fingerprint: str = Field(min_length=1, max_length=255)
    user_agent: Optional[str] = Field(default=None, max_length=1000)


class SessionResponse(BaseModel):
    session_id: str
    device_fingerprint: str
    user_agent: str
    ip_address: Optional[str] = None
    created_at: datetime
    last_active_at: datetime
    active: bool
    trusted_until: Optional[datetime] = None
    new_device: bool = False
    is_new_device: bool = False

    @classmethod
    def from_record(cls, r: SessionRecord) -> "SessionResponse":
        return cls(
            session_id=r.session_id,
            device_fingerprint=r.device_fingerprint,
            user_agent=r.user_agent,
            ip_address=r.ip_address,
            created_at=r.created_at,
            last_active_at=r.last_active_at,
            active=r.active,
            trusted_until=r.trusted_until,
            new_device=r.new_device,
            is_new_device=r.is_new_device,
        )


class TerminateOthersRequest(BaseModel):
    keep_session_id: str = Field(min_length=1, max_length=64)


class TerminateOthersResponse(BaseModel):
    terminated: int


class TrustDeviceRequest(BaseModel):
    device_fingerprint: str = Field(min_length=1, max_length=255)
    days: Optional[int] = Field(default=None, ge=1, le=365)


class AnomalyReportResponse(BaseModel):
    subject_id: str
    generated_at: datetime
    simultaneous_sessions: int
    device_count: int
    browsers: list[str]
    network_addresses: list[str]
    multiple_browsers: bool
    multiple_locations: bool
    suspicious_location: bool
    new_device: bool
    new_device_sessions: list[str]
    stale_sessions: list[str]
    recent_activity: list[dict]
    recommended_alerts: list[AlertType]

    @classmethod
    def from_report(cls, r: AnomalyReport) -> "AnomalyReportResponse":
        return cls(**{name: getattr(r, name) for name in cls.model_fields})


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


class AlertResponse(BaseModel):
    id: str
    subject_id: str
    alert_type: AlertType
    created_at: datetime
    resolved_at: Optional[datetime] = None
    metadata: dict = Field(default_factory=dict)

    @classmethod
    def from_alert(cls, a: SecurityAlert) -> "AlertResponse":
        return cls(
            id=a.id,
            subject_id=a.subject_id,
            alert_type=a.alert_type,
            created_at=a.created_at,
            resolved_at=a.resolved_at,
            metadata=a.metadata,
        )


class RaiseAlertRequest(BaseModel):
    subject_id: str = Field(min_length=1, max_length=64)
    alert_type: AlertType
    metadata: dict = Field(default_factory=dict)


class ScanResponse(BaseModel):
    report: AnomalyReportResponse
    raised: list[AlertResponse]
    skipped: list[AlertType]


# ---------------------------------------------------------------------------
# Impersonation
# ---------------------------------------------------------------------------


class ImpersonationStartRequest(BaseModel):
    target_subject_id: str = Field(min_length=1, max_length=64)


class ImpersonationStatusResponse(BaseModel):
    """Seen from the admin side (impersonating) or the impersonated pair (original_subject_id)."""

    impersonating: bool
    target_subject_id: Optional[str] = None
    original_subject_id: Optional[str] = None
    issued_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Rate limit
# ---------------------------------------------------------------------------


class RateLimitCheckRequest(BaseModel):
    """route names the guarded action; the caller identity is the client address."""

    route: str = Field(min_length=1, max_length=64, pattern=r"^[a-z0-9_.-]+$")


class RateLimitCheckResponse(BaseModel):
    allowed: bool
    remaining: int
    limit: int
    reset_at: datetime
    retry_after: int
