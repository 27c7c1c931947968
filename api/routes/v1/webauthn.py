"""
api/routes/v1/webauthn.py -- WebAuthn registration, login, and credential management.

Routes:
  POST   /api/v1/webauthn/register/start          -- creation options (requires auth)
  POST   /api/v1/webauthn/register/finish         -- verify attestation, store credential
  POST   /api/v1/webauthn/authenticate/start      -- request options (public)
  POST   /api/v1/webauthn/authenticate/finish     -- verify assertion, issue token pair
  GET    /api/v1/webauthn/credentials             -- list own credentials
  PATCH  /api/v1/webauthn/credentials/{id}        -- rename own credential
  DELETE /api/v1/webauthn/credentials/{id}        -- revoke own credential

Security:
  [H2] /authenticate/start is flood-guarded per IP by slowapi.
  [H3] /register/finish and /authenticate/finish are guarded by the durable
       rate limiter (ratelimit/) before any verification work happens.
  [M5] Cache-Control: no-store on responses carrying tokens.
  IDOR guard: PATCH and DELETE /credentials/{id} pass the caller's subject id to the
  registry; its UPDATE and DELETE are owner-scoped.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.guards import client_address, rate_limit
from api.limiter import CEREMONY_START_LIMIT, limiter
from api.models import (
    AuthenticateFinishRequest,
    AuthenticateStartRequest,
    CeremonyOptionsResponse,
    CredentialResponse,
    RegisterFinishRequest,
    RegisterFinishResponse,
    RegisterStartRequest,
    RenameCredentialRequest,
    TokenResponse,
)
from auth.dependencies import get_current_principal
from auth.models import Principal
from auth.tokens import set_auth_cookie
from core.errors import CredentialNotFound, SubjectMismatch

# Auth policy:
# - POST   /webauthn/register/start:        requires auth (bootstrap token from the CLI for a first key)
# - POST   /webauthn/register/finish:       requires auth + rl:register
# - POST   /webauthn/authenticate/start:    public + slowapi flood guard
# - POST   /webauthn/authenticate/finish:   public + rl:login
# - GET    /webauthn/credentials:           requires auth
# - PATCH  /webauthn/credentials/{id}:      requires auth + ownership check in registry
# - DELETE /webauthn/credentials/{id}:      requires auth + ownership check in registry
router = APIRouter()


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@router.post("/webauthn/register/start", response_model=CeremonyOptionsResponse)
def register_start(
    request: Request,
    body: RegisterStartRequest,
    principal: Principal = Depends(get_current_principal),
) -> CeremonyOptionsResponse:
    opts = request.app.state.ceremony.start_registration(principal.subject.id, body.device_label)
    return CeremonyOptionsResponse.from_options(opts)


@router.post(
    "/webauthn/register/finish",
    response_model=RegisterFinishResponse,
    status_code=201,
    dependencies=[Depends(rate_limit("register"))],
)
def register_finish(
    request: Request,
    body: RegisterFinishRequest,
    principal: Principal = Depends(get_current_principal),
) -> RegisterFinishResponse:
    credential_id = request.app.state.ceremony.finish_registration(
        principal.subject.id,
        body.credential,
        body.challenge,
        display_name=body.display_name,
    )
    return RegisterFinishResponse(credential_id=credential_id)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


@limiter.limit(CEREMONY_START_LIMIT)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/webauthn/authenticate/start", response_model=CeremonyOptionsResponse)
def authenticate_start(request: Request, body: AuthenticateStartRequest) -> CeremonyOptionsResponse:
    """Issue an authentication challenge.

    An unknown email gets an unscoped challenge with an empty allow-list, the
    same response shape as a known one, so the route does not reveal which
    emails have accounts.
    """
    subject_id = None
    if body.email:
        subject = request.app.state.identity_store.get_by_email(body.email)
        subject_id = subject.id if subject else None
    opts = request.app.state.ceremony.start_authentication(subject_id)
    return CeremonyOptionsResponse.from_options(opts)


@router.post(
    "/webauthn/authenticate/finish",
    response_model=TokenResponse,
    dependencies=[Depends(rate_limit("login"))],
)
def authenticate_finish(request: Request, body: AuthenticateFinishRequest) -> JSONResponse:
    """Verify the assertion, mint a token pair, and track the device session."""
    state = request.app.state
    expected_subject = None
    if body.email:
        subject = state.identity_store.get_by_email(body.email)
        if subject is None:
            raise SubjectMismatch()
        expected_subject = subject.id

    subject_id = state.ceremony.finish_authentication(body.credential, body.challenge, subject_id=expected_subject)
    pair = state.identity_provider.issue_token_pair(subject_id)

    extra: dict = {}
    if body.device_fingerprint:
        record = state.session_tracker.track(
            subject_id,
            body.device_fingerprint,
            request.headers.get("User-Agent", ""),
            client_address(request),
        )
        extra = {"device_session_id": record.session_id, "new_device": record.is_new_device}

    resp = JSONResponse(content=TokenResponse.from_pair(pair, **extra).model_dump(mode="json"))
    set_auth_cookie(resp, pair.access_token, pair.expires_in)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Credential management
# ---------------------------------------------------------------------------


@router.get("/webauthn/credentials", response_model=list[CredentialResponse])
def list_credentials(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> list[CredentialResponse]:
    credentials = request.app.state.credential_registry.list_for_subject(principal.subject.id)
    return [CredentialResponse.from_credential(c) for c in credentials]


@router.patch("/webauthn/credentials/{credential_id}", response_model=CredentialResponse)
def rename_credential(
    credential_id: str,
    request: Request,
    body: RenameCredentialRequest,
    principal: Principal = Depends(get_current_principal),
) -> CredentialResponse:
    registry = request.app.state.credential_registry
    if not registry.rename(credential_id, principal.subject.id, body.display_name):
        raise CredentialNotFound()
    return CredentialResponse.from_credential(registry.get(credential_id))


@router.delete("/webauthn/credentials/{credential_id}", status_code=204)
def revoke_credential(
    credential_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> Response:
    if not request.app.state.credential_registry.revoke(credential_id, principal.subject.id):
        raise CredentialNotFound()
    return Response(status_code=204)
