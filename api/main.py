"""
api/main.py -- FastAPI application entry point for SessionGuard.

Exposes the authentication and session-security core over HTTP so calling
surfaces (UI forms, admin tooling) reach it through one contract.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- in-memory flood guard from api.limiter

Lifespan builds every store and service into app.state (configure_state)
and runs the reaper task; shutdown cancels the task and disposes engines
symmetrically (close_state).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded as FloodLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.alerts import router as alerts_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.impersonation import router as impersonation_router
from api.routes.v1.mfa import router as mfa_router
from api.routes.v1.ratelimit import router as ratelimit_router
from api.routes.v1.sessions import router as sessions_router
from api.routes.v1.webauthn import router as webauthn_router
from auth.ceremony import CeremonyEngine
from auth.challenges import ChallengeStore
from auth.credentials import CredentialRegistry
from auth.impersonation import ImpersonationBroker
from auth.mfa import MfaService
from auth.store import IdentityStore
from auth.tokens import IdentityProvider
from core.clock import Clock, utc_now
from core.config import Settings, get_settings
from core.errors import (
    NotFound,
    PrivilegeDenied,
    RateLimited,
    RateLimitExceeded,
    SessionGuardError,
    StateConflict,
    UpstreamUnavailable,
    VerificationFailed,
)
from ratelimit.limiter import RateLimiter
from ratelimit.store import RateLimitStore
from sessions.alerts import AlertService, Notifier, build_notifier
from sessions.detector import AnomalyDetector
from sessions.monitor import SecurityMonitor
from sessions.store import SessionStore
from sessions.tracker import SessionTracker

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("sessionguard.api")

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def configure_state(
    app: FastAPI,
    settings: Settings | None = None,
    db_url: str | None = None,
    clock: Clock = utc_now,
    notifier: Notifier | None = None,
) -> None:
    """Build every store and service into app.state.

    Shared by the real lifespan, the CLI, and the test fixtures, so all three
    run the same object graph. Order follows the dependency graph: stores
    first, then services that take them.
    """
    settings = settings or get_settings()
    url = db_url or settings.database_url
    state = app.state
    state.settings = settings

    state.identity_store = IdentityStore(url, clock=clock)
    state.challenge_store = ChallengeStore(url, ttl_seconds=settings.challenge_ttl_seconds, clock=clock)
    state.credential_registry = CredentialRegistry(url, clock=clock)
    state.session_store = SessionStore(url, clock=clock)
    state.rate_limit_store = RateLimitStore(url, clock=clock)

    state.identity_provider = IdentityProvider(state.identity_store, settings, clock=clock)
    state.ceremony = CeremonyEngine(state.challenge_store, state.credential_registry, state.identity_store, settings)
    state.alert_service = AlertService(
        state.session_store,
        notifier or build_notifier(settings),
        subjects=state.identity_store,
        clock=clock,
    )
    state.mfa = MfaService(state.identity_store, settings, clock=clock, alert_sink=state.alert_service.raise_alert)
    state.session_tracker = SessionTracker(state.session_store, settings, clock=clock)
    state.anomaly_detector = AnomalyDetector(state.session_store, settings, clock=clock)
    state.security_monitor = SecurityMonitor(state.anomaly_detector, state.alert_service, state.session_tracker)
    state.impersonation = ImpersonationBroker(state.identity_provider, state.identity_store, settings, clock=clock)
    state.rate_limiter = RateLimiter(state.rate_limit_store, settings, clock=clock)


def close_state(app: FastAPI) -> None:
    for name in ("identity_store", "challenge_store", "credential_registry", "session_store", "rate_limit_store"):
        store = getattr(app.state, name, None)
        if store is not None:
            store.close()


def reap(state) -> dict[str, int]:
    """Delete expired challenges, rate-limit windows, and token revocations."""
    return {
        "challenges": state.challenge_store.purge_expired(),
        "rate_limits": state.rate_limit_store.purge_expired(),
        "revocations": state.identity_store.purge_expired_revocations(),
    }


# ---------------------------------------------------------------------------
# Background reaper task
# ---------------------------------------------------------------------------


async def _reaper_loop(app: FastAPI) -> None:
    """Run reap() every REAPER_INTERVAL_SECONDS.

    Expiry is already enforced on every lookup; this loop only keeps the
    tables small. A failed pass is logged and retried on the next tick.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(app.state.settings.reaper_interval_seconds)
        try:
            removed = await asyncio.to_thread(reap, app.state)
            logger.debug("Reaper pass removed %s", removed)
        except SQLAlchemyError:
            logger.exception("Reaper pass failed")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The reaper task is started last because it references stores
    that must already exist.
    """
    logger.info("SessionGuard API starting up")
    configure_state(app)
    logger.info(
        "Services initialized (rp_id=%s, origins=%s)",
        app.state.settings.rp_id,
        ",".join(app.state.settings.expected_origins),
    )
    app.state.reaper_task = asyncio.create_task(_reaper_loop(app))

    yield

    app.state.reaper_task.cancel()
    close_state(app)
    logger.info("SessionGuard API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SessionGuard API",
    description="WebAuthn ceremonies, device-session security, admin impersonation, and rate limiting.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

_settings = get_settings()

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(webauthn_router, prefix="/api/v1", tags=["WebAuthn"])
app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(mfa_router, prefix="/api/v1", tags=["MFA"])
app.include_router(sessions_router, prefix="/api/v1", tags=["Sessions"])
app.include_router(alerts_router, prefix="/api/v1", tags=["Alerts"])
app.include_router(impersonation_router, prefix="/api/v1", tags=["Impersonation"])
app.include_router(ratelimit_router, prefix="/api/v1", tags=["Rate Limit"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------

# Checked in order; the first matching kind decides the status.
_STATUS_BY_KIND: list[tuple[type[SessionGuardError], int]] = [
    (NotFound, 404),
    (VerificationFailed, 401),
    (PrivilegeDenied, 403),
    (StateConflict, 409),
    (RateLimited, 429),
    (UpstreamUnavailable, 503),
]


def _envelope(status_code: int, code: str, message: str, detail=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(SessionGuardError)
async def core_error_handler(request: Request, exc: SessionGuardError) -> JSONResponse:
    """Map a taxonomy kind to its HTTP status.

    detail carries only what the caller needs to act (required role, reset
    time); context with internal identifiers stays in the log.
    """
    status_code = next((s for kind, s in _STATUS_BY_KIND if isinstance(exc, kind)), 400)
    extra = {k: v for k, v in exc.to_detail().items() if k not in ("code", "message")}
    response = _envelope(status_code, exc.code, exc.message, extra or None)
    if isinstance(exc, RateLimitExceeded):
        response.headers["Retry-After"] = str(exc.retry_after)
    return response


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Storage failures outside a service's storage_errors() block still surface as 503."""
    logger.exception("Storage failure on %s %s", request.method, request.url.path)
    return _envelope(503, UpstreamUnavailable.code, UpstreamUnavailable.message)


@app.exception_handler(FloodLimitExceeded)
async def flood_limit_handler(request: Request, exc: FloodLimitExceeded) -> JSONResponse:
    """429 from the slowapi flood guard. Retry-After is the guard's window length."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _envelope(429, "rate_limited", "Too many requests.", str(exc.detail))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _envelope(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Dependencies raise HTTPException with a dict detail ({"code", "message"});
    use it directly as the error field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _envelope(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the log only, never to the
    response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _envelope(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"], response_model=HealthResponse)
def health(request: Request):
    """Return liveness plus a database component check."""
    components = {"app": "ok"}
    try:
        request.app.state.identity_store.ping()
        components["database"] = "ok"
    except SQLAlchemyError:
        logger.exception("Health check: database unavailable")
        components["database"] = "error"
    healthy = components["database"] == "ok"
    body = HealthResponse(status="healthy" if healthy else "degraded", version=VERSION, components=components)
    return JSONResponse(status_code=200 if healthy else 503, content=body.model_dump())
