"""
core/errors.py -- Error taxonomy shared by every SessionGuard layer.

Every core operation fails with exactly one of six kinds:

  NotFound            challenge / credential / subject / session / alert is
                      absent or expired. Absent and expired are deliberately
                      indistinguishable to callers.
  VerificationFailed  cryptographic or identity mismatch.
  PrivilegeDenied     role check failure (carries the required role).
  StateConflict       the operation is not valid in the current state.
  RateLimited         quota exceeded (carries reset time and retry delay).
  UpstreamUnavailable storage or identity-provider failure.

Each error carries a stable machine-readable `code` and a `message` that is
safe to show to end users: no internal identifiers, no raw storage text.
api/main.py maps kinds to HTTP status codes in one place.

storage_errors() is the seam between stores and services: raw SQLAlchemy
exceptions are logged with full context and re-raised as UpstreamUnavailable,
so a database outage never looks like an invalid credential.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger("sessionguard.errors")


class SessionGuardError(Exception):
    """Base class for every error a core operation may raise."""

    code = "error"
    message = "The request could not be completed."

    def __init__(self, message: str | None = None, **context) -> None:
        self.message = message or self.message
        # Context is for logs and structured error detail only. Never put
        # secrets or internal identifiers in here.
        self.context = context
        super().__init__(self.message)

    def to_detail(self) -> dict:
        return {"code": self.code, "message": self.message}


# ---------------------------------------------------------------------------
# Kinds
# ---------------------------------------------------------------------------


class NotFound(SessionGuardError):
    code = "not_found"
    message = "The requested item is invalid or has expired."


class VerificationFailed(SessionGuardError):
    code = "verification_failed"
    message = "Verification failed."


class PrivilegeDenied(SessionGuardError):
    code = "forbidden"
    message = "You do not have permission to perform this action."


class StateConflict(SessionGuardError):
    code = "conflict"
    message = "The request conflicts with the current state."


class RateLimited(SessionGuardError):
    code = "rate_limited"
    message = "Too many requests."


class UpstreamUnavailable(SessionGuardError):
    code = "upstream_unavailable"
    message = "A backing service is unavailable. Please try again later."


# ---------------------------------------------------------------------------
# NotFound
# ---------------------------------------------------------------------------


class ChallengeNotFound(NotFound):
    code = "challenge_not_found"
    message = "Challenge not found or expired."


class CredentialNotFound(NotFound):
    code = "credential_not_found"
    message = "Credential not recognized."


class SubjectNotFound(NotFound):
    code = "subject_not_found"
    message = "Account not found."


class SessionNotFound(NotFound):
    code = "session_not_found"
    message = "Session not found."


class AlertNotFound(NotFound):
    code = "alert_not_found"
    message = "Alert not found."


# ---------------------------------------------------------------------------
# VerificationFailed
# ---------------------------------------------------------------------------


class AttestationInvalid(VerificationFailed):
    code = "attestation_invalid"
    message = "Authenticator response could not be verified."


class SubjectMismatch(VerificationFailed):
    code = "subject_mismatch"
    message = "Credential does not belong to this account."


class CodeInvalid(VerificationFailed):
    code = "code_invalid"
    message = "The code is invalid or has already been used."


class TokenInvalid(VerificationFailed):
    code = "token_invalid"
    message = "Token is invalid or has expired."


# ---------------------------------------------------------------------------
# PrivilegeDenied
# ---------------------------------------------------------------------------


class InsufficientPrivilege(PrivilegeDenied):
    code = "insufficient_privilege"

    def __init__(self, required_role: str, message: str | None = None) -> None:
        super().__init__(message or f"The '{required_role}' role is required.", required_role=required_role)
        self.required_role = required_role

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail["required_role"] = self.required_role
        return detail


# ---------------------------------------------------------------------------
# StateConflict
# ---------------------------------------------------------------------------


class SelfImpersonationForbidden(StateConflict):
    code = "self_impersonation"
    message = "You cannot impersonate yourself."


class ImpersonationAlreadyActive(StateConflict):
    code = "impersonation_active"
    message = "An impersonation session is already active. Stop it first."


class NoActiveImpersonation(StateConflict):
    code = "no_active_impersonation"
    message = "No impersonation session is active."


class CredentialAlreadyRegistered(StateConflict):
    code = "credential_registered"
    message = "This authenticator is already registered."


class MfaNotEnrolled(StateConflict):
    code = "mfa_not_enrolled"
    message = "Two-factor authentication is not set up for this account."


# ---------------------------------------------------------------------------
# RateLimited
# ---------------------------------------------------------------------------


class RateLimitExceeded(RateLimited):
    code = "rate_limited"

    def __init__(self, reset_at: datetime, retry_after: int, limit: int) -> None:
        super().__init__("Too many requests. Try again later.", limit=limit)
        self.reset_at = reset_at
        self.retry_after = retry_after
        self.limit = limit

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail["reset_at"] = self.reset_at.isoformat()
        detail["retry_after"] = self.retry_after
        return detail


# ---------------------------------------------------------------------------
# Storage seam
# ---------------------------------------------------------------------------


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Translate SQLAlchemy failures inside `operation` into UpstreamUnavailable.

    Usage:
        with storage_errors("ceremony.finish_registration"):
            ...store calls...

    SessionGuardError subclasses raised inside the block pass through
    untouched -- only raw storage exceptions are converted.
    """
    try:
        yield
    except SQLAlchemyError as exc:
        logger.exception("Storage failure during %s", operation)
        raise UpstreamUnavailable(operation=operation) from exc
