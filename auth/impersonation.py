"""
auth/impersonation.py -- Impersonation Broker: time-limited admin impersonation.

start() mints a short-lived pair for the target whose tokens carry a signed
actor claim, act = {"sub": <admin id>, "sid": <impersonation id>}. stop()
revokes the impersonation id (ending the pair and any pair rotated from it)
and mints a fresh pair for the admin.

Two restoration paths:
  stop(admin_id)          uses the context this instance holds in memory.
  stop_with_claims(claims) uses the signed actor claim of the impersonated
                          token itself, so an instance that never saw start()
                          can still restore the admin.

Restoration depends only on the admin's identity. Whether the impersonated
device session was terminated through the session tracker is irrelevant.

Contexts are never persisted. At most one is held per admin; starting a
second one without stopping the first is a StateConflict.
"""

from __future__ import annotations

import logging
import threading

from auth.models import ImpersonationContext, TokenPair
from auth.roles import RoleStore, require_role
from auth.tokens import IdentityProvider
from core.clock import Clock, utc_now
from core.config import Settings, get_settings
from core.errors import (
    ImpersonationAlreadyActive,
    NoActiveImpersonation,
    SelfImpersonationForbidden,
    SubjectNotFound,
    storage_errors,
)

logger = logging.getLogger("sessionguard.impersonation")


class ImpersonationBroker:
    def __init__(
        self,
        provider: IdentityProvider,
        role_store: RoleStore,
        settings: Settings | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._provider = provider
        self._roles = role_store
        self._settings = settings or get_settings()
        self._clock = clock
        self._contexts: dict[str, ImpersonationContext] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    def start(self, admin_subject_id: str, target_subject_id: str) -> TokenPair:
        """Begin impersonating target_subject_id. Returns the target's token pair."""
        with storage_errors("impersonation.start"):
            require_role(self._roles, admin_subject_id, self._settings.admin_role)
            if admin_subject_id == target_subject_id:
                raise SelfImpersonationForbidden()
            target = self._roles.get_subject(target_subject_id)
            if target is None or not target.is_active:
                raise SubjectNotFound()

            with self._lock:
                if admin_subject_id in self._contexts:
                    raise ImpersonationAlreadyActive()
                pair = self._provider.issue_token_pair(
                    target_subject_id,
                    actor=admin_subject_id,
                    expire_seconds=self._settings.impersonation_token_expire_seconds,
                )
                self._contexts[admin_subject_id] = ImpersonationContext(
                    admin_subject_id=admin_subject_id,
                    target_subject_id=target_subject_id,
                    issued_at=self._clock(),
                    impersonation_id=pair.impersonation_id,
                )

        logger.warning(
            "Impersonation started admin=%s... target=%s...", admin_subject_id[:8], target_subject_id[:8]
        )
        return pair

    def stop(self, admin_subject_id: str) -> TokenPair:
        """End the admin's impersonation and return a fresh pair for the admin.

        The context is dropped only after the revocation and the admin's pair
        are both stored, so a storage failure leaves it in place and the
        caller can retry.
        """
        with self._lock:
            context = self._contexts.get(admin_subject_id)
            if context is None:
                raise NoActiveImpersonation()
            with storage_errors("impersonation.stop"):
                self._provider.revoke_session(context.impersonation_id)
                pair = self._provider.issue_token_pair(admin_subject_id)
            del self._contexts[admin_subject_id]
        logger.warning(
            "Impersonation stopped admin=%s... target=%s...",
            admin_subject_id[:8],
            context.target_subject_id[:8],
        )
        return pair

    def stop_with_claims(self, claims: dict) -> TokenPair:
        """Restore the admin named in a verified impersonation token's actor claim.

        Each impersonation can be ended once: the first call revokes the
        impersonation id, later calls find it already revoked and fail with
        NoActiveImpersonation.
        """
        act = claims.get("act")
        if not isinstance(act, dict) or not act.get("sub") or not act.get("sid"):
            raise NoActiveImpersonation()
        admin_subject_id = act["sub"]

        with storage_errors("impersonation.stop"):
            if not self._provider.revoke_session(act["sid"]):
                raise NoActiveImpersonation()
            with self._lock:
                held = self._contexts.get(admin_subject_id)
                if held is not None and held.impersonation_id == act["sid"]:
                    del self._contexts[admin_subject_id]
            pair = self._provider.issue_token_pair(admin_subject_id)
        logger.warning("Impersonation stopped from token claims admin=%s...", admin_subject_id[:8])
        return pair

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def is_impersonating(self, admin_subject_id: str) -> bool:
        with self._lock:
            return admin_subject_id in self._contexts

    def original_identity(self, impersonation_id: str) -> str | None:
        """Admin behind the impersonation with this act.sid, or None."""
        with self._lock:
            for context in self._contexts.values():
                if context.impersonation_id == impersonation_id:
                    return context.admin_subject_id
        return None

    def context_for(self, admin_subject_id: str) -> ImpersonationContext | None:
        with self._lock:
            return self._contexts.get(admin_subject_id)
