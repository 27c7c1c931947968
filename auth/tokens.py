"""
auth/tokens.py -- Identity provider: JWT token pairs, revocation, secret hashing.

Security design decisions:
  JWT: python-jose with HS256. Every issued pair shares a random `sid`
       (session id) claim; revoking the sid invalidates both tokens at once.
       decode() returns None on any failure -- the route layer turns that into
       a 401, and callers never need to know *why* a token was rejected.

  Impersonation: the impersonated pair carries an RFC 8693 style actor claim
       `act: {"sub": <admin id>, "sid": <impersonation id>}`. Because the claim
       is signed, any service instance can recover the admin's identity from
       the token itself rather than from process memory. Revoking the
       impersonation id ends every pair rotated from the impersonated one.

  Recovery codes: stored as HMAC-SHA256(SECRET_KEY, code). Lookup is a direct
       hash match, and an attacker who obtains the DB cannot test guesses
       without also knowing SECRET_KEY.

Layer rule: no imports from api/, sessions/, or ratelimit/. Import from core/
is allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import uuid
from datetime import timedelta

from jose import JWTError, jwt

from auth.models import Subject, TokenPair
from auth.store import IdentityStore
from core.clock import Clock, to_epoch, utc_now
from core.config import Settings, get_settings
from core.errors import SubjectNotFound, TokenInvalid

logger = logging.getLogger("sessionguard.tokens")

_ALGORITHM = "HS256"


# ---------------------------------------------------------------------------
# Secret hashing
# ---------------------------------------------------------------------------


def hash_secret(raw: str, secret_key: str | None = None) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw) as a hex string."""
    key = secret_key or get_settings().secret_key
    return hmac.new(key.encode(), raw.encode(), hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# Identity provider
# ---------------------------------------------------------------------------


class IdentityProvider:
    """Issues, validates, rotates, and revokes token pairs.

    The core never manages passwords; a subject proves itself through a
    WebAuthn ceremony (or a recovery code) and this class turns that proof
    into a pair of signed tokens.
    """

    def __init__(self, store: IdentityStore, settings: Settings | None = None, clock: Clock = utc_now) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._clock = clock

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue_token_pair(
        self,
        subject_id: str,
        *,
        actor: str | None = None,
        impersonation_id: str | None = None,
        expire_seconds: int | None = None,
    ) -> TokenPair:
        """Mint an access/refresh pair for an existing, active subject.

        Args:
            subject_id:       Subject the tokens are bound to (`sub`).
            actor:            Impersonating admin, embedded as `act.sub`.
            impersonation_id: Id of the impersonation this pair belongs to,
                              embedded as `act.sid`. A new one is generated
                              when an actor is given without it; refresh()
                              passes it along so revoking it ends every
                              rotated descendant too.
            expire_seconds:   Access-token lifetime override. Impersonation
                            passes its shorter lifetime here; the refresh
                            token is then capped to the same value so an
                            impersonated session cannot be stretched.
        """
        subject = self._store.get_subject(subject_id)
        if subject is None or not subject.is_active:
            raise SubjectNotFound()

        now = self._clock()
        access_ttl = expire_seconds or self._settings.access_token_expire_seconds
        refresh_ttl = expire_seconds or self._settings.refresh_token_expire_seconds
        session_id = uuid.uuid4().hex

        base = {"sub": subject.id, "role": subject.role, "sid": session_id, "iat": int(to_epoch(now))}
        if actor is not None:
            # Distinct from sid: rotating the pair revokes its sid, which must
            # not end the impersonation itself.
            impersonation_id = impersonation_id or uuid.uuid4().hex
            base["act"] = {"sub": actor, "sid": impersonation_id}
        else:
            impersonation_id = None

        access = jwt.encode(
            {**base, "typ": "access", "jti": uuid.uuid4().hex, "exp": now + timedelta(seconds=access_ttl)},
            self._settings.secret_key,
            algorithm=_ALGORITHM,
        )
        refresh = jwt.encode(
            {**base, "typ": "refresh", "jti": uuid.uuid4().hex, "exp": now + timedelta(seconds=refresh_ttl)},
            self._settings.secret_key,
            algorithm=_ALGORITHM,
        )
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            subject_id=subject.id,
            session_id=session_id,
            expires_in=access_ttl,
            actor=actor,
            impersonation_id=impersonation_id,
        )

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    def decode(self, token: str, *, token_type: str = "access", check_revoked: bool = True) -> dict | None:
        """Decode and verify a token. Returns the claims dict or None on any failure.

        Checks signature, expiry (against this provider's clock), the `typ`
        claim, and -- unless check_revoked=False -- that the pair's sid has
        not been revoked.
        """
        try:
            claims = jwt.decode(
                token,
                self._settings.secret_key,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTError:
            return None
        if claims.get("typ") != token_type or "sub" not in claims or "sid" not in claims:
            return None
        # Expiry is checked here rather than by jose so the injected clock
        # governs it.
        if not isinstance(claims.get("exp"), (int, float)) or claims["exp"] <= to_epoch(self._clock()):
            return None
        if check_revoked and self._is_revoked(claims):
            return None
        return claims

    def _is_revoked(self, claims: dict) -> bool:
        if self._store.is_session_revoked(claims["sid"]):
            return True
        act = claims.get("act")
        if isinstance(act, dict) and act.get("sid"):
            return self._store.is_session_revoked(act["sid"])
        return False

    # ------------------------------------------------------------------
    # Rotate / revoke
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str) -> TokenPair:
        """Rotate a pair: revoke the presented one and issue a fresh one.

        The revoke is the atomic step -- if two requests race with the same
        refresh token, only the one whose revoke inserted the row gets a new
        pair. The actor claim survives rotation so impersonation stays
        visible (and restorable) across refreshes.
        """
        claims = self.decode(refresh_token, token_type="refresh")
        if claims is None:
            raise TokenInvalid()
        if not self._store.revoke_session(claims["sid"], float(claims["exp"])):
            raise TokenInvalid()
        act = claims.get("act") or {}
        actor = act.get("sub")
        remaining = int(claims["exp"] - to_epoch(self._clock()))
        expire_seconds = max(1, remaining) if actor else None
        return self.issue_token_pair(
            claims["sub"],
            actor=actor,
            impersonation_id=act.get("sid"),
            expire_seconds=expire_seconds,
        )

    def revoke_session(self, session_id: str, expires_at: float | None = None) -> bool:
        """Revoke a token pair by sid. Idempotent; True if this call revoked it."""
        if expires_at is None:
            expires_at = to_epoch(self._clock()) + self._settings.refresh_token_expire_seconds
        revoked = self._store.revoke_session(session_id, expires_at)
        if revoked:
            logger.info("Revoked token pair sid=%s...", session_id[:8])
        return revoked

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def resolve_subject(self, subject_id: str) -> Subject | None:
        return self._store.get_subject(subject_id)


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the access token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation for most cases.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the access-token expiry so both expire together.
    """
    settings = get_settings()
    duration = expire_seconds if expire_seconds > 0 else settings.access_token_expire_seconds
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=duration,
    )
