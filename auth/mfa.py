"""
auth/mfa.py -- Time-based one-time codes and recovery codes.

TOTP follows RFC 6238 over RFC 4226 HOTP (HMAC-SHA1, 30 s step, 6 digits),
the parameters every authenticator app accepts. Codes are compared with
hmac.compare_digest; one step of clock drift is tolerated either side.

Enrollment is two-phase: begin_enrollment() stores a *pending* secret and
returns the provisioning URI; confirm_enrollment() enables it only after the
subject proves the app produces valid codes, and hands back a fresh set of
recovery codes. Recovery codes are shown exactly once and stored only as
HMAC digests (auth.tokens.hash_secret).
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
import string
import struct
from collections.abc import Callable
from datetime import datetime
from urllib.parse import quote, urlencode

from auth.store import IdentityStore
from auth.tokens import hash_secret
from core.clock import Clock, to_epoch, utc_now
from core.config import Settings, get_settings
from core.errors import CodeInvalid, MfaNotEnrolled, storage_errors

logger = logging.getLogger("sessionguard.mfa")

TOTP_STEP = 30
TOTP_DIGITS = 6

_RECOVERY_ALPHABET = string.digits + string.ascii_uppercase

# Receives (subject_id, alert_type, metadata). Wired to AlertService.raise_alert
# by the app; auth/ does not import sessions/.
AlertSink = Callable[[str, str, dict], object]


# ---------------------------------------------------------------------------
# TOTP primitives
# ---------------------------------------------------------------------------


def generate_totp_secret() -> str:
    """160-bit random secret, base32 without padding."""
    return base64.b32encode(secrets.token_bytes(20)).decode("ascii").rstrip("=")


def _decode_secret(secret: str) -> bytes:
    cleaned = secret.strip().replace(" ", "").upper()
    return base64.b32decode(cleaned + "=" * (-len(cleaned) % 8))


def _hotp(key: bytes, counter: int, digits: int) -> str:
    digest = hmac.new(key, struct.pack(">Q", counter), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    value = struct.unpack(">I", digest[offset : offset + 4])[0] & 0x7FFFFFFF
    return str(value % 10**digits).zfill(digits)


def totp_code(secret: str, at: datetime, step: int = TOTP_STEP, digits: int = TOTP_DIGITS) -> str:
    return _hotp(_decode_secret(secret), int(to_epoch(at)) // step, digits)


def verify_totp(secret: str, code: str, at: datetime, window: int = 1) -> bool:
    """Constant-time check of `code` against the steps around `at`."""
    candidate = (code or "").strip().replace(" ", "")
    if len(candidate) != TOTP_DIGITS or not candidate.isdigit():
        return False
    key = _decode_secret(secret)
    counter = int(to_epoch(at)) // TOTP_STEP
    matched = False
    for drift in range(-window, window + 1):
        # No early exit: every step in the window is compared.
        matched |= hmac.compare_digest(_hotp(key, counter + drift, TOTP_DIGITS), candidate)
    return matched


def provisioning_uri(secret: str, account: str, issuer: str) -> str:
    """otpauth:// URI understood by authenticator apps (rendered as a QR code by the UI)."""
    label = quote(f"{issuer}:{account}")
    params = urlencode(
        {"secret": secret, "issuer": issuer, "algorithm": "SHA1", "digits": TOTP_DIGITS, "period": TOTP_STEP}
    )
    return f"otpauth://totp/{label}?{params}"


# ---------------------------------------------------------------------------
# Recovery codes
# ---------------------------------------------------------------------------


def generate_recovery_code() -> str:
    """XXXX-XXXX-XXXX over [0-9A-Z]."""
    chars = "".join(secrets.choice(_RECOVERY_ALPHABET) for _ in range(12))
    return f"{chars[:4]}-{chars[4:8]}-{chars[8:]}"


def normalize_recovery_code(code: str) -> str:
    cleaned = "".join(ch for ch in (code or "").upper() if ch in _RECOVERY_ALPHABET)
    if len(cleaned) != 12:
        return ""
    return f"{cleaned[:4]}-{cleaned[4:8]}-{cleaned[8:]}"


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class MfaService:
    def __init__(
        self,
        store: IdentityStore,
        settings: Settings | None = None,
        clock: Clock = utc_now,
        alert_sink: AlertSink | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._clock = clock
        self._alert_sink = alert_sink

    def begin_enrollment(self, subject_id: str) -> tuple[str, str]:
        """Store a pending secret. Returns (secret, provisioning_uri)."""
        secret = generate_totp_secret()
        with storage_errors("mfa.begin_enrollment"):
            subject = self._store.get_subject(subject_id)
            account = subject.email if subject else subject_id
            self._store.save_mfa_secret(subject_id, secret)
        return secret, provisioning_uri(secret, account, self._settings.totp_issuer)

    def confirm_enrollment(self, subject_id: str, code: str) -> list[str]:
        """Enable MFA once the first code checks out. Returns new recovery codes."""
        with storage_errors("mfa.confirm_enrollment"):
            record = self._store.get_mfa_secret(subject_id)
            if record is None:
                raise MfaNotEnrolled()
            if not verify_totp(record[0], code, self._clock()):
                raise CodeInvalid()
            self._store.enable_mfa(subject_id)
        logger.info("TOTP enabled subject=%s...", subject_id[:8])
        return self.regenerate_recovery_codes(subject_id)

    def is_enabled(self, subject_id: str) -> bool:
        with storage_errors("mfa.is_enabled"):
            record = self._store.get_mfa_secret(subject_id)
        return record is not None and record[1]

    def verify(self, subject_id: str, code: str) -> bool:
        with storage_errors("mfa.verify"):
            record = self._store.get_mfa_secret(subject_id)
        if record is None or not record[1]:
            raise MfaNotEnrolled()
        return verify_totp(record[0], code, self._clock())

    def disable(self, subject_id: str, code: str) -> None:
        """Turn TOTP off and drop the recovery codes. Requires a current code."""
        if not self.verify(subject_id, code):
            raise CodeInvalid()
        with storage_errors("mfa.disable"):
            self._store.delete_mfa(subject_id)
        logger.info("TOTP disabled subject=%s...", subject_id[:8])

    def regenerate_recovery_codes(self, subject_id: str) -> list[str]:
        codes = [generate_recovery_code() for _ in range(self._settings.recovery_code_count)]
        hashes = [hash_secret(c, self._settings.secret_key) for c in codes]
        with storage_errors("mfa.regenerate_recovery_codes"):
            self._store.replace_recovery_codes(subject_id, hashes)
        return codes

    def remaining_recovery_codes(self, subject_id: str) -> int:
        with storage_errors("mfa.remaining_recovery_codes"):
            return self._store.count_recovery_codes(subject_id)

    def use_recovery_code(self, subject_id: str, code: str) -> bool:
        """Consume a recovery code. True once per code; raises a recovery_code_used alert."""
        normalized = normalize_recovery_code(code)
        if not normalized:
            return False
        with storage_errors("mfa.use_recovery_code"):
            consumed = self._store.consume_recovery_code(
                subject_id, hash_secret(normalized, self._settings.secret_key)
            )
            remaining = self._store.count_recovery_codes(subject_id) if consumed else None
        if not consumed:
            return False
        logger.warning("Recovery code used subject=%s... remaining=%d", subject_id[:8], remaining)
        if self._alert_sink is not None:
            self._alert_sink(subject_id, "recovery_code_used", {"remaining_codes": remaining})
        return True
