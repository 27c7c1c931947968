"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for SessionGuard happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, rp_id -> RP_ID).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a signing key with a
      warning, production mode refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing and
       the HMAC used for recovery codes both rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random key would silently invalidate every
       issued token pair on restart.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
sessions/, or ratelimit/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("sessionguard.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'sessionguard.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL
    allowed_hosts: list[str] = Field(default_factory=lambda: ["localhost", "127.0.0.1", "*.localhost"])
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost", "http://localhost:8000"])

    # ------------------------------------------------------------------
    # WebAuthn relying party
    # ------------------------------------------------------------------

    rp_id: str = "localhost"
    rp_name: str = "SessionGuard"
    # JSON list in the environment: EXPECTED_ORIGINS='["https://app.example.com"]'
    expected_origins: list[str] = Field(default_factory=lambda: ["http://localhost:8000"])
    require_user_verification: bool = False
    challenge_ttl_seconds: int = 300
    ceremony_timeout_ms: int = 60000

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = 900
    refresh_token_expire_seconds: int = 7 * 24 * 3600
    impersonation_token_expire_seconds: int = 1800
    secure_cookies: bool = False
    admin_role: str = "admin"

    # ------------------------------------------------------------------
    # Session anomaly policy
    # ------------------------------------------------------------------

    session_stale_days: int = 30
    simultaneous_session_threshold: int = 5
    # More distinct addresses than this across active sessions is flagged as
    # impossible travel.
    impossible_travel_threshold: int = 2
    device_trust_days: int = 30

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    rate_limit_max_requests: int = 10
    rate_limit_window_seconds: int = 15 * 60
    # slowapi flood guard on the public ceremony-start routes
    ceremony_start_rate_limit: str = "60/minute"

    # ------------------------------------------------------------------
    # Housekeeping, alerts, MFA
    # ------------------------------------------------------------------

    reaper_interval_seconds: int = 300
    alert_webhook_url: str = ""
    totp_issuer: str = "SessionGuard"
    recovery_code_count: int = 8

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Token pairs will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_windows(self) -> "Settings":
        """Reject non-positive windows and quotas; they would disable the guards silently."""
        for name in (
            "challenge_ttl_seconds",
            "access_token_expire_seconds",
            "refresh_token_expire_seconds",
            "impersonation_token_expire_seconds",
            "rate_limit_max_requests",
            "rate_limit_window_seconds",
            "reaper_interval_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name.upper()} must be a positive integer.")
        if not self.expected_origins:
            raise ValueError("EXPECTED_ORIGINS must list at least one origin.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings()
    directly; services accept an explicit Settings so tests can pass overrides.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
