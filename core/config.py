"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for SessionKeeper happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. access_token_expire_seconds -> ACCESS_TOKEN_EXPIRE_SECONDS).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Used for the DEBUG-conditional SECRET_KEY logic and for
      rejecting non-positive durations and counts.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. HS256 access
       token signing relies on key entropy -- a short key weakens it.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random key would invalidate every issued access
       token on restart.

  Fail-open switches (LOCKOUT_FAIL_OPEN, BLACKLIST_FAIL_OPEN) default to False.
       An unavailable guard rejects the request unless an operator opts out.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("sessionkeeper.config")

DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'sessionkeeper.db'}"

# Fields that must be strictly positive. Checked in validate_limits().
_POSITIVE_FIELDS = (
    "access_token_expire_seconds",
    "refresh_token_expire_seconds",
    "max_refresh_tokens_per_user",
    "lockout_threshold",
    "lockout_duration_seconds",
    "lockout_window_seconds",
    "revoked_token_retention_days",
    "refresh_sweep_interval_seconds",
    "revoked_sweep_interval_seconds",
    "blacklist_sweep_interval_seconds",
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model validators enforce
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
    database_url: str = DEFAULT_DB_URL
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    token_issuer: str = "sessionkeeper"
    access_token_expire_seconds: int = 900  # 15 minutes
    clock_skew_seconds: int = 0

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    refresh_token_expire_seconds: int = 7 * 24 * 3600
    max_refresh_tokens_per_user: int = 5
    revoked_token_retention_days: int = 30

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    lockout_threshold: int = 5
    lockout_duration_seconds: int = 30 * 60
    lockout_window_seconds: int = 15 * 60
    lockout_fail_open: bool = False
    blacklist_fail_open: bool = False

    # ------------------------------------------------------------------
    # Maintenance schedule
    # ------------------------------------------------------------------

    refresh_sweep_interval_seconds: int = 3600  # hourly
    revoked_sweep_interval_seconds: int = 86400  # daily
    blacklist_sweep_interval_seconds: int = 300

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    self_registration_enabled: bool = True
    # JSON arrays in the environment, e.g. ALLOWED_HOSTS='["auth.example.com"]'
    allowed_hosts: list[str] = ["*"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Access tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Access tokens will not survive restarts.")
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
    def validate_limits(self) -> "Settings":
        """Reject zero or negative TTLs, caps, thresholds and intervals."""
        bad = [name for name in _POSITIVE_FIELDS if getattr(self, name) <= 0]
        if bad:
            raise ValueError(f"Settings must be positive: {', '.join(bad)}")
        if self.clock_skew_seconds < 0:
            raise ValueError("CLOCK_SKEW_SECONDS must not be negative.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
