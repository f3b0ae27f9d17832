"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for csrfguard happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. csrf_byte_length -> CSRF_BYTE_LENGTH). Type coercion and validation
      are built in; CSRF_MODE and CSRF_TRANSPORT are parsed straight into the
      domain enums.

  @model_validator(mode="after"): Cross-field checks that must stop the process
      before it serves a single request. A CSRF policy that is too weak (short
      tokens, SameSite=None on the double-submit cookie) is InvalidConfiguration,
      and InvalidConfiguration is fatal.

Security notes:
  SECRET_KEY signs the session cookie that carries the session id. Dev mode
  (DEBUG=true) auto-generates one with a warning; production refuses to start
  without one. Keys shorter than 32 chars are rejected.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
or csrf/.
"""

import logging
import secrets
from datetime import timedelta
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.errors import InvalidConfiguration
from core.models import MIN_BYTE_LENGTH, Mode, Policy, Transport

logger = logging.getLogger("csrfguard.config")

_SAMESITE_VALUES = ("lax", "strict")


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
    # Set true in production (HTTPS). Applies to the session and CSRF cookies.
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # CSRF policy
    # ------------------------------------------------------------------

    csrf_byte_length: int = 32
    # 0 disables time-based expiry.
    csrf_ttl_seconds: int = 3600
    csrf_mode: Mode = Mode.MULTI_USE
    csrf_transport: Transport = Transport.FIELD
    csrf_cookie_samesite: str = "lax"
    # Path prefixes CSRF never touches: no token issued, no validation.
    csrf_exempt_paths: list[str] = ["/api/v1/health"]

    # ------------------------------------------------------------------
    # Token store
    # ------------------------------------------------------------------

    # Empty string selects the in-memory store (single process only).
    # Anything else is a SQLAlchemy URL, e.g. postgresql://user:pw@host/db.
    csrf_store_url: str = ""
    csrf_sweep_interval_seconds: int = 600

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Dev mode generates a throwaway key; production requires a real one."""
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts."
                )
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
    def validate_csrf_policy(self) -> "Settings":
        """Reject weak or ambiguous CSRF settings before the app is built."""
        if self.csrf_byte_length < MIN_BYTE_LENGTH:
            raise InvalidConfiguration(f"CSRF_BYTE_LENGTH must be at least {MIN_BYTE_LENGTH}.")
        if self.csrf_ttl_seconds < 0:
            raise InvalidConfiguration("CSRF_TTL_SECONDS must be >= 0 (0 disables expiry).")
        if self.csrf_sweep_interval_seconds <= 0:
            raise InvalidConfiguration("CSRF_SWEEP_INTERVAL_SECONDS must be positive.")
        samesite = self.csrf_cookie_samesite.lower()
        if samesite not in _SAMESITE_VALUES:
            raise InvalidConfiguration("CSRF_COOKIE_SAMESITE must be 'lax' or 'strict'.")
        self.csrf_cookie_samesite = samesite
        if self.csrf_transport is Transport.DOUBLE_SUBMIT_COOKIE and not self.secure_cookies:
            logger.warning("Double-submit cookie issued without Secure -- acceptable for local HTTP only.")
        return self

    def policy(self) -> Policy:
        """Build the immutable Policy this deployment runs with."""
        ttl = timedelta(seconds=self.csrf_ttl_seconds) if self.csrf_ttl_seconds > 0 else None
        return Policy(
            byte_length=self.csrf_byte_length,
            ttl=ttl,
            mode=self.csrf_mode,
            transport=self.csrf_transport,
        )


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
