"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Scriptoria happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a key with a warning,
      production mode refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Bearer token
       digests are HMAC-SHA256 keyed with it -- a short key weakens them.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random key would silently invalidate every
       issued token on restart.

  [L2] Login lockout knobs are floored (max attempts >= 3, lock >= 1 minute)
       so a typo in the environment cannot disable brute-force protection.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
audit/, catalog/, or documents/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("scriptoria.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'scriptoria.db'}"


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

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    # Floors (60s / 300s) are applied by TokenLedger, not here, so a ledger
    # built directly in a test gets the same protection.
    access_token_ttl_seconds: int = 900
    refresh_token_ttl_seconds: int = 7 * 24 * 60 * 60

    # ------------------------------------------------------------------
    # Login guard
    # ------------------------------------------------------------------

    login_max_attempts: int = 5
    login_lock_minutes: int = 5
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Registration and bootstrap admin
    # ------------------------------------------------------------------

    self_registration_enabled: bool = True
    default_role: str = "staff"
    admin_username: str = "admin"
    # Empty means "do not seed". Seeding only creates the account when the
    # handle does not exist yet; it never resets an existing password.
    admin_password: str = ""

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:5173", "http://127.0.0.1"]
    document_max_bytes: int = 5 * 1024 * 1024

    # ------------------------------------------------------------------
    # Overwrite-risk policy (see documents/engine.py)
    # ------------------------------------------------------------------

    risk_min_existing_words: int = 200
    risk_chapter_drop: int = 3
    risk_loss_ratio: float = 0.2
    risk_loss_floor_words: int = 40
    risk_placeholder_title: str = "Chapter 1"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("login_max_attempts")
    @classmethod
    def floor_max_attempts(cls, value: int) -> int:
        return max(3, value)  # [L2]

    @field_validator("login_lock_minutes")
    @classmethod
    def floor_lock_minutes(cls, value: int) -> int:
        return max(1, value)  # [L2]

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Issued tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. " "Tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
