"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for VaultPass happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, max_login_attempts -> MAX_LOGIN_ATTEMPTS).

  @model_validator(mode="after"): cross-field validation once every field is
      resolved. Dev mode generates missing signing keys with a warning,
      production mode refuses to start without them.

Security notes:
  Two signing keys: access tokens and refresh tokens are signed with distinct
  secrets so a leaked access key cannot mint refresh tokens. Both must be at
  least 32 characters and they must differ.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
audit/, sessions/, risk/, or cache/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("vaultpass.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'vaultpass.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (DEBUG=true is still required
    there, so the signing keys can be generated).
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
    # Empty string is the sentinel for "not configured". The validator below
    # either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    refresh_secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Credentials and lockout
    # ------------------------------------------------------------------

    bcrypt_rounds: int = Field(default=12, ge=4, le=31)
    max_login_attempts: int = Field(default=5, ge=1)
    lockout_minutes: int = Field(default=30, ge=1)

    # ------------------------------------------------------------------
    # Tokens and sessions
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = 15 * 60
    refresh_token_expire_seconds: int = 7 * 24 * 60 * 60
    session_ttl_seconds: int = 7 * 24 * 60 * 60
    email_verification_ttl_hours: int = 24
    password_reset_ttl_minutes: int = 60

    # ------------------------------------------------------------------
    # Two-factor authentication
    # ------------------------------------------------------------------

    totp_issuer: str = "VaultPass"
    # +/- time steps accepted around "now" (30s each).
    totp_valid_window: int = Field(default=2, ge=0, le=10)
    backup_code_count: int = Field(default=10, ge=1, le=50)

    # ------------------------------------------------------------------
    # Risk scoring
    # ------------------------------------------------------------------

    login_risk_threshold: int = 50
    password_change_risk_threshold: int = 40

    # ------------------------------------------------------------------
    # Geolocation (optional -- empty URL means no network lookups)
    # ------------------------------------------------------------------

    # URL template containing "{ip}", e.g. "https://ipapi.co/{ip}/json/"
    geo_lookup_url: str = ""
    geo_timeout_seconds: float = 3.0
    geo_cache_ttl_seconds: int = 24 * 60 * 60

    # ------------------------------------------------------------------
    # Outbound email (optional -- empty host means log-only delivery)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    smtp_from: str = ""
    smtp_timeout_seconds: float = 5.0
    app_base_url: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    background_workers: int = Field(default=4, ge=1)

    # ------------------------------------------------------------------
    # HTTP adapter
    # ------------------------------------------------------------------

    login_rate_limit: str = "5/minute"
    api_rate_limit: str = "100/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_signing_keys(self) -> "Settings":
        """Enforce the signing-key policy.

        Dev mode (DEBUG=true): auto-generate missing keys with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if either key is missing.

        Both modes: reject keys shorter than 32 characters, and reject
            configurations where the access and refresh keys are identical.
        """
        for name in ("secret_key", "refresh_secret_key"):
            if not getattr(self, name):
                if self.debug:
                    setattr(self, name, secrets.token_hex(32))
                    logger.warning(
                        "WARNING: Using auto-generated %s. Tokens will not persist across restarts.", name.upper()
                    )
                else:
                    raise ValueError(
                        f"{name.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
            if len(getattr(self, name)) < 32:
                raise ValueError(f"{name.upper()} must be at least 32 characters.")
        if self.secret_key == self.refresh_secret_key:
            raise ValueError("SECRET_KEY and REFRESH_SECRET_KEY must differ.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
