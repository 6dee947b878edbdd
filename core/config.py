"""
core/config.py -- Settings for admin-auth, read from the environment via pydantic-settings.

This is the only module that looks at environment variables. Everything else
calls get_settings() and reads typed attributes.

How it is wired:
  get_settings() is wrapped in lru_cache, so the first call builds Settings
      and every later call (routes, stores, the CLI) shares that instance.
      Tests set env vars before the first import and never see a rebuild.

  Settings extends pydantic_settings.BaseSettings: a field named
      lock_duration_seconds is filled from LOCK_DURATION_SECONDS (or .env),
      coerced to int and range-checked by its Field constraints.

  The after-validator owns the SECRET_KEY policy, because it depends on two
      fields at once (debug and secret_key).

Security notes:
  [M6] One key signs bearer tokens, signs anti-forgery tokens and keys the
       session token hash. Production refuses keys under 64 characters;
       dev mode accepts 32.

  [M7] Without SECRET_KEY, production mode refuses to start. Dev mode makes
       up a random key, which logs every session out on restart.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or client/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("adminauth.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'adminauth.db'}"

_MIN_KEY_LENGTH_PRODUCTION = 64
_MIN_KEY_LENGTH_DEBUG = 32


class Settings(BaseSettings):
    """Every tunable of the auth service. Defaults are the production values."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # "" means unset; validate_secret_key replaces or rejects it.
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Credentials and lockout
    # ------------------------------------------------------------------

    # 12 keeps a single verify in the tens-of-milliseconds range on current
    # hardware. Tests lower this through BCRYPT_ROUNDS.
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)
    max_login_attempts: int = Field(default=5, ge=1)
    lock_duration_seconds: int = Field(default=3600, ge=1)

    # ------------------------------------------------------------------
    # Tokens and sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    token_expire_seconds: int = Field(default=3600, ge=1)
    # Upper bound stored on the session row. The session check is the
    # authoritative revocation gate; token exp is only a ceiling.
    session_expire_seconds: int = Field(default=3600, ge=1)
    session_purge_interval_seconds: int = Field(default=6 * 60 * 60, ge=60)

    # ------------------------------------------------------------------
    # Anti-forgery
    # ------------------------------------------------------------------

    csrf_rotation_seconds: int = Field(default=30 * 60, ge=1)
    csrf_cookie_name: str = "csrf_secret"
    csrf_header_name: str = "X-CSRF-Token"
    csrf_cookie_max_age: int = Field(default=2 * 60 * 60, ge=1)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Apply the SECRET_KEY policy [M6][M7].

        Unset + DEBUG=true   -> random 64-hex-char key, warning logged.
        Unset + production   -> ValueError, the process does not start.
        Set, but too short   -> ValueError in either mode.
        """
        if not self.secret_key:
            if not self.debug:
                raise ValueError(
                    "SECRET_KEY must be set when DEBUG is off. "
                    "Export SECRET_KEY (64+ characters) or add it to .env; "
                    "use DEBUG=true for a throwaway development key."
                )
            self.secret_key = secrets.token_hex(32)
            logger.warning("SECRET_KEY not set; generated a temporary key. Issued tokens die with this process.")
        min_length = _MIN_KEY_LENGTH_DEBUG if self.debug else _MIN_KEY_LENGTH_PRODUCTION
        if len(self.secret_key) < min_length:
            raise ValueError(f"SECRET_KEY must be at least {min_length} characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings, building it on first use.

    Tests that need different values set the environment first, then call
    get_settings.cache_clear().
    """
    return Settings()
