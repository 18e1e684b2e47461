"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Gatehouse happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, refresh_secret_key -> REFRESH_SECRET_KEY).

  @model_validator(mode="after"): cross-field validation once all fields are
      resolved. Dev mode generates missing signing keys with a warning;
      production mode refuses to start without them.

Security notes:
  [K1] Both signing keys must be at least 32 characters. HS256 strength is
       bounded by key entropy.

  [K2] The access-token key and the refresh-token key must differ. A leaked
       access token must never verify as a refresh token.

  [K3] secure_cookies defaults to "production" (not debug) when unset, so a
       production deployment never emits token cookies over plain HTTP.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("gatehouse.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'gatehouse.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (with DEBUG=true).
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
    # Empty string is the sentinel for "not configured".
    secret_key: str = ""
    refresh_secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Tokens and hashing
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = Field(default=15 * 60, gt=0)
    refresh_token_expire_seconds: int = Field(default=7 * 24 * 3600, gt=0)
    bcrypt_rounds: int = Field(default=10, ge=4, le=16)

    # ------------------------------------------------------------------
    # Sessions and cookies
    # ------------------------------------------------------------------

    # "token": stateless access/refresh cookies or Bearer header only.
    # "hybrid": also keep a signed server-side session with the user id.
    session_strategy: Literal["token", "hybrid"] = "token"
    secure_cookies: Optional[bool] = None
    access_cookie_name: str = "access_token"
    refresh_cookie_name: str = "refresh_token"
    refresh_path: str = "/api/v1/auth/refresh-token"
    login_path: str = "/auth/login"
    post_login_path: str = "/profile"

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    github_client_id: str = ""
    github_client_secret: str = ""

    # ------------------------------------------------------------------
    # HTTP middleware
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_signing_keys(self) -> "Settings":
        """Enforce the signing key policy [K1] [K2].

        Dev mode (DEBUG=true): auto-generate each missing key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if either key is missing.
        """
        for field in ("secret_key", "refresh_secret_key"):
            if getattr(self, field):
                continue
            if not self.debug:
                raise ValueError(
                    f"{field.upper()} is required in production mode. "
                    "Set it in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
            setattr(self, field, secrets.token_hex(32))
            logger.warning("Using auto-generated %s. Sessions will not persist across restarts.", field.upper())

        if len(self.secret_key) < 32 or len(self.refresh_secret_key) < 32:
            raise ValueError("SECRET_KEY and REFRESH_SECRET_KEY must be at least 32 characters.")
        if self.secret_key == self.refresh_secret_key:
            raise ValueError("SECRET_KEY and REFRESH_SECRET_KEY must differ.")
        return self

    @property
    def cookies_secure(self) -> bool:
        """Whether token cookies carry the Secure attribute [K3]."""
        if self.secure_cookies is None:
            return not self.debug
        return self.secure_cookies

    @property
    def google_enabled(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)

    @property
    def github_enabled(self) -> bool:
        return bool(self.github_client_id and self.github_client_secret)


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    All modules should call get_settings() rather than constructing Settings()
    directly. In tests: call get_settings.cache_clear() between test cases if
    you need to inject different environment variables.
    """
    return Settings()
