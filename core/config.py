"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Bookshelf happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, rp_origin -> RP_ORIGIN).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Missing or weak security settings stop the process here,
      before the app object is built.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars, or with fewer than 10 distinct
       characters, is rejected outright. JWT signing relies on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY or
       CORS_ORIGIN is a hard startup failure.

  [W1] RP_ID and RP_ORIGIN are required in every mode. WebAuthn credentials are
       scoped to the RP id; a wrong value makes every passkey unusable, so
       there is no fallback. The origin host must be the RP id or a subdomain.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or cache/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from urllib.parse import urlsplit

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("bookshelf.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'bookshelf_auth.db'}"

_MIN_SECRET_LENGTH = 32
_MIN_SECRET_DISTINCT_CHARS = 10


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    Security-relevant fields default to the empty string, which is the sentinel
    for "not configured". The model_validator below either fills a safe dev
    value (DEBUG only) or raises, so callers never see "".
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
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # WebAuthn relying party
    # ------------------------------------------------------------------

    rp_id: str = ""
    rp_name: str = "Bookshelf"
    rp_origin: str = ""
    webauthn_timeout_ms: int = 60000

    # Base URL of the browser app; invitation and setup links point here.
    app_url: str = ""

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    cors_origin: str = ""
    allowed_hosts: list[str] = Field(default_factory=list)
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Sessions and tokens
    # ------------------------------------------------------------------

    # 30 days. Long-lived by design of the browser client; shorten freely.
    token_expire_seconds: int = 30 * 24 * 60 * 60
    invitation_ttl_seconds: int = 7 * 24 * 60 * 60
    setup_token_ttl_seconds: int = 30 * 60
    token_retention_days: int = 30
    token_cleanup_interval_seconds: int = 6 * 60 * 60

    # ------------------------------------------------------------------
    # Challenges
    # ------------------------------------------------------------------

    challenge_cache_url: str = "memory://"
    challenge_ttl_seconds: int = 300
    challenge_sweep_interval_seconds: int = 60

    # ------------------------------------------------------------------
    # Recovery codes
    # ------------------------------------------------------------------

    recovery_code_rounds: int = Field(default=10, ge=4, le=15)

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M6] [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: refuse to start without a key.

        Both modes: reject short keys and keys with too little variety
            ("aaaa...", "12121212...") that pass a length check.
        """
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
        if len(self.secret_key) < _MIN_SECRET_LENGTH:
            raise ValueError(f"SECRET_KEY must be at least {_MIN_SECRET_LENGTH} characters.")
        if len(set(self.secret_key)) < _MIN_SECRET_DISTINCT_CHARS:
            raise ValueError("SECRET_KEY has too little entropy. Generate one with `openssl rand -hex 32`.")
        return self

    @model_validator(mode="after")
    def validate_relying_party(self) -> "Settings":
        """Require an explicit RP id and a matching origin [W1]."""
        if not self.rp_id:
            raise ValueError("RP_ID is required (the bare domain passkeys are bound to, e.g. books.example.com).")
        if not self.rp_origin:
            raise ValueError("RP_ORIGIN is required (the exact origin the app is served from).")

        self.rp_origin = self.rp_origin.rstrip("/")
        parts = urlsplit(self.rp_origin)
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise ValueError(f"RP_ORIGIN must be an http(s) origin, got {self.rp_origin!r}.")
        if parts.path or parts.query or parts.fragment:
            raise ValueError("RP_ORIGIN must not contain a path, query, or fragment.")
        host = parts.hostname
        if host != self.rp_id and not host.endswith("." + self.rp_id):
            raise ValueError(f"RP_ORIGIN host {host!r} does not match RP_ID {self.rp_id!r}.")
        if parts.scheme != "https" and host != "localhost" and not self.debug:
            raise ValueError("RP_ORIGIN must use https outside of localhost.")

        if not self.app_url:
            self.app_url = self.rp_origin
        self.app_url = self.app_url.rstrip("/")
        if not self.allowed_hosts:
            self.allowed_hosts = [self.rp_id]
        return self

    @model_validator(mode="after")
    def validate_cors_origin(self) -> "Settings":
        """CORS_ORIGIN is mandatory in production; dev mode reuses RP_ORIGIN."""
        if not self.cors_origin:
            if self.debug:
                self.cors_origin = self.rp_origin
                logger.warning("WARNING: CORS_ORIGIN not set, allowing %s only.", self.rp_origin)
            else:
                raise ValueError("CORS_ORIGIN is required in production mode.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    All modules should call get_settings() rather than constructing Settings()
    directly. In tests: call get_settings.cache_clear() between test cases if
    you need to inject different environment variables.
    """
    return Settings()
