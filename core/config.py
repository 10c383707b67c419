"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for hitime happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Complex fields (lists, client records)
      are parsed from JSON strings.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a signing key with a
      warning, production mode refuses to start without one.

Security notes:
  SECRET_KEY and every PREVIOUS_SECRET_KEYS entry shorter than 32 chars are
  rejected outright. HMAC signing relies on key entropy.

  Key material is never logged. The warning below only says that a key was
  generated, never which one.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/ or events/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("hitime.config")

_DATA_DIR = Path(__file__).resolve().parent.parent

_ALLOWED_ALGORITHMS = ("HS256", "HS384", "HS512")


class ClientConfig(BaseModel):
    """One registered OAuth client, as read from OAUTH_CLIENTS."""

    client_id: str
    client_name: str = ""
    redirect_uris: list[str] = Field(default_factory=list)
    allowed_scopes: list[str] = Field(default_factory=list)


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
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
    # Grace-period keys: tokens signed with these still verify until they
    # expire. Newest first. JSON list in the environment.
    previous_secret_keys: list[str] = Field(default_factory=list)
    jwt_algorithm: str = "HS256"
    key_grace_seconds: int = 3600

    # ------------------------------------------------------------------
    # Token lifetimes
    # ------------------------------------------------------------------

    access_token_ttl_seconds: int = 3600
    refresh_token_ttl_seconds: int = 30 * 24 * 3600
    auth_code_ttl_seconds: int = 120
    clock_skew_seconds: int = 30

    # ------------------------------------------------------------------
    # Scopes and clients
    # ------------------------------------------------------------------

    default_user_scopes: list[str] = Field(default_factory=lambda: ["profile", "events:read", "events:write"])
    oauth_clients: list[ClientConfig] = Field(default_factory=list)

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    auth_db_url: str = f"sqlite:///{_DATA_DIR / 'hitime_auth.db'}"
    events_db_url: str = f"sqlite:///{_DATA_DIR / 'hitime_events.db'}"

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    allowed_hosts: list[str] = Field(default_factory=lambda: ["localhost", "127.0.0.1", "*.localhost"])
    cors_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]
    )
    purge_interval_seconds: int = 15 * 60

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("jwt_algorithm")
    @classmethod
    def validate_algorithm(cls, value: str) -> str:
        """Only symmetric HMAC algorithms are supported by the key ring."""
        value = value.upper()
        if value not in _ALLOWED_ALGORITHMS:
            raise ValueError(f"JWT_ALGORITHM must be one of {', '.join(_ALLOWED_ALGORITHMS)}")
        return value

    @field_validator("auth_code_ttl_seconds")
    @classmethod
    def validate_code_ttl(cls, value: int) -> int:
        if not 60 <= value <= 300:
            raise ValueError("AUTH_CODE_TTL_SECONDS must be between 60 and 300.")
        return value

    @field_validator("access_token_ttl_seconds", "refresh_token_ttl_seconds", "key_grace_seconds")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Lifetimes must be positive.")
        return value

    @field_validator("clock_skew_seconds")
    @classmethod
    def validate_skew(cls, value: int) -> int:
        if not 0 <= value <= 300:
            raise ValueError("CLOCK_SKEW_SECONDS must be between 0 and 300.")
        return value

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters, including the
            grace-period keys.
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
        if any(len(k) < 32 for k in self.previous_secret_keys):
            raise ValueError("PREVIOUS_SECRET_KEYS entries must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
