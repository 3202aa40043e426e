"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for AccessGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, ip_burst -> IP_BURST).

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. The signing key check is the one fatal startup condition of
      the gate: a missing or short SECRET_KEY makes Settings() raise, so the
      process refuses to start instead of signing tokens with a weak key.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_SECRET_KEY_LENGTH = 32

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'accessgate.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    Every field except secret_key has a default. There is deliberately no
    development fallback for the key: tests and local runs export SECRET_KEY
    like production does.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured"; the validator rejects it.
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Tokens and second factor
    # ------------------------------------------------------------------

    token_expire_seconds: int = 24 * 60 * 60
    totp_issuer: str = "AccessGate"

    # ------------------------------------------------------------------
    # Rate limiting (token buckets)
    # ------------------------------------------------------------------

    ip_rate_per_second: float = 5.0
    ip_burst: int = 10
    identity_rate_per_second: float = 10.0
    identity_burst: int = 15
    identity_rate_limit_enabled: bool = True
    # 0 keeps every bucket for the process lifetime (no eviction).
    rate_limit_idle_seconds: int = 0
    rate_limit_sweep_interval_seconds: int = 300

    # slowapi limit applied to POST /auth/login only.
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["*"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Refuse to build settings without a usable signing key.

        HS256 signatures are only as strong as the key, so both a missing key
        and one shorter than MIN_SECRET_KEY_LENGTH characters are rejected.
        """
        if not self.secret_key:
            raise ValueError(
                "SECRET_KEY is required. " "Set SECRET_KEY in your environment or .env file before starting AccessGate."
            )
        if len(self.secret_key) < MIN_SECRET_KEY_LENGTH:
            raise ValueError(f"SECRET_KEY must be at least {MIN_SECRET_KEY_LENGTH} characters.")
        return self

    @model_validator(mode="after")
    def validate_rate_limits(self) -> "Settings":
        """A bucket needs a positive refill rate and room for at least one token."""
        for scope in ("ip", "identity"):
            rate = getattr(self, f"{scope}_rate_per_second")
            burst = getattr(self, f"{scope}_burst")
            if rate <= 0:
                raise ValueError(f"{scope.upper()}_RATE_PER_SECOND must be greater than 0.")
            if burst < 1:
                raise ValueError(f"{scope.upper()}_BURST must be at least 1.")
        if self.token_expire_seconds <= 0:
            raise ValueError("TOKEN_EXPIRE_SECONDS must be greater than 0.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
