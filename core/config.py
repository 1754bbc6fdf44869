"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the trip planner backend happen here. No
module should call os.getenv() or os.environ.get() directly -- import
get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. access_token_ttl_seconds -> ACCESS_TOKEN_TTL_SECONDS).

  @model_validator(mode="after"): Cross-field validation once every field is
      resolved. Token lifetimes are checked together so a misconfigured
      deployment cannot mint sessions whose access token outlives the refresh
      token.

Token lifetimes live here and nowhere else. Every issuance and rotation path
reads the same two values, so there is exactly one access TTL and one refresh
TTL per process.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("tripplanner.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'tripplanner.db'}"


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
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    cookie_samesite: str = "lax"  # "lax" or "strict"
    access_token_ttl_seconds: int = 3600  # 1 hour
    refresh_token_ttl_seconds: int = 7 * 24 * 3600  # 1 week
    # 0 disables the background purge of fully expired sessions.
    session_purge_interval_seconds: int = 3600

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    github_client_id: str = ""
    github_client_secret: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""

    # Outbound provider calls (code exchange, profile fetch) time out after this.
    oauth_http_timeout: float = 10.0

    # Post-OAuth redirects land on the frontend, not on this API.
    frontend_url: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    cors_origins: list[str] = ["http://localhost:3000"]
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_session_policy(self) -> "Settings":
        """Reject token lifetimes and hashing costs that break session invariants.

        access < refresh: a refresh token that dies before its access token
            could never be used to mint a replacement.

        bcrypt rounds: bcrypt accepts log2 costs between 4 and 31. Values
            below 10 are allowed (tests use 4) but logged in production mode.

        cookie_samesite: only "lax" and "strict" are accepted. "none" would
            send session cookies on cross-site POSTs.
        """
        if self.access_token_ttl_seconds <= 0:
            raise ValueError("ACCESS_TOKEN_TTL_SECONDS must be positive.")
        if self.access_token_ttl_seconds >= self.refresh_token_ttl_seconds:
            raise ValueError("ACCESS_TOKEN_TTL_SECONDS must be shorter than REFRESH_TOKEN_TTL_SECONDS.")
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        if self.bcrypt_rounds < 10 and not self.debug:
            logger.warning("BCRYPT_ROUNDS=%d is below the recommended minimum of 10", self.bcrypt_rounds)
        self.cookie_samesite = self.cookie_samesite.lower()
        if self.cookie_samesite not in ("lax", "strict"):
            raise ValueError("COOKIE_SAMESITE must be 'lax' or 'strict'.")
        self.frontend_url = self.frontend_url.rstrip("/")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings()
    directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
