"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the admin panel happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. session_secret -> SESSION_SECRET).

  @model_validator(mode="after"): Implements the DEBUG-conditional
      SESSION_SECRET logic: dev mode generates a throwaway key with a warning,
      production mode leaves the secret empty so the authentication surface
      reports itself as not configured and refuses every login.

Security notes:
  [M6] SESSION_SECRET shorter than 32 chars is rejected outright. HMAC-SHA256
       session signing relies on key entropy -- a short key weakens it.

  [M7] A missing SESSION_SECRET outside DEBUG never falls back to a generated
       key. SessionManager.is_configured() returns False and the OAuth
       callback redirects to ?error=server_config instead of issuing an
       unsigned or throwaway-signed session.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
cache/, or docstore/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("precinct.config")

_DEFAULT_DOCSTORE_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'precinct_docstore.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. Provider credentials default to the
    empty string, which means "provider disabled".
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
    session_secret: str = ""
    docstore_url: str = _DEFAULT_DOCSTORE_URL
    allowed_hosts: list[str] = ["*"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Sessions and login flow
    # ------------------------------------------------------------------

    secure_cookies: bool = True
    session_ttl_seconds: int = 24 * 60 * 60
    state_max_age_seconds: int = 600
    login_page: str = "/admin/login"
    default_return_path: str = "/admin"
    login_rate_limit: str = "10/minute"
    # Per username+IP lockout on top of the per-IP rate limit.
    login_max_attempts: int = 5
    login_window_seconds: int = 15 * 60
    login_lockout_seconds: int = 30 * 60

    # ------------------------------------------------------------------
    # Discord (guild membership drives role resolution)
    # ------------------------------------------------------------------

    discord_client_id: str = ""
    discord_client_secret: str = ""
    discord_guild_id: str = ""
    discord_bot_token: str = ""
    # Legacy static roles, checked when no dynamic mapping matches.
    discord_superadmin_role_id: str = ""
    discord_subdiv_role_id: str = ""
    discord_allothers_role_id: str = ""

    # ------------------------------------------------------------------
    # Google (profile only; roles come from the local account registry)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""

    # ------------------------------------------------------------------
    # Outbound calls and caching
    # ------------------------------------------------------------------

    provider_timeout_seconds: float = 10.0
    role_cache_ttl_seconds: float = 60.0
    audit_webhook_url: str = ""

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_session_secret(self) -> "Settings":
        """Enforce the SESSION_SECRET policy [M6][M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: leave a missing key empty. The auth surface checks
            SessionManager.is_configured() and fails safe.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.session_secret:
            if self.debug:
                self.session_secret = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SESSION_SECRET. " "Sessions will not persist across restarts."
                )
            else:
                logger.error("SESSION_SECRET is not set -- authentication is disabled until it is configured")
                return self
        if len(self.session_secret) < 32:
            raise ValueError("SESSION_SECRET must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
