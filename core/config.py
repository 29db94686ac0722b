"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for KeyGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, encryption_key -> ENCRYPTION_KEY).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a signing key with a
      warning, production mode refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing and
       the signed OAuth state both rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

  [E1] ENCRYPTION_KEY is optional. Empty means provider tokens are stored as
       given (encryption disabled). A malformed active key is a startup failure;
       a malformed ENCRYPTION_KEY_PREVIOUS is dropped with a warning so a typo in
       the rotation slot cannot take the service down.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("keygate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'keygate_auth.db'}"


def _is_256_bit_hex(value: str) -> bool:
    if len(value) != 64:
        return False
    try:
        bytes.fromhex(value)
    except ValueError:
        return False
    return True


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
    # Token lifetimes
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = 15 * 60
    refresh_token_expire_days: int = 30
    authorization_code_expire_seconds: int = 5 * 60
    oauth_state_expire_seconds: int = 10 * 60

    # ------------------------------------------------------------------
    # Provider-token encryption at rest (AES-256-GCM, 64 hex chars each)
    # ------------------------------------------------------------------

    encryption_key: str = ""
    encryption_key_previous: str = ""

    # ------------------------------------------------------------------
    # External identity provider (empty client id/secret = disabled)
    # ------------------------------------------------------------------

    provider_name: str = "naver"
    provider_label: str = "Naver"
    provider_client_id: str = ""
    provider_client_secret: str = ""
    provider_callback_url: str = ""
    provider_authorize_url: str = "https://nid.naver.com/oauth2.0/authorize"
    provider_token_url: str = "https://nid.naver.com/oauth2.0/token"  # noqa: S105 -- URL, not a password
    provider_profile_url: str = "https://openapi.naver.com/v1/nid/me"
    provider_scope: str = ""
    profile_fetch_attempts: int = 3

    # Client app deep link that receives the relayed callback. Any app
    # callback carried in the OAuth state must start with an allowed prefix.
    app_callback_url: str = "keygate://auth/callback"
    allowed_app_callback_prefixes: list[str] = ["keygate://"]

    # ------------------------------------------------------------------
    # HTTP / housekeeping
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]
    purge_interval_seconds: int = 6 * 60 * 60

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

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
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Tokens will not persist across restarts.")
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
    def validate_encryption_keys(self) -> "Settings":
        """Validate the active/previous AES keys [E1]."""
        if self.encryption_key and not _is_256_bit_hex(self.encryption_key):
            raise ValueError("ENCRYPTION_KEY must be 32 bytes (64 hex characters).")
        if self.encryption_key_previous and not _is_256_bit_hex(self.encryption_key_previous):
            logger.warning("ENCRYPTION_KEY_PREVIOUS must be 32 bytes (64 hex characters). Ignoring.")
            self.encryption_key_previous = ""
        if not self.encryption_key:
            logger.warning("ENCRYPTION_KEY not set. Provider token encryption is disabled.")
        return self

    @property
    def provider_enabled(self) -> bool:
        return bool(self.provider_client_id and self.provider_client_secret)


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
