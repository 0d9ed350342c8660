"""
core/config.py -- Settings for the accounts service.

Every environment read goes through get_settings(). Nothing else in the tree
touches os.environ, so tests control behaviour by setting variables before
the first call (see tests/conftest.py).

Values come from the process environment or a .env file in the working
directory; SECRET_KEY maps to secret_key and so on.

SECRET_KEY does double duty: it signs every session and single-use JWT, and
it keys the HMAC that turns API keys into stored digests. Rotating it signs
everyone out and invalidates every issued API key.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("flowforge.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'flowforge_accounts.db'}"


class Settings(BaseSettings):
    """Service settings. Every field has a default except the secret in production."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    debug: bool = False
    # "" means unset; check_secrets() replaces or rejects it.
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL
    log_level: str = "INFO"

    # Sessions and single-use tokens
    secure_cookies: bool = False
    token_expire_seconds: int = 3600
    confirm_token_ttl_seconds: int = 3 * 24 * 3600
    reset_token_ttl_seconds: int = 3600
    magic_link_ttl_seconds: int = 600
    token_purge_interval_seconds: int = 6 * 3600

    # bcrypt accepts 4..31. Tests drop this to 4 to keep hashing fast.
    bcrypt_rounds: int = 12

    # API keys
    api_key_default_ttl_seconds: int = 30 * 24 * 3600
    api_key_max_per_user: int = 10

    login_rate_limit: str = "10/minute"

    @model_validator(mode="after")
    def check_secrets(self) -> "Settings":
        """Fill in or reject SECRET_KEY, and bound the bcrypt cost.

        With DEBUG on, a missing key is replaced by a random one; every
        restart then signs users out and orphans issued API keys. With DEBUG
        off a missing key is fatal.
        """
        if not self.secret_key and not self.debug:
            raise ValueError(
                "SECRET_KEY is required when DEBUG is off. "
                "Export it or put it in .env; set DEBUG=true for local development."
            )
        if not self.secret_key:
            self.secret_key = secrets.token_hex(32)
            logger.warning("SECRET_KEY not set, generated a throwaway key for this process")
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings, built on first call.

    get_settings.cache_clear() forces a rebuild after the environment changes.
    """
    return Settings()
