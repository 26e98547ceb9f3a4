"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for authcore happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. The signing
      secret and hashing cost are therefore loaded once at startup and never
      mutated afterwards.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_secret -> JWT_SECRET). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Dev mode generates a signing secret with a warning, production
      mode refuses to start without one.

Security notes:
  [M6] JWT_SECRET shorter than 32 chars is rejected outright. HMAC signing
       relies on key entropy -- a short key weakens every issued token.

  [M7] In production mode (DEBUG not set or false), a missing JWT_SECRET is a
       hard startup failure. A random key in production would invalidate every
       outstanding refresh token on restart.

  Only HMAC algorithms are accepted. Asymmetric algorithms would need a key
  pair, and "none" must never reach the codec.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authcore.config")

_HMAC_ALGORITHMS = ("HS256", "HS384", "HS512")


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
    # "production" disables every testing convenience (reset token echo).
    app_env: str = "production"
    app_url: str = "http://localhost:8000"

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    jwt_issuer: str = "authcore"
    access_token_ttl: int = 900  # 15 minutes
    refresh_token_ttl: int = 604800  # 7 days
    email_verification_ttl: int = 86400  # 24 hours
    password_reset_ttl: int = 3600  # 1 hour

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    password_hash_cost: int = 12

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    database_url: str = ""  # empty = SQLite file next to core/database.py
    db_timeout: float = 5.0  # seconds; busy timeout / pool checkout timeout
    sweep_interval_seconds: int = 3600

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    default_user_role: str = "subscriber"
    # Comma-separated. Registrations from these addresses also get "admin".
    admin_emails: str = ""

    # ------------------------------------------------------------------
    # Mail (empty host = log-only notifier)
    # ------------------------------------------------------------------

    mail_host: str = ""
    mail_port: int = 587
    mail_username: str = ""
    mail_password: str = ""
    mail_use_tls: bool = True
    mail_from_address: str = "noreply@localhost"
    mail_from_name: str = "authcore"
    mail_timeout: float = 30.0  # seconds per SMTP connection

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def is_production(self) -> bool:
        return self.app_env.strip().lower() == "production"

    @property
    def expose_reset_token(self) -> bool:
        """Echo raw reset tokens in API responses. Never true in production."""
        return not self.is_production

    @property
    def admin_email_set(self) -> frozenset[str]:
        return frozenset(e.strip().lower() for e in self.admin_emails.split(",") if e.strip())

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_jwt_secret(self) -> "Settings":
        """Enforce JWT_SECRET policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            JWT_SECRET is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.jwt_secret:
            if self.debug:
                self.jwt_secret = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated JWT_SECRET. Tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "JWT_SECRET is required in production mode. "
                    "Set JWT_SECRET in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.jwt_secret) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_token_policy(self) -> "Settings":
        """Reject non-HMAC algorithms, non-positive lifetimes and out-of-range bcrypt costs."""
        self.jwt_algorithm = self.jwt_algorithm.upper()
        if self.jwt_algorithm not in _HMAC_ALGORITHMS:
            raise ValueError(f"JWT_ALGORITHM must be one of {', '.join(_HMAC_ALGORITHMS)}.")
        for name in ("access_token_ttl", "refresh_token_ttl", "email_verification_ttl", "password_reset_ttl"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name.upper()} must be a positive number of seconds.")
        # bcrypt accepts log rounds 4..31
        if not 4 <= self.password_hash_cost <= 31:
            raise ValueError("PASSWORD_HASH_COST must be between 4 and 31.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
