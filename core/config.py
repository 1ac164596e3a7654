"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for authgate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead,
or better, accept a Settings instance as a constructor argument.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. The FastAPI
      lifespan reads it once and hands it to every component it builds.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. DEBUG-conditional SECRET_KEY: dev mode generates a key with a
      warning, production mode refuses to start without one.

Security notes:
  Key length: SECRET_KEY shorter than 32 chars is rejected outright. Session and
       purpose-token digests are HMAC-SHA256 keyed by it.

  Missing key: in production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random key would silently invalidate every
       session and pending reset link on restart.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authgate.config")


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
    database_url: str = "sqlite:///authgate.db"

    # Public URL of this service (verification links point here) and of the
    # browser frontend (reset-password and post-verification pages live there).
    base_url: str = "http://localhost:5000"
    frontend_url: str = "http://localhost:3000"
    # Origins allowed as redirectTo / callbackURL targets. frontend_url is
    # always appended by the validator below.
    trusted_origins: list[str] = []
    # Host headers accepted by TrustedHostMiddleware.
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]

    # ------------------------------------------------------------------
    # Sessions and cookies
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    cookie_prefix: str = "authgate"
    session_expire_seconds: int = 60 * 60 * 24 * 7  # 7 days
    session_update_age_seconds: int = 60 * 60 * 24  # roll expiry once a day

    # ------------------------------------------------------------------
    # Purpose tokens
    # ------------------------------------------------------------------

    password_reset_expiry_seconds: int = 60 * 60  # 1 hour
    email_verification_expiry_seconds: int = 60 * 60 * 24  # 24 hours
    auto_sign_in_after_verification: bool = True

    # ------------------------------------------------------------------
    # Password hashing
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # Outbound email (SMTP). Empty smtp_host = dev mode, mail is logged.
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_secure: bool = False  # True = implicit TLS (465); False = STARTTLS
    email_from: str = "noreply@authgate.local"
    email_from_name: str = "authgate"
    notification_workers: int = 2

    # ------------------------------------------------------------------
    # Rate limiting (slowapi fixed windows, per client key and endpoint class)
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    # slowapi / limits storage. memory:// is per process; use redis://host:6379
    # so every worker shares one budget.
    rate_limit_storage_uri: str = "memory://"
    # Honour X-Forwarded-For. Only enable behind a reverse proxy that sets it.
    trust_proxy: bool = False
    rate_limit_window_seconds: int = 15 * 60
    rate_limit_max_requests: int = 100
    auth_rate_limit_window_seconds: int = 15 * 60
    auth_rate_limit_max: int = 10
    password_reset_rate_limit_window_seconds: int = 60 * 60
    password_reset_rate_limit_max: int = 3
    email_verification_rate_limit_window_seconds: int = 60 * 60
    email_verification_rate_limit_max: int = 5

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    sweep_interval_seconds: int = 60 * 60

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("base_url", "frontend_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions and pending tokens will not survive restart.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
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
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def include_frontend_origin(self) -> "Settings":
        """The frontend is always a trusted redirect target."""
        origins = [o.rstrip("/") for o in self.trusted_origins]
        if self.frontend_url not in origins:
            origins.append(self.frontend_url)
        self.trusted_origins = origins
        return self

    @property
    def session_cookie_name(self) -> str:
        return f"{self.cookie_prefix}.session_token"


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
