"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for licensegate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. hmac_secret -> HMAC_SECRET). Type coercion and validation are built in.
      Dict fields (credit_costs, handler_urls) are read as JSON.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Both secrets follow the same policy:
      dev mode generates a key with a warning, production mode refuses to start.

Security notes:
  SECRET_KEY keys the HMAC used to store license keys. HMAC_SECRET keys the
  request envelope signature and is shared with trusted clients. They are
  separate so rotating the client-facing secret does not invalidate every
  stored license hash. Both must be at least 32 characters.

Layer rule: core/ is the kernel. This module may not import from api/,
accounts/, ledger/, routing/, gateway/, or cache/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("licensegate.config")

# Credit prices per cost key. ledger/pricing.py maps action names onto these keys.
DEFAULT_CREDIT_COSTS: dict[str, int] = {
    "workflow_stage1": 5,
    "workflow_stage2": 10,
    "workflow_stage3": 15,
    "workflow_stage4": 20,
    "workflow_stage5": 25,
    "competitor_analysis": 30,
    "fetcher_single": 1,
    "fetcher_multi": 2,
    "content_generate": 15,
}

_MIN_SECRET_LENGTH = 32


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
    hmac_secret: str = ""

    # ------------------------------------------------------------------
    # Request signing
    # ------------------------------------------------------------------

    timestamp_window: int = Field(default=60, ge=1)
    # Unsigned bodies are the backward-compatible path for older clients.
    allow_unsigned: bool = True

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_policy: Literal["ip_exclusive", "permanent_binding"] = "ip_exclusive"
    session_timeout_seconds: int = Field(default=1800, ge=0)
    # Use the first X-Forwarded-For entry as the caller identity. Only enable
    # behind a proxy that overwrites the header.
    trust_forwarded_for: bool = True

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    database_url: str = "sqlite:///licensegate.db"
    cache_db_path: str = "licensegate_cache.db"
    cache_ttl_seconds: int = 3600
    cache_purge_probability: float = Field(default=0.01, ge=0.0, le=1.0)

    # ------------------------------------------------------------------
    # Metering
    # ------------------------------------------------------------------

    default_credit_cost: int = Field(default=1, ge=0)
    credit_costs: dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_CREDIT_COSTS))
    # Reserved transactions older than this are failed and refunded by the
    # sweep loop in api/main.py.
    reservation_ttl_seconds: int = 900
    reservation_sweep_seconds: int = 300

    # ------------------------------------------------------------------
    # Downstream handlers
    # ------------------------------------------------------------------

    # category -> base URL, e.g. {"search": "http://search-proxy:8080"}.
    # Categories without a URL are not dispatchable.
    handler_urls: dict[str, str] = Field(default_factory=dict)
    handler_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    # Empty string disables the admin endpoints entirely.
    admin_token: str = ""
    gateway_rate_limit: str = "120/minute"
    # Host headers accepted by TrustedHostMiddleware. Read as JSON.
    allowed_hosts: list[str] = Field(default_factory=lambda: ["localhost", "127.0.0.1", "*.localhost"])

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the secret policy for SECRET_KEY and HMAC_SECRET.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Stored license hashes and client signatures will not survive a
            restart -- acceptable for local dev and tests.

        Production mode (DEBUG=false or not set): refuse to start if either
            secret is missing.

        Both modes: reject secrets shorter than 32 characters.
        """
        for name in ("secret_key", "hmac_secret"):
            value = getattr(self, name)
            if not value:
                if self.debug:
                    setattr(self, name, secrets.token_hex(32))
                    logger.warning("WARNING: Using auto-generated %s. Values will not persist across restarts.", name.upper())
                else:
                    raise ValueError(
                        f"{name.upper()} is required in production mode. "
                        f"Set {name.upper()} in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
            if len(getattr(self, name)) < _MIN_SECRET_LENGTH:
                raise ValueError(f"{name.upper()} must be at least {_MIN_SECRET_LENGTH} characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
