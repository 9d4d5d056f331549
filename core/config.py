"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for AuthGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. rate_limit_max_attempts -> RATE_LIMIT_MAX_ATTEMPTS).

  Explicit policy objects: rate_limit_config() turns the flat env surface into
      a frozen RateLimitConfig once at startup. The limiter and the flows take
      that object in their constructors and never read Settings at call time.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright.
  Outside DEBUG mode a missing SECRET_KEY is a hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, ratelimit/ or notify/.
"""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authgate.config")

_DEFAULT_BLOCK_DURATIONS_MIN = (15, 30, 60)
_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$")
_UNIT_SECONDS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


# ---------------------------------------------------------------------------
# Policy objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LimitPolicy:
    """Thresholds for one rate-limited purpose.

    block_durations_ms is indexed by block_count - 1 and saturates at the last
    entry. A single-element tuple gives a flat (non-escalating) block.

    max_block_count caps how far attempts made while already blocked may push
    block_count. None disables the cap.

    report_remaining switches the block message and duration_ms from the
    configured duration to the time left in the current window.
    """

    max_attempts: int
    block_durations_ms: tuple[int, ...]
    message: str
    max_block_count: int | None = None
    report_remaining: bool = False


@dataclass(frozen=True)
class RateLimitConfig:
    login: LimitPolicy
    reset_request: LimitPolicy
    reset_failure: LimitPolicy
    max_active_tokens: int = 2
    token_expiration_minutes: int = 15


LOGIN_BLOCK_MESSAGE = (
    "Too many failed login attempts. Your access is temporarily blocked "
    "for {minutes} minutes (until {until})."
)
RESET_REQUEST_BLOCK_MESSAGE = "Too many password reset requests. Please wait {minutes} minutes before trying again."
RESET_FAILURE_BLOCK_MESSAGE = (
    "Too many failed password reset attempts. Please wait {minutes} minutes before trying again."
)


def parse_duration_seconds(value: str | int) -> int:
    """Parse '1h', '30m', '7d', '45s' or a bare number of seconds.

    Raises ValueError for anything else, including zero.
    """
    if isinstance(value, int):
        seconds = value
    else:
        match = _DURATION_RE.match(value)
        if match is None:
            raise ValueError(f"Invalid duration: {value!r}")
        seconds = int(match.group(1)) * _UNIT_SECONDS[match.group(2)]
    if seconds <= 0:
        raise ValueError(f"Duration must be positive: {value!r}")
    return seconds


def parse_block_durations(raw: str) -> tuple[int, ...]:
    """Parse comma-separated minutes ("15,30,60") into milliseconds.

    An empty value returns an empty tuple (the caller substitutes the flat
    RATE_LIMIT_BLOCK_DURATION). A malformed value falls back to the 15/30/60
    minute defaults with a warning, so a typo never disables blocking.
    """
    if not raw.strip():
        return ()
    try:
        minutes = [int(part.strip()) for part in raw.split(",") if part.strip()]
    except ValueError:
        minutes = []
    if not minutes or any(m <= 0 for m in minutes):
        logger.warning("Invalid RATE_LIMIT_BLOCK_DURATIONS %r, using defaults", raw)
        minutes = list(_DEFAULT_BLOCK_DURATIONS_MIN)
    return tuple(m * 60 * 1000 for m in minutes)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


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

    app_name: str = "AuthGate"
    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    # Empty means the sqlite file next to each store module.
    database_url: str = ""

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]
    # Only honour X-Forwarded-For behind a proxy that overwrites it.
    trust_proxy_headers: bool = False
    secure_cookies: bool = False
    # Coarse per-IP request throttle (slowapi), independent of the login limiter.
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    jwt_token_expiration: str = "1h"

    # ------------------------------------------------------------------
    # Login rate limiting
    # ------------------------------------------------------------------

    rate_limit_max_attempts: int = 5
    rate_limit_block_durations: str = "15,30,60"
    rate_limit_block_duration: int = 15  # minutes, flat fallback
    rate_limit_max_block_count: int = 2
    rate_limit_enable_cleanup: bool = True
    rate_limit_cleanup_interval: int = 60  # minutes
    rate_limit_retention_hours: int = 24

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    pwd_reset_max_attempts: int = 3
    pwd_reset_block_duration: int = 15  # minutes
    pwd_reset_max_failure_attempts: int = 5
    pwd_reset_failure_block_duration: int = 30  # minutes
    pwd_reset_max_active_tokens: int = 2
    pwd_reset_token_expiration: int = 15  # minutes

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    email_verification_code_expiry: int = 15  # minutes
    max_verification_attempts: int = 3

    # ------------------------------------------------------------------
    # Email delivery
    # ------------------------------------------------------------------

    from_email: str = "noreply@authgate.local"
    from_name: str = "AuthGate Team"
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("jwt_token_expiration")
    @classmethod
    def validate_token_expiration(cls, value: str) -> str:
        parse_duration_seconds(value)
        return value

    @field_validator(
        "rate_limit_max_attempts",
        "pwd_reset_max_attempts",
        "pwd_reset_max_failure_attempts",
        "pwd_reset_max_active_tokens",
        "max_verification_attempts",
    )
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
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

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def token_expire_seconds(self) -> int:
        return parse_duration_seconds(self.jwt_token_expiration)

    @property
    def smtp_enabled(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def rate_limit_config(self) -> RateLimitConfig:
        """Build the immutable policy object handed to the limiter and flows."""
        durations = parse_block_durations(self.rate_limit_block_durations)
        if not durations:
            durations = (self.rate_limit_block_duration * 60 * 1000,)
        return RateLimitConfig(
            login=LimitPolicy(
                max_attempts=self.rate_limit_max_attempts,
                block_durations_ms=durations,
                message=LOGIN_BLOCK_MESSAGE,
                max_block_count=self.rate_limit_max_block_count,
            ),
            reset_request=LimitPolicy(
                max_attempts=self.pwd_reset_max_attempts,
                block_durations_ms=(self.pwd_reset_block_duration * 60 * 1000,),
                message=RESET_REQUEST_BLOCK_MESSAGE,
                report_remaining=True,
            ),
            reset_failure=LimitPolicy(
                max_attempts=self.pwd_reset_max_failure_attempts,
                block_durations_ms=(self.pwd_reset_failure_block_duration * 60 * 1000,),
                message=RESET_FAILURE_BLOCK_MESSAGE,
                report_remaining=True,
            ),
            max_active_tokens=self.pwd_reset_max_active_tokens,
            token_expiration_minutes=self.pwd_reset_token_expiration,
        )


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
