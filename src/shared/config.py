"""
Centralized configuration for the messaging pipeline.

- Pure dataclass settings, no Pydantic.
- Loads from OS env; a repo-root .env file is merged in via python-dotenv (never overrides).
- Strong typing & validation in __post_init__.
- Immutable singleton via functools.lru_cache.
- Secrets never logged (masked).
"""

from __future__ import annotations

import functools
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Optional, cast
from urllib.parse import urlparse

from dotenv import load_dotenv


# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------
def _load_dotenv(env_path: Path) -> None:
    if env_path.exists():
        load_dotenv(dotenv_path=str(env_path), override=False)


def _mask_url(value: Optional[str]) -> str:
    if not value:
        return "<unset>"
    parsed = urlparse(value)
    if parsed.password:
        return value.replace(parsed.password, "***")
    return value


def _get_env_str(key: str, default: Optional[str] = None, required: bool = False) -> Optional[str]:
    v = os.getenv(key, default)
    if required and (v is None or str(v).strip() == ""):
        raise ValueError(f"Missing required env var: {key}")
    return v


def _get_env_bool(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    v = v.strip().lower()
    return v in {"1", "true", "t", "yes", "y", "on"}


def _get_env_int(key: str, default: int) -> int:
    v = os.getenv(key)
    if v is None or v.strip() == "":
        return default
    try:
        return int(v)
    except ValueError:
        raise ValueError(f"Env var {key} must be an integer")


def _get_env_float(key: str, default: float) -> float:
    v = os.getenv(key)
    if v is None or v.strip() == "":
        return default
    try:
        return float(v)
    except ValueError:
        raise ValueError(f"Env var {key} must be a number")


def _validate_choice(value: str, *, choices: tuple[str, ...], key: str) -> str:
    if value not in choices:
        raise ValueError(f"{key} must be one of {choices}, got {value!r}")
    return value


def _validate_url(value: Optional[str], *, key: str, allowed_schemes: tuple[str, ...]) -> Optional[str]:
    if value in (None, ""):
        return None
    parsed = urlparse(value)
    if parsed.scheme not in allowed_schemes or not parsed.netloc:
        raise ValueError(f"{key} must be a valid URL with scheme in {allowed_schemes}")
    return value


def _validate_database_url(value: str, *, key: str) -> str:
    if not value.startswith(("postgresql+asyncpg://", "sqlite+aiosqlite://")):
        raise ValueError(f"{key} must start with postgresql+asyncpg:// or sqlite+aiosqlite://")
    return value


# ------------------------------------------------------------------------------
# Settings dataclass (immutable)
# ------------------------------------------------------------------------------
EnvName = Literal["local", "dev", "staging", "prod", "test"]
LogFormat = Literal["json", "console"]

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./messaging.db"
DEFAULT_WA_API_BASE_URL = "https://graph.facebook.com/v21.0"


@dataclass(frozen=True)
class Settings:
    # Environment
    environment: EnvName = "local"
    debug: bool = False

    # Database
    database_url: str = DEFAULT_DATABASE_URL
    database_pool_size: int = 5
    database_max_overflow: int = 10
    database_echo: bool = False

    # Redis (dead-letter list for exhausted jobs)
    redis_url: Optional[str] = None

    # WhatsApp Cloud API
    wa_api_base_url: str = DEFAULT_WA_API_BASE_URL
    wa_http_timeout_seconds: float = 10.0

    # Outbound dispatch
    outbound_retry_delay_seconds: float = 2.0

    # Durable queue
    queue_poll_interval_seconds: float = 1.0
    queue_batch_size: int = 20
    queue_max_attempts: int = 3
    queue_backoff_base_seconds: float = 1.0
    queue_backoff_max_seconds: float = 60.0
    queue_visibility_timeout_seconds: float = 300.0
    queue_completed_retention_hours: float = 12.0
    queue_purge_interval_minutes: int = 60

    # Inbox housekeeping
    stale_resolved_hours: int = 24
    stale_inactive_days: int = 7
    stale_sweep_interval_minutes: int = 15

    # Observability
    log_level: str = "INFO"
    log_format: Optional[LogFormat] = None

    # Paths
    base_dir: Path = field(default_factory=lambda: Path(__file__).resolve().parent.parent)

    # Derived flags (filled in __post_init__)
    is_prod: bool = field(init=False)
    is_staging: bool = field(init=False)
    is_dev: bool = field(init=False)
    is_local: bool = field(init=False)
    is_sqlite: bool = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "environment",
            _validate_choice(self.environment, choices=("local", "dev", "staging", "prod", "test"), key="ENVIRONMENT"),
        )
        object.__setattr__(self, "database_url", _validate_database_url(self.database_url, key="DATABASE_URL"))
        if self.redis_url:
            _validate_url(self.redis_url, key="REDIS_URL", allowed_schemes=("redis", "rediss"))
        _validate_url(self.wa_api_base_url, key="WA_API_BASE_URL", allowed_schemes=("http", "https"))

        if self.log_format is not None:
            _validate_choice(self.log_format, choices=("json", "console"), key="LOG_FORMAT")
        if not re.fullmatch(r"(?i)DEBUG|INFO|WARNING|ERROR|CRITICAL", self.log_level.strip()):
            raise ValueError("LOG_LEVEL must be one of DEBUG, INFO, WARNING, ERROR, CRITICAL")

        if self.outbound_retry_delay_seconds < 0:
            raise ValueError("OUTBOUND_RETRY_DELAY_SECONDS must be >= 0")
        if self.queue_max_attempts < 1:
            raise ValueError("QUEUE_MAX_ATTEMPTS must be >= 1")
        if self.queue_batch_size < 1:
            raise ValueError("QUEUE_BATCH_SIZE must be >= 1")
        if self.queue_backoff_max_seconds < self.queue_backoff_base_seconds:
            raise ValueError("QUEUE_BACKOFF_MAX_SECONDS must be >= QUEUE_BACKOFF_BASE_SECONDS")
        if self.queue_completed_retention_hours < 0:
            raise ValueError("QUEUE_COMPLETED_RETENTION_HOURS must be >= 0")

        env = self.environment
        object.__setattr__(self, "is_prod", env == "prod")
        object.__setattr__(self, "is_staging", env == "staging")
        object.__setattr__(self, "is_dev", env == "dev")
        object.__setattr__(self, "is_local", env in ("local", "test"))
        object.__setattr__(self, "is_sqlite", self.database_url.startswith("sqlite"))

    # Safe dict (for debug prints without secrets)
    def safe_dict(self) -> dict:
        return {
            "environment": self.environment,
            "debug": self.debug,
            "database_url": _mask_url(self.database_url),
            "database_pool_size": self.database_pool_size,
            "database_max_overflow": self.database_max_overflow,
            "redis_url": "<masked>" if self.redis_url else "<unset>",
            "wa_api_base_url": self.wa_api_base_url,
            "outbound_retry_delay_seconds": self.outbound_retry_delay_seconds,
            "queue_max_attempts": self.queue_max_attempts,
            "queue_backoff_base_seconds": self.queue_backoff_base_seconds,
            "log_level": self.log_level,
            "log_format": self.log_format or "<auto>",
        }


# ------------------------------------------------------------------------------
# Loader (singleton)
# ------------------------------------------------------------------------------
_logger = logging.getLogger(__name__)


def load_settings() -> Settings:
    """Build a fresh Settings from the current environment."""
    return Settings(
        environment=cast(EnvName, _get_env_str("ENVIRONMENT", "local") or "local"),
        debug=_get_env_bool("DEBUG", False),
        database_url=_get_env_str("DATABASE_URL", DEFAULT_DATABASE_URL) or DEFAULT_DATABASE_URL,
        database_pool_size=_get_env_int("DATABASE_POOL_SIZE", 5),
        database_max_overflow=_get_env_int("DATABASE_MAX_OVERFLOW", 10),
        database_echo=_get_env_bool("SQLALCHEMY_ECHO", False),
        redis_url=_get_env_str("REDIS_URL", None) or None,
        wa_api_base_url=_get_env_str("WA_API_BASE_URL", DEFAULT_WA_API_BASE_URL) or DEFAULT_WA_API_BASE_URL,
        wa_http_timeout_seconds=_get_env_float("WA_HTTP_TIMEOUT_SECONDS", 10.0),
        outbound_retry_delay_seconds=_get_env_float("OUTBOUND_RETRY_DELAY_SECONDS", 2.0),
        queue_poll_interval_seconds=_get_env_float("QUEUE_POLL_INTERVAL_SECONDS", 1.0),
        queue_batch_size=_get_env_int("QUEUE_BATCH_SIZE", 20),
        queue_max_attempts=_get_env_int("QUEUE_MAX_ATTEMPTS", 3),
        queue_backoff_base_seconds=_get_env_float("QUEUE_BACKOFF_BASE_SECONDS", 1.0),
        queue_backoff_max_seconds=_get_env_float("QUEUE_BACKOFF_MAX_SECONDS", 60.0),
        queue_visibility_timeout_seconds=_get_env_float("QUEUE_VISIBILITY_TIMEOUT_SECONDS", 300.0),
        queue_completed_retention_hours=_get_env_float("QUEUE_COMPLETED_RETENTION_HOURS", 12.0),
        queue_purge_interval_minutes=_get_env_int("QUEUE_PURGE_INTERVAL_MINUTES", 60),
        stale_resolved_hours=_get_env_int("STALE_RESOLVED_HOURS", 24),
        stale_inactive_days=_get_env_int("STALE_INACTIVE_DAYS", 7),
        stale_sweep_interval_minutes=_get_env_int("STALE_SWEEP_INTERVAL_MINUTES", 15),
        log_level=_get_env_str("LOG_LEVEL", "INFO") or "INFO",
        log_format=cast(Optional[LogFormat], _get_env_str("LOG_FORMAT", None) or None),
    )


@functools.lru_cache(maxsize=1)
def get_settings() -> Settings:
    # Attempt to load .env from repo root (../.env relative to src/)
    _load_dotenv(Path(__file__).resolve().parent.parent.parent / ".env")

    settings = load_settings()
    _logger.info("Settings loaded", extra={"settings": settings.safe_dict()})
    return settings
