"""
Runtime settings read from the environment.

Usage:
    from thirsty.config.settings import get_settings

    settings = get_settings()
    ttl = settings.entitlement_cache_ttl_seconds

Tests that change environment variables must call reset_settings().
"""

import logging
import os
from dataclasses import dataclass
from threading import Lock
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 300  # 5 minutes
DEFAULT_CACHE_MAX_ENTRIES = 10000
DEFAULT_SINGLE_FLIGHT_TIMEOUT_SECONDS = 5.0
DEFAULT_WEBHOOK_TOLERANCE_SECONDS = 300
DEFAULT_DEDUP_RETENTION_DAYS = 30
DEFAULT_DATABASE_POOL_SIZE = 5
DEFAULT_DATABASE_MAX_OVERFLOW = 10


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer in environment, using default", extra={
            "variable": name, "value": raw, "default": default,
        })
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid number in environment, using default", extra={
            "variable": name, "value": raw, "default": default,
        })
        return default


@dataclass(frozen=True)
class Settings:
    """Immutable snapshot of service configuration."""

    database_url: Optional[str]
    redis_url: Optional[str]
    stripe_webhook_secret: Optional[str]
    stripe_webhook_tolerance_seconds: int
    entitlement_cache_ttl_seconds: int
    entitlement_cache_max_entries: int
    single_flight_timeout_seconds: float
    feature_catalog_path: Optional[str]
    webhook_dedup_retention_days: int
    admin_api_token: Optional[str] = None
    database_pool_size: int = DEFAULT_DATABASE_POOL_SIZE
    database_max_overflow: int = DEFAULT_DATABASE_MAX_OVERFLOW

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL") or None,
            redis_url=os.getenv("REDIS_URL") or None,
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET") or None,
            stripe_webhook_tolerance_seconds=_env_int(
                "STRIPE_WEBHOOK_TOLERANCE_SECONDS", DEFAULT_WEBHOOK_TOLERANCE_SECONDS
            ),
            entitlement_cache_ttl_seconds=_env_int(
                "ENTITLEMENT_CACHE_TTL", DEFAULT_CACHE_TTL_SECONDS
            ),
            entitlement_cache_max_entries=_env_int(
                "ENTITLEMENT_CACHE_MAX_ENTRIES", DEFAULT_CACHE_MAX_ENTRIES
            ),
            single_flight_timeout_seconds=_env_float(
                "ENTITLEMENT_SINGLE_FLIGHT_TIMEOUT", DEFAULT_SINGLE_FLIGHT_TIMEOUT_SECONDS
            ),
            feature_catalog_path=os.getenv("FEATURE_CATALOG_PATH") or None,
            webhook_dedup_retention_days=_env_int(
                "WEBHOOK_DEDUP_RETENTION_DAYS", DEFAULT_DEDUP_RETENTION_DAYS
            ),
            admin_api_token=os.getenv("ADMIN_API_TOKEN") or None,
            database_pool_size=_env_int("DATABASE_POOL_SIZE", DEFAULT_DATABASE_POOL_SIZE),
            database_max_overflow=_env_int(
                "DATABASE_MAX_OVERFLOW", DEFAULT_DATABASE_MAX_OVERFLOW
            ),
        )


_settings: Optional[Settings] = None
_settings_lock = Lock()


def get_settings() -> Settings:
    """Get the process-wide Settings, reading the environment once."""
    global _settings
    if _settings is None:
        with _settings_lock:
            if _settings is None:
                _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    """
    Drop the cached Settings (for testing).

    WARNING: Only use in tests!
    """
    global _settings
    with _settings_lock:
        _settings = None
