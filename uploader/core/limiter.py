"""
Rate limiter configuration module.

This module creates the SlowAPI rate limiter instance that can be imported
by route modules without circular import issues. Limit strings are resolved
on each request from the settings the application was built with.
"""

import logging
from typing import Callable, Optional

from slowapi import Limiter
from slowapi.util import get_remote_address

from uploader.core.config import Settings, get_settings

# Initialize logging
logger = logging.getLogger(__name__)

_limit_settings: Optional[Settings] = None


def configure_limits(settings: Settings) -> None:
    """Make route limits follow the settings of the application being built."""
    global _limit_settings
    _limit_settings = settings


def settings_limit(name: str) -> Callable[[], str]:
    """Limit provider returning the ``name`` setting, e.g. ``rate_limit_upload``."""

    def provider() -> str:
        return getattr(_limit_settings or get_settings(), name)

    return provider


def get_limiter_storage(settings: Settings) -> Optional[str]:
    """
    Get the storage backend for rate limiting.

    Returns Redis URL if configured, otherwise None (uses in-memory storage).
    """
    if settings.redis_url:
        if not settings.redis_url.startswith(("redis://", "rediss://")):
            logger.warning(
                "Invalid REDIS_URL format: %s. Using in-memory storage instead.",
                settings.redis_url,
            )
            return None
        logger.info("Using Redis backend for rate limiting")
        return settings.redis_url
    return None


def create_limiter(settings: Settings) -> Limiter:
    """
    Create and configure the SlowAPI rate limiter.

    Uses Redis backend if REDIS_URL is configured, otherwise falls back to
    in-memory storage. In-memory storage is suitable for single-instance
    deployments, while Redis is required for distributed deployments.

    Returns:
        Configured Limiter instance
    """
    storage_uri = get_limiter_storage(settings)

    if storage_uri:
        return Limiter(
            key_func=get_remote_address,
            storage_uri=storage_uri,
            default_limits=[settings_limit("rate_limit_default")],
        )
    logger.info("Using in-memory storage for rate limiting")
    return Limiter(
        key_func=get_remote_address,
        default_limits=[settings_limit("rate_limit_default")],
    )


# Create the rate limiter instance - this is the single instance used throughout the app
limiter = create_limiter(get_settings())
