"""
Snapshot Cache Factory

Returns the in-memory or Redis snapshot cache based on ENV_MODE.
"""

import logging
from functools import lru_cache

from weekly_orders.core.config import get_settings
from weekly_orders.services.cache.base import (
    BaseSnapshotCache,
    Snapshot,
    MENU_SNAPSHOT,
    MENU_FINGERPRINT,
    summary_key,
)
from weekly_orders.services.cache.memory import MemorySnapshotCache
from weekly_orders.services.cache.redis_cache import RedisSnapshotCache

logger = logging.getLogger(__name__)


@lru_cache()
def get_snapshot_cache() -> BaseSnapshotCache:
    """Get the configured snapshot cache."""
    settings = get_settings()

    if settings.is_development:
        logger.info("Snapshot Cache: Using MemorySnapshotCache (development mode)")
        return MemorySnapshotCache()
    else:
        logger.info(f"Snapshot Cache: Using RedisSnapshotCache ({settings.env_mode.value} mode)")
        return RedisSnapshotCache()


def reset_snapshot_cache() -> None:
    """Clear the cached cache instance."""
    get_snapshot_cache.cache_clear()


__all__ = [
    "get_snapshot_cache",
    "reset_snapshot_cache",
    "BaseSnapshotCache",
    "MemorySnapshotCache",
    "RedisSnapshotCache",
    "Snapshot",
    "MENU_SNAPSHOT",
    "MENU_FINGERPRINT",
    "summary_key",
]
