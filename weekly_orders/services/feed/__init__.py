"""
Change Feed Factory

Returns the in-process or Redis change feed based on ENV_MODE.
"""

import logging
from functools import lru_cache

from weekly_orders.core.config import get_settings
from weekly_orders.services.feed.base import (
    BaseChangeFeed,
    ChangeEvent,
    EventAction,
    EventKind,
    PROCESS_ORIGIN,
)
from weekly_orders.services.feed.memory import InMemoryChangeFeed
from weekly_orders.services.feed.redis_feed import RedisChangeFeed

logger = logging.getLogger(__name__)


@lru_cache()
def get_change_feed() -> BaseChangeFeed:
    """Get the configured change feed."""
    settings = get_settings()

    if settings.is_development:
        logger.info("Change Feed: Using InMemoryChangeFeed (development mode)")
        return InMemoryChangeFeed()
    else:
        logger.info(f"Change Feed: Using RedisChangeFeed ({settings.env_mode.value} mode)")
        return RedisChangeFeed()


def reset_change_feed() -> None:
    """Clear the cached feed instance."""
    get_change_feed.cache_clear()


__all__ = [
    "get_change_feed",
    "reset_change_feed",
    "BaseChangeFeed",
    "ChangeEvent",
    "EventAction",
    "EventKind",
    "InMemoryChangeFeed",
    "RedisChangeFeed",
    "PROCESS_ORIGIN",
]
