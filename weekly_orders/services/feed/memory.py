"""
In-Memory Change Feed

Delivers events to the handlers of the current process as soon as they are
published. Used in development and tests, where a single process serves
every client.
"""

import logging
from collections import deque

from weekly_orders.services.feed.base import BaseChangeFeed, ChangeEvent

logger = logging.getLogger(__name__)


class InMemoryChangeFeed(BaseChangeFeed):
    """Synchronous in-process fan-out."""

    def __init__(self):
        super().__init__()
        self.published: deque[ChangeEvent] = deque(maxlen=500)
        logger.info("InMemoryChangeFeed initialized")

    @property
    def provider_name(self) -> str:
        return "memory"

    async def publish(self, event: ChangeEvent) -> None:
        self.published.append(event)
        logger.debug(f"Event published: {event.kind.value} {event.week_start}")
        await self._dispatch(event)

    async def health_check(self) -> bool:
        return True
