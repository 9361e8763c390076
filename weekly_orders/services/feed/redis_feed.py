"""
Redis Change Feed

Publishes events as JSON on one Redis pub/sub channel. Every API process
runs a listener task that decodes incoming messages and hands them to its
local handlers, including the events it published itself.
"""

import asyncio
import json
import logging
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from weekly_orders.core.config import get_settings
from weekly_orders.core.errors import StorageWriteError
from weekly_orders.services.feed.base import BaseChangeFeed, ChangeEvent

logger = logging.getLogger(__name__)


class RedisChangeFeed(BaseChangeFeed):
    """Change feed over Redis pub/sub."""

    def __init__(self, redis_url: Optional[str] = None, prefix: Optional[str] = None):
        super().__init__()
        settings = get_settings()
        self.redis_url = redis_url or settings.redis_url
        self.channel = f"{prefix or settings.redis_key_prefix}:changes"
        self.client = aioredis.Redis.from_url(self.redis_url, decode_responses=True)
        self._listener: Optional[asyncio.Task] = None
        logger.info(f"RedisChangeFeed initialized (channel={self.channel})")

    @property
    def provider_name(self) -> str:
        return "redis"

    async def publish(self, event: ChangeEvent) -> None:
        message = json.dumps(event.to_dict(), ensure_ascii=False)
        try:
            receivers = await self.client.publish(self.channel, message)
        except RedisError as e:
            logger.error(f"Redis publish failed: {e}")
            raise StorageWriteError("Change feed publish failed", detail=str(e))
        logger.debug(f"Event {event.kind.value} published to {receivers} subscribers")

    async def start(self) -> None:
        if self._listener is None or self._listener.done():
            self._listener = asyncio.create_task(self._listen())
            logger.info(f"Listening on {self.channel}")

    async def stop(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        await self.client.aclose()

    async def _listen(self) -> None:
        """Subscribe and dispatch until cancelled; reconnect after errors."""
        while True:
            pubsub = self.client.pubsub()
            try:
                await pubsub.subscribe(self.channel)
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    try:
                        event = ChangeEvent.from_dict(json.loads(message["data"]))
                    except (ValueError, KeyError, TypeError) as e:
                        logger.warning(f"Ignoring malformed change event: {e}")
                        continue
                    await self._dispatch(event)
            except RedisError as e:
                logger.error(f"Change feed connection lost: {e}; retrying in 5s")
                await asyncio.sleep(5)
            finally:
                await pubsub.aclose()

    async def health_check(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            return False
