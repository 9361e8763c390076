"""
Redis Snapshot Cache

Production snapshot cache shared by every API process. Each entry is a JSON
document ``{"value": ..., "stored_at": "<iso>"}`` under a prefixed key.
"""

import json
import logging
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from weekly_orders.core.config import get_settings
from weekly_orders.core.errors import StorageReadError, StorageWriteError
from weekly_orders.core.timeutil import parse_timestamp, utcnow
from weekly_orders.services.cache.base import BaseSnapshotCache, Snapshot

logger = logging.getLogger(__name__)


class RedisSnapshotCache(BaseSnapshotCache):
    """Snapshot cache stored in Redis."""

    def __init__(self, redis_url: Optional[str] = None, prefix: Optional[str] = None):
        settings = get_settings()
        self.redis_url = redis_url or settings.redis_url
        self.prefix = prefix or settings.redis_key_prefix
        self.client = aioredis.Redis.from_url(self.redis_url, decode_responses=True)
        logger.info(f"RedisSnapshotCache initialized (prefix={self.prefix})")

    @property
    def provider_name(self) -> str:
        return "redis"

    def _key(self, key: str) -> str:
        return f"{self.prefix}:snapshot:{key}"

    async def get(self, key: str, max_age: Optional[float] = None) -> Optional[Snapshot]:
        try:
            raw = await self.client.get(self._key(key))
        except RedisError as e:
            logger.error(f"Redis read failed for {key}: {e}")
            raise StorageReadError("Cache read failed", detail=str(e))

        if raw is None:
            return None

        try:
            document = json.loads(raw)
            snapshot = Snapshot(
                value=document["value"],
                stored_at=parse_timestamp(document["stored_at"]),
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding corrupt snapshot {key}: {e}")
            return None

        return self._flag_stale(snapshot, max_age)

    async def set(self, key: str, value: Any) -> Snapshot:
        snapshot = Snapshot(value=value, stored_at=utcnow())
        document = json.dumps(
            {"value": value, "stored_at": snapshot.stored_at.isoformat()},
            ensure_ascii=False,
        )
        try:
            await self.client.set(self._key(key), document)
        except RedisError as e:
            logger.error(f"Redis write failed for {key}: {e}")
            raise StorageWriteError("Cache write failed", detail=str(e))
        return snapshot

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(self._key(key))
        except RedisError as e:
            logger.error(f"Redis delete failed for {key}: {e}")
            raise StorageWriteError("Cache delete failed", detail=str(e))

    async def health_check(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            return False
