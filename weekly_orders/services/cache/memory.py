"""
In-Memory Snapshot Cache

Process-local cache for development and tests. Values are deep-copied on
the way in and out so callers cannot mutate the stored snapshot.
"""

import copy
import logging
from typing import Any, Optional

from weekly_orders.core.timeutil import utcnow
from weekly_orders.services.cache.base import BaseSnapshotCache, Snapshot

logger = logging.getLogger(__name__)


class MemorySnapshotCache(BaseSnapshotCache):
    """Dictionary-backed snapshot cache."""

    def __init__(self):
        self._entries: dict[str, Snapshot] = {}
        logger.info("MemorySnapshotCache initialized")

    @property
    def provider_name(self) -> str:
        return "memory"

    async def get(self, key: str, max_age: Optional[float] = None) -> Optional[Snapshot]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        snapshot = Snapshot(value=copy.deepcopy(entry.value), stored_at=entry.stored_at)
        return self._flag_stale(snapshot, max_age)

    async def set(self, key: str, value: Any) -> Snapshot:
        snapshot = Snapshot(value=copy.deepcopy(value), stored_at=utcnow())
        self._entries[key] = snapshot
        logger.debug(f"Snapshot stored: {key}")
        return snapshot

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def health_check(self) -> bool:
        """Memory cache is always healthy."""
        return True

    def clear(self) -> None:
        self._entries.clear()
