"""
Snapshot Cache Abstract Base Class

Holds the "last good" copies the service falls back to when the database
cannot be read: the latest menu, the menu fingerprint and the last applied
weekly summary. Every entry is stamped when stored so callers can judge
staleness.

Both implementations (in-memory for development, Redis for production)
return the same Snapshot structure.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from weekly_orders.core.timeutil import utcnow


# Well-known keys
MENU_SNAPSHOT = "menu:latest"
MENU_FINGERPRINT = "menu:fingerprint"


def summary_key(week_start: str) -> str:
    return f"summary:{week_start}"


@dataclass
class Snapshot:
    """
    A cached value and when it was stored.

    Attributes:
        value: JSON-compatible payload
        stored_at: Time the value was written
        stale: True when older than the max age the caller asked for
    """
    value: Any
    stored_at: datetime
    stale: bool = False

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or utcnow()
        return (now - self.stored_at).total_seconds()


class BaseSnapshotCache(ABC):
    """Abstract base class for snapshot caches."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    @abstractmethod
    async def get(self, key: str, max_age: Optional[float] = None) -> Optional[Snapshot]:
        """
        Read a snapshot.

        Args:
            key: Cache key
            max_age: Seconds after which the snapshot is flagged stale

        Returns:
            Snapshot or None when the key was never stored

        Raises:
            StorageReadError: when the backend cannot be reached
        """
        pass

    @abstractmethod
    async def set(self, key: str, value: Any) -> Snapshot:
        """
        Store a snapshot, replacing any previous value.

        Raises:
            StorageWriteError: when the backend cannot be reached
        """
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a snapshot if present."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check backend connectivity."""
        pass

    @staticmethod
    def _flag_stale(snapshot: Snapshot, max_age: Optional[float]) -> Snapshot:
        if max_age is not None and snapshot.age_seconds() > max_age:
            snapshot.stale = True
        return snapshot
