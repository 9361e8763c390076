"""
Change Feed Abstract Base Class

Push channel notifying subscribers of row-level changes to order records,
of summaries computed by other writers, of newly published menus and of
menu resets.

Implementations:
    - InMemoryChangeFeed: in-process fan-out (development, tests)
    - RedisChangeFeed: Redis pub/sub shared by all API processes
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from weekly_orders.core.timeutil import parse_timestamp, utcnow

logger = logging.getLogger(__name__)

# Identifies this process as the origin of the events it publishes
PROCESS_ORIGIN = uuid.uuid4().hex[:12]


class EventKind(str, Enum):
    """What changed."""
    RECORD = "record"
    SUMMARY = "summary"
    MENU_RESET = "menu_reset"
    MENU = "menu"


class EventAction(str, Enum):
    """Row-level operation behind a RECORD event."""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class ChangeEvent:
    """
    A single change notification.

    Attributes:
        kind: Record change, pushed summary or menu reset
        week_start: Week the change belongs to
        payload: JSON-compatible body (record dict, summary dict or notice)
        action: Row operation for RECORD events
        origin: Process that published the event
        sent_at: Publication time
    """
    kind: EventKind
    week_start: str
    payload: dict[str, Any] = field(default_factory=dict)
    action: Optional[EventAction] = None
    origin: str = PROCESS_ORIGIN
    sent_at: Any = field(default_factory=utcnow)

    @property
    def is_local(self) -> bool:
        return self.origin == PROCESS_ORIGIN

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "week_start": self.week_start,
            "payload": self.payload,
            "action": self.action.value if self.action else None,
            "origin": self.origin,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChangeEvent":
        action = data.get("action")
        return cls(
            kind=EventKind(data["kind"]),
            week_start=data["week_start"],
            payload=data.get("payload") or {},
            action=EventAction(action) if action else None,
            origin=data.get("origin") or "unknown",
            sent_at=parse_timestamp(data.get("sent_at")),
        )


EventHandler = Callable[[ChangeEvent], Awaitable[None]]


class BaseChangeFeed(ABC):
    """Abstract base class for change feeds."""

    def __init__(self):
        self._handlers: list[EventHandler] = []

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    @abstractmethod
    async def publish(self, event: ChangeEvent) -> None:
        """
        Publish an event to every subscriber.

        Raises:
            StorageWriteError: when the channel cannot be reached
        """
        pass

    async def start(self) -> None:
        """Begin receiving events (no-op for in-process feeds)."""

    async def stop(self) -> None:
        """Stop receiving events."""

    @abstractmethod
    async def health_check(self) -> bool:
        """Check channel connectivity."""
        pass

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        """
        Register an async handler.

        Returns:
            Callable removing the handler again
        """
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    async def _dispatch(self, event: ChangeEvent) -> None:
        """Deliver to every handler; one failing handler does not stop the rest."""
        for handler in list(self._handlers):
            try:
                await handler(event)
            except Exception as e:
                logger.exception(f"Change feed handler failed for {event.kind.value} event: {e}")
