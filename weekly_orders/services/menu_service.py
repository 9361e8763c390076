"""
Menu Service

Loads and publishes the weekly menu. The latest stored menu is
authoritative whatever week it was uploaded for; the default menu is used
until the first upload.

Every successful load or upload passes through the Change-Reset Decider,
and a real change wipes the current week's order rows and general summary.
Each upload is announced as a MENU event; attached services of the other
processes switch to it without reloading.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping, Optional

from weekly_orders.core.errors import InvalidMenuError, StorageReadError, StorageWriteError
from weekly_orders.core.timeutil import as_utc, parse_timestamp, utcnow
from weekly_orders.core.weeks import WeekKeyResolver
from weekly_orders.services.aggregator import empty_summary
from weekly_orders.services.cache import MENU_SNAPSHOT, BaseSnapshotCache
from weekly_orders.services.feed import BaseChangeFeed, ChangeEvent, EventKind
from weekly_orders.services.menu_changes import ChangeResetDecider, ResetDecision
from weekly_orders.services.menu_normalizer import DEFAULT_MENU, normalize_menu
from weekly_orders.services.repository import OrderRepository

logger = logging.getLogger(__name__)


@dataclass
class MenuState:
    """
    A loaded menu and where it came from.

    Attributes:
        menu: Canonical menu
        week_start: Active week key at load time
        source: "database", "cache" or "default"
        menu_id: Row id of the stored menu
        menu_week: Week the stored menu was uploaded for
        updated_at: When the stored menu was saved
        degraded: True when served from the cache after a read failure
        reset: Decider outcome when the menu was observed
    """
    menu: dict[str, list[str]]
    week_start: str
    source: str
    menu_id: Optional[int] = None
    menu_week: Optional[str] = None
    updated_at: Optional[datetime] = None
    degraded: bool = False
    reset: Optional[ResetDecision] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "menu": self.menu,
            "week_start": self.week_start,
            "source": self.source,
            "menu_id": self.menu_id,
            "menu_week": self.menu_week,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "degraded": self.degraded,
            "reset": self.reset.to_dict() if self.reset else None,
        }


class MenuService:
    """Loads, publishes and remembers the current menu."""

    def __init__(
        self,
        session_factory: Callable[[], Any],
        cache: BaseSnapshotCache,
        feed: BaseChangeFeed,
        resolver: WeekKeyResolver,
        summary_author: str = "general",
        snapshot_max_age: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.cache = cache
        self.feed = feed
        self.resolver = resolver
        self.summary_author = summary_author
        self.snapshot_max_age = snapshot_max_age
        self.decider = ChangeResetDecider(cache)
        self._current: Optional[dict[str, list[str]]] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    async def current_menu(self) -> dict[str, list[str]]:
        """Menu in effect for this process, loading it once if needed."""
        if self._current is None:
            try:
                await self.load()
            except StorageReadError as e:
                logger.warning(f"Menu unavailable, using the default menu: {e.message}")
                return {day: list(options) for day, options in DEFAULT_MENU.items()}
        return self._current

    async def load(self) -> MenuState:
        """
        Load the latest stored menu.

        Raises:
            StorageReadError: database and snapshot cache both unavailable
        """
        week_start = self.resolver.resolve()

        try:
            async with self.session_factory() as session:
                row = await OrderRepository(session).latest_menu()
        except StorageReadError:
            return await self._load_fallback(week_start)

        if row is None:
            menu = {day: list(options) for day, options in DEFAULT_MENU.items()}
            self._current = menu
            return MenuState(menu=menu, week_start=week_start, source="default")

        try:
            menu = normalize_menu(row.menu_data or {})
        except InvalidMenuError:
            logger.warning(f"Stored menu #{row.id} is unusable, keeping the default menu")
            menu = {day: list(options) for day, options in DEFAULT_MENU.items()}
            self._current = menu
            return MenuState(menu=menu, week_start=week_start, source="default")

        state = MenuState(
            menu=menu,
            week_start=week_start,
            source="database",
            menu_id=row.id,
            menu_week=row.week_start,
            updated_at=as_utc(row.updated_at),
        )
        await self._remember(state)

        previous = self._current
        self._current = menu
        state.reset = await self._observe(menu, week_start, previous)
        return state

    async def _load_fallback(self, week_start: str) -> MenuState:
        try:
            snapshot = await self.cache.get(MENU_SNAPSHOT, max_age=self.snapshot_max_age)
        except StorageReadError:
            snapshot = None

        if snapshot is None:
            raise StorageReadError("Menu unavailable and no cached copy")

        value = snapshot.value
        state = "stale " if snapshot.stale else ""
        logger.warning(f"Serving {state}cached menu #{value.get('menu_id')} (stored {snapshot.stored_at})")
        self._current = value["menu"]
        return MenuState(
            menu=value["menu"],
            week_start=week_start,
            source="cache",
            menu_id=value.get("menu_id"),
            menu_week=value.get("menu_week"),
            updated_at=parse_timestamp(value.get("updated_at")),
            degraded=True,
        )

    async def publish(self, raw: Mapping[str, Any]) -> MenuState:
        """
        Normalize and store a new menu for the active week.

        Raises:
            InvalidMenuError: nothing usable in ``raw``
            StorageWriteError: the menu or the reset could not be saved
        """
        menu = normalize_menu(raw)
        week_start = self.resolver.resolve()

        async with self.session_factory() as session:
            row = await OrderRepository(session).add_menu(menu, week_start)

        state = MenuState(
            menu=menu,
            week_start=week_start,
            source="database",
            menu_id=row.id,
            menu_week=row.week_start,
            updated_at=as_utc(row.updated_at),
        )
        await self._remember(state)
        self._current = menu
        state.reset = await self._observe(menu, week_start)
        await self._announce(state)
        return state

    # =========================================================================
    # CHANGE FEED
    # =========================================================================

    def attach(self) -> None:
        """Follow menus published by other processes."""
        if self._unsubscribe is None:
            self._unsubscribe = self.feed.subscribe(self.on_event)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def on_event(self, event: ChangeEvent) -> None:
        """Replace the in-memory menu with one published elsewhere."""
        if event.kind != EventKind.MENU or event.is_local:
            return
        try:
            menu = normalize_menu(event.payload.get("menu") or {})
        except InvalidMenuError:
            logger.warning(f"Ignoring unusable menu #{event.payload.get('menu_id')} from the change feed")
            return
        self._current = menu
        logger.info(f"Menu #{event.payload.get('menu_id')} published by another process is now current")

    async def _announce(self, state: MenuState) -> None:
        event = ChangeEvent(
            kind=EventKind.MENU,
            week_start=state.week_start,
            payload={"menu": state.menu, "menu_id": state.menu_id},
        )
        try:
            await self.feed.publish(event)
        except StorageWriteError as e:
            # Other processes pick the menu up on their next load
            logger.warning(f"Menu #{state.menu_id} not announced: {e.message}")

    async def _remember(self, state: MenuState) -> None:
        try:
            await self.cache.set(MENU_SNAPSHOT, {
                "menu": state.menu,
                "menu_id": state.menu_id,
                "menu_week": state.menu_week,
                "updated_at": state.updated_at.isoformat() if state.updated_at else None,
            })
        except StorageWriteError as e:
            logger.warning(f"Menu snapshot not cached: {e.message}")

    async def _observe(
        self,
        menu: dict[str, list[str]],
        week_start: str,
        previous: Optional[dict[str, list[str]]] = None,
    ) -> ResetDecision:
        decision = await self.decider.observe(menu, previous)
        if decision.should_reset:
            await self._reset(menu, week_start, decision)
        return decision

    async def _reset(self, menu: dict[str, list[str]], week_start: str, decision: ResetDecision) -> None:
        """Delete the week's rows and summary, then announce the zeroed summary."""
        try:
            async with self.session_factory() as session:
                repository = OrderRepository(session)
                deleted = await repository.delete_week_orders(week_start)
                await repository.delete_summary(week_start, self.summary_author)
        except StorageWriteError:
            # Let the next load retry the reset
            await self.decider.restore(decision)
            raise

        logger.info(f"Week {week_start} reset after a menu change ({deleted} rows removed)")

        summary = empty_summary(week_start, menu)
        summary.updated_at = utcnow()
        summary.updated_by = self.summary_author
        event = ChangeEvent(
            kind=EventKind.MENU_RESET,
            week_start=week_start,
            payload={"notice": decision.notice, "summary": summary.to_dict(), "deleted": deleted},
        )
        try:
            await self.feed.publish(event)
        except StorageWriteError as e:
            logger.warning(f"Menu reset notice not delivered: {e.message}")
