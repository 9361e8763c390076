"""
Summary Cache Reconciler

Keeps this process's copy of the weekly aggregate eventually consistent
with the order rows written by every user and every process.

One reconciler per week key moves through three states:

    LOADING  nothing cached yet; load the persisted general summary, or
             aggregate all rows and persist the result when there is none
    LIVE     holding a summary; a record change triggers a full
             recomputation, a summary pushed by another process replaces
             the cached one unless it is older
    STALE    an update is pending (a failed recomputation, a degraded
             load); the periodic tick forces a full recomputation

Recomputations may overlap. Each one takes a sequence number from a
SequenceGuard and its result is applied only if no newer one was issued
meanwhile.
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional

from weekly_orders.core.errors import StorageError, StorageReadError, StorageWriteError
from weekly_orders.core.timeutil import as_utc, utcnow
from weekly_orders.services.aggregator import AggregateSummary, aggregate_orders
from weekly_orders.services.cache import BaseSnapshotCache, summary_key
from weekly_orders.services.feed import BaseChangeFeed, ChangeEvent, EventKind
from weekly_orders.services.repository import OrderRepository

logger = logging.getLogger(__name__)

MenuProvider = Callable[[], Awaitable[Mapping[str, list[str]]]]
Listener = Callable[[dict[str, Any]], Awaitable[None]]


class ReconcilerState(str, Enum):
    LOADING = "loading"
    LIVE = "live"
    STALE = "stale"


class SequenceGuard:
    """
    Monotonic sequence numbers per field.

    ``issue`` is called when an asynchronous update starts; its result is
    applied only while ``is_latest`` still holds for that number.
    """

    def __init__(self):
        self._issued: dict[str, int] = {}

    def issue(self, name: str) -> int:
        self._issued[name] = self._issued.get(name, 0) + 1
        return self._issued[name]

    def is_latest(self, name: str, sequence: int) -> bool:
        return self._issued.get(name, 0) == sequence

    def current(self, name: str) -> int:
        return self._issued.get(name, 0)


@dataclass
class ReconcilerStatus:
    """Snapshot of a reconciler for diagnostics."""
    week_start: str
    state: ReconcilerState
    pending: bool
    degraded: bool
    last_refresh: Optional[datetime]
    sequence: int
    listeners: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "week_start": self.week_start,
            "state": self.state.value,
            "pending": self.pending,
            "degraded": self.degraded,
            "last_refresh": self.last_refresh.isoformat() if self.last_refresh else None,
            "sequence": self.sequence,
            "listeners": self.listeners,
        }


class SummaryReconciler:
    """Cached aggregate of one week."""

    FIELD = "summary"

    def __init__(
        self,
        week_start: str,
        session_factory: Callable[[], Any],
        cache: BaseSnapshotCache,
        feed: BaseChangeFeed,
        menu_provider: MenuProvider,
        refresh_interval: float = 60.0,
        author: str = "general",
        snapshot_max_age: Optional[float] = None,
    ):
        self.week_start = week_start
        self.session_factory = session_factory
        self.cache = cache
        self.feed = feed
        self.menu_provider = menu_provider
        self.refresh_interval = refresh_interval
        self.author = author
        self.snapshot_max_age = snapshot_max_age

        self.state = ReconcilerState.LOADING
        self.summary: Optional[AggregateSummary] = None
        self.pending = False
        self.degraded = False
        self.last_refresh: Optional[datetime] = None
        self.guard = SequenceGuard()
        self._listeners: list[Listener] = []
        self._load_lock = asyncio.Lock()

    # =========================================================================
    # READ SIDE
    # =========================================================================

    async def get(self) -> AggregateSummary:
        """Current summary, loading it first if needed."""
        if self.summary is None:
            await self.load()
        return self.summary

    def status(self) -> ReconcilerStatus:
        return ReconcilerStatus(
            week_start=self.week_start,
            state=self.state,
            pending=self.pending,
            degraded=self.degraded,
            last_refresh=self.last_refresh,
            sequence=self.guard.current(self.FIELD),
            listeners=len(self._listeners),
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a coroutine called with every applied update."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # =========================================================================
    # STATE TRANSITIONS
    # =========================================================================

    async def load(self) -> AggregateSummary:
        """
        LOADING: fetch the persisted general summary, or build it.

        On a storage read failure the last summary stored in the snapshot
        cache is served, marked degraded, and a refresh is left pending.

        Raises:
            StorageReadError: when neither the database nor the cache answer
        """
        async with self._load_lock:
            if self.summary is not None and self.state != ReconcilerState.LOADING:
                return self.summary

            sequence = self.guard.issue(self.FIELD)
            try:
                async with self.session_factory() as session:
                    row = await OrderRepository(session).get_summary(self.week_start, self.author)
            except StorageReadError:
                return await self._load_fallback()

            if row is not None and self.guard.is_latest(self.FIELD, sequence):
                summary = AggregateSummary.from_dict(row.summary or {})
                summary.week_start = self.week_start
                summary.updated_at = as_utc(row.updated_at)
                summary.updated_by = row.updated_by
                await self._apply(summary, reason="load")
                logger.info(f"Summary {self.week_start} loaded from storage")
                return summary

        logger.info(f"No stored summary for {self.week_start}, aggregating")
        return await self.recompute(persist=True, reason="initial")

    async def _load_fallback(self) -> AggregateSummary:
        try:
            snapshot = await self.cache.get(summary_key(self.week_start), max_age=self.snapshot_max_age)
        except StorageReadError:
            snapshot = None

        if snapshot is None:
            raise StorageReadError(f"Summary of {self.week_start} unavailable")

        state = "stale " if snapshot.stale else ""
        logger.warning(f"Serving {state}cached summary of {self.week_start} (stored {snapshot.stored_at})")
        self.summary = AggregateSummary.from_dict(snapshot.value)
        self.degraded = True
        self.pending = True
        self.state = ReconcilerState.STALE
        return self.summary

    async def recompute(
        self,
        persist: bool = True,
        updated_by: Optional[str] = None,
        reason: str = "",
        menu: Optional[Mapping[str, list[str]]] = None,
    ) -> AggregateSummary:
        """
        Full aggregation over every order row of the week.

        Args:
            persist: Write the result as the general summary and push it to
                other processes
            updated_by: Author recorded on the persisted summary
            reason: Free text for the logs
            menu: Menu to aggregate against instead of the provider's

        Raises:
            StorageReadError / StorageWriteError from the repository
        """
        sequence = self.guard.issue(self.FIELD)
        if menu is None:
            menu = await self.menu_provider()

        async with self.session_factory() as session:
            repository = OrderRepository(session)
            rows = await repository.list_orders(self.week_start)
            summary = aggregate_orders(rows, menu, self.week_start)
            summary.updated_at = utcnow()
            summary.updated_by = updated_by or self.author

            if not self.guard.is_latest(self.FIELD, sequence):
                logger.debug(f"Recomputation #{sequence} of {self.week_start} superseded")
                return self.summary or summary

            await self._apply(summary, reason=reason or "recompute")
            self.pending = False
            self.degraded = False

            if persist:
                try:
                    await repository.save_summary(
                        self.week_start,
                        self.author,
                        summary.to_dict(),
                        summary.updated_by,
                        summary.updated_at,
                    )
                except StorageWriteError:
                    self.pending = True
                    self.state = ReconcilerState.STALE
                    raise

        if persist:
            await self._push(summary)
        return summary

    async def on_event(self, event: ChangeEvent) -> None:
        """Change feed handler."""
        if event.week_start != self.week_start:
            return

        if event.kind == EventKind.RECORD:
            self.pending = True
            try:
                # Only the process that wrote the row persists the result
                action = event.action.value if event.action else "change"
                await self.recompute(persist=event.is_local, reason=f"record {action}")
            except StorageError as e:
                self.state = ReconcilerState.STALE
                logger.warning(f"Recomputation of {self.week_start} failed, will retry: {e.message}")

        elif event.kind == EventKind.SUMMARY:
            if event.is_local:
                return
            await self.apply_push(AggregateSummary.from_dict(event.payload))

        elif event.kind == EventKind.MENU_RESET:
            summary = AggregateSummary.from_dict(event.payload.get("summary") or {})
            summary.week_start = self.week_start
            # Results of recomputations started before the reset are void
            self.guard.issue(self.FIELD)
            self.pending = False
            await self._apply(summary, reason="menu reset")
            await self._notify({"type": "menu_reset", "notice": event.payload.get("notice")})

    async def on_menu(self, event: ChangeEvent) -> None:
        """Re-aggregate against a newly published menu, whatever its week."""
        if self.summary is None:
            # Not loaded yet: the first load reads the new menu anyway
            return

        self.pending = True
        try:
            await self.recompute(
                persist=event.is_local,
                reason=f"menu #{event.payload.get('menu_id')}",
                menu=event.payload.get("menu") or None,
            )
        except StorageError as e:
            self.state = ReconcilerState.STALE
            logger.warning(f"Recomputation of {self.week_start} after a menu change failed: {e.message}")

    async def apply_push(self, summary: AggregateSummary) -> bool:
        """
        Replace the cache with a summary computed elsewhere.

        Returns:
            False when the pushed summary is older than the cached one
        """
        current = self.summary
        if current is not None and current.updated_at and summary.updated_at:
            if summary.updated_at < current.updated_at:
                logger.debug(f"Ignoring older pushed summary for {self.week_start}")
                return False

        self.guard.issue(self.FIELD)
        summary.week_start = self.week_start
        await self._apply(summary, reason="push")
        return True

    async def tick(self, now: Optional[datetime] = None) -> bool:
        """
        STALE check run by the periodic timer.

        Returns:
            True when a forced recomputation ran
        """
        now = now or utcnow()
        if not self.pending:
            return False
        if self.last_refresh is not None:
            if (now - self.last_refresh).total_seconds() < self.refresh_interval:
                return False

        self.state = ReconcilerState.STALE
        try:
            await self.recompute(persist=True, reason="periodic refresh")
        except StorageError as e:
            logger.warning(f"Periodic refresh of {self.week_start} failed: {e.message}")
            return False
        return True

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _apply(self, summary: AggregateSummary, reason: str) -> None:
        self.summary = summary
        self.state = ReconcilerState.LIVE
        self.last_refresh = utcnow()
        logger.debug(f"Summary {self.week_start} applied ({reason}, total={summary.total})")

        try:
            await self.cache.set(summary_key(self.week_start), summary.to_dict())
        except StorageWriteError as e:
            logger.warning(f"Summary snapshot not cached: {e.message}")

        await self._notify({"type": "summary", "summary": summary.to_dict()})

    async def _push(self, summary: AggregateSummary) -> None:
        event = ChangeEvent(kind=EventKind.SUMMARY, week_start=self.week_start, payload=summary.to_dict())
        try:
            await self.feed.publish(event)
        except StorageWriteError as e:
            logger.warning(f"Summary push failed: {e.message}")

    async def _notify(self, message: dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                await listener(message)
            except Exception as e:
                logger.warning(f"Dropping summary listener after error: {e}")
                if listener in self._listeners:
                    self._listeners.remove(listener)


@dataclass
class ReconcilerRegistry:
    """
    Reconcilers by week key, wired to the change feed.

    Events for weeks that have no reconciler yet are ignored: a reconciler
    created later starts from storage anyway. A published menu concerns
    every week held. Beyond ``max_weeks`` the least recently used
    reconciler is dropped.
    """
    session_factory: Callable[[], Any]
    cache: BaseSnapshotCache
    feed: BaseChangeFeed
    menu_provider: MenuProvider
    refresh_interval: float = 60.0
    author: str = "general"
    snapshot_max_age: Optional[float] = None
    max_weeks: int = 8
    reconcilers: OrderedDict[str, SummaryReconciler] = field(default_factory=OrderedDict)
    _unsubscribe: Optional[Callable[[], None]] = None

    def get(self, week_start: str) -> SummaryReconciler:
        reconciler = self.reconcilers.get(week_start)
        if reconciler is None:
            reconciler = SummaryReconciler(
                week_start=week_start,
                session_factory=self.session_factory,
                cache=self.cache,
                feed=self.feed,
                menu_provider=self.menu_provider,
                refresh_interval=self.refresh_interval,
                author=self.author,
                snapshot_max_age=self.snapshot_max_age,
            )
            self.reconcilers[week_start] = reconciler
            self._prune()
        else:
            self.reconcilers.move_to_end(week_start)
        return reconciler

    def attach(self) -> None:
        """Start routing change feed events to the reconcilers."""
        if self._unsubscribe is None:
            self._unsubscribe = self.feed.subscribe(self.dispatch)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def dispatch(self, event: ChangeEvent) -> None:
        if event.kind == EventKind.MENU:
            for reconciler in list(self.reconcilers.values()):
                await reconciler.on_menu(event)
            return

        reconciler = self.reconcilers.get(event.week_start)
        if reconciler is not None:
            await reconciler.on_event(event)

    async def tick_all(self, now: Optional[datetime] = None) -> int:
        """Run the periodic check on every reconciler; returns refreshes run."""
        refreshed = 0
        for reconciler in list(self.reconcilers.values()):
            if await reconciler.tick(now):
                refreshed += 1
        return refreshed

    def statuses(self) -> list[dict[str, Any]]:
        return [r.status().to_dict() for r in self.reconcilers.values()]

    def _prune(self) -> None:
        # The entry just added sits at the end and is never the one dropped
        while len(self.reconcilers) > self.max_weeks:
            week_start, _ = self.reconcilers.popitem(last=False)
            logger.debug(f"Dropping reconciler of {week_start}")
