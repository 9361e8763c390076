"""
Order Service

User-facing order operations: counters, day comments and the per-user
view. Every successful write is announced on the change feed so the
reconcilers of all processes recompute the weekly summary.
"""

import logging
from typing import Any, Callable, Optional

from weekly_orders.core.errors import (
    InvalidCommentError,
    InvalidUserError,
    MissingOrderError,
    StorageWriteError,
    UnknownMenuOptionError,
)
from weekly_orders.core.weeks import WeekKeyResolver
from weekly_orders.services.aggregator import (
    AggregateSummary,
    OrderRecord,
    strip_annotation,
    user_summary,
)
from weekly_orders.services.feed import BaseChangeFeed, ChangeEvent, EventAction, EventKind
from weekly_orders.services.menu_normalizer import canonical_day, menu_options
from weekly_orders.services.menu_service import MenuService
from weekly_orders.services.repository import OrderRepository

logger = logging.getLogger(__name__)

MAX_COMMENT_LENGTH = 200


class OrderService:
    """Counter and comment operations for one deployment."""

    def __init__(
        self,
        session_factory: Callable[[], Any],
        feed: BaseChangeFeed,
        menu_service: MenuService,
        resolver: WeekKeyResolver,
    ):
        self.session_factory = session_factory
        self.feed = feed
        self.menu_service = menu_service
        self.resolver = resolver

    # =========================================================================
    # VALIDATION
    # =========================================================================

    @staticmethod
    def _user(user_name: Optional[str]) -> str:
        name = (user_name or "").strip()
        if not name:
            raise InvalidUserError("Selecciona un usuario primero")
        return name

    @staticmethod
    def _day(day: str) -> str:
        canonical = canonical_day(day or "")
        if canonical is None:
            raise UnknownMenuOptionError(f"Unknown day: {day!r}")
        return canonical

    async def _option(self, day: str, option: str) -> str:
        """New rows must name an option of the current menu."""
        menu = await self.menu_service.current_menu()
        option = (option or "").strip()
        if option not in menu_options(menu, day):
            raise UnknownMenuOptionError(
                f"'{option}' is not on the {day} menu",
                detail=f"Options: {menu_options(menu, day)}",
            )
        return option

    def _week(self, week_start: Optional[str]) -> str:
        return week_start or self.resolver.resolve()

    # =========================================================================
    # COUNTERS
    # =========================================================================

    async def increment(
        self,
        user_name: str,
        day: str,
        option: str,
        amount: int = 1,
        week_start: Optional[str] = None,
    ) -> OrderRecord:
        """
        Add portions of an option for the user.

        Raises:
            InvalidUserError, UnknownMenuOptionError, StorageWriteError
        """
        user_name = self._user(user_name)
        day = self._day(day)
        option = await self._option(day, option)
        week_start = self._week(week_start)

        async with self.session_factory() as session:
            row, created = await OrderRepository(session).adjust_count(
                week_start, day, option, user_name, max(1, amount)
            )

        record = OrderRecord.from_row(row)
        logger.info(f"{user_name} +{amount} {day}/{option} -> {record.count}")
        await self._announce(record, EventAction.INSERT if created else EventAction.UPDATE)
        return record

    async def decrement(
        self,
        user_name: str,
        day: str,
        option: str,
        amount: int = 1,
        week_start: Optional[str] = None,
    ) -> Optional[OrderRecord]:
        """
        Remove portions, never below zero.

        Rows of options retired from the menu can still be decremented.
        Returns None when the user had no row for that option.
        """
        user_name = self._user(user_name)
        day = self._day(day)
        week_start = self._week(week_start)

        async with self.session_factory() as session:
            row, _ = await OrderRepository(session).adjust_count(
                week_start, day, (option or "").strip(), user_name, -max(1, amount)
            )

        if row is None:
            logger.debug(f"{user_name} -{amount} {day}/{option}: nothing to decrement")
            return None

        record = OrderRecord.from_row(row)
        logger.info(f"{user_name} -{amount} {day}/{option} -> {record.count}")
        await self._announce(record, EventAction.UPDATE)
        return record

    # =========================================================================
    # COMMENTS
    # =========================================================================

    async def add_comment(
        self,
        user_name: str,
        day: str,
        comment: str,
        week_start: Optional[str] = None,
    ) -> list[str]:
        """
        Append a comment to the user's rows for ``day``.

        A trailing ``" (name)"`` typed by the user is dropped; the author is
        added when the summary is built.

        Raises:
            InvalidCommentError: empty or too long
            MissingOrderError: the user has nothing ordered that day
        """
        user_name = self._user(user_name)
        day = self._day(day)
        week_start = self._week(week_start)

        text = strip_annotation(comment or "")
        if not text:
            raise InvalidCommentError("El comentario está vacío")
        if len(text) > MAX_COMMENT_LENGTH:
            raise InvalidCommentError(f"Comments are limited to {MAX_COMMENT_LENGTH} characters")

        return await self._rewrite_comments(
            user_name, day, week_start, lambda comments: comments + [text]
        )

    async def remove_comment(
        self,
        user_name: str,
        day: str,
        index: int,
        week_start: Optional[str] = None,
    ) -> list[str]:
        """Remove the comment at ``index`` of the user's list for ``day``."""
        user_name = self._user(user_name)
        day = self._day(day)
        week_start = self._week(week_start)

        def drop(comments: list[str]) -> list[str]:
            if index < 0 or index >= len(comments):
                raise InvalidCommentError(f"No comment #{index} on {day}")
            return comments[:index] + comments[index + 1:]

        return await self._rewrite_comments(user_name, day, week_start, drop)

    async def _rewrite_comments(
        self,
        user_name: str,
        day: str,
        week_start: str,
        change: Callable[[list[str]], list[str]],
    ) -> list[str]:
        async with self.session_factory() as session:
            repository = OrderRepository(session)
            rows = [r for r in await repository.list_orders(week_start, user_name) if r.day == day]
            if not rows:
                raise MissingOrderError(f"{user_name} has no order on {day}")

            latest = max(rows, key=lambda r: (r.updated_at, r.id))
            comments = change(list(latest.comments or []))
            await repository.set_day_comments(week_start, day, user_name, comments)
            row = await repository.get_order(week_start, day, latest.option, user_name)

        record = OrderRecord.from_row(row)
        await self._announce(record, EventAction.UPDATE)
        return comments

    async def clear_comments(self, week_start: Optional[str] = None) -> int:
        """Empty every comment of the week; returns the number of rows touched."""
        week_start = self._week(week_start)
        async with self.session_factory() as session:
            cleared = await OrderRepository(session).clear_week_comments(week_start)

        logger.info(f"Cleared comments on {cleared} rows of {week_start}")
        if cleared:
            await self._announce_week(week_start)
        return cleared

    # =========================================================================
    # READS
    # =========================================================================

    async def my_orders(self, user_name: str, week_start: Optional[str] = None) -> AggregateSummary:
        user_name = self._user(user_name)
        week_start = self._week(week_start)
        async with self.session_factory() as session:
            rows = await OrderRepository(session).list_orders(week_start, user_name)
        return user_summary(rows, user_name, week_start)

    async def week_records(self, week_start: Optional[str] = None) -> list[OrderRecord]:
        week_start = self._week(week_start)
        async with self.session_factory() as session:
            rows = await OrderRepository(session).list_orders(week_start)
        return [OrderRecord.from_row(row) for row in rows]

    # =========================================================================
    # CHANGE FEED
    # =========================================================================

    async def _announce(self, record: OrderRecord, action: EventAction) -> None:
        event = ChangeEvent(
            kind=EventKind.RECORD,
            week_start=record.week_start,
            payload=record.to_dict(),
            action=action,
        )
        await self._publish(event)

    async def _announce_week(self, week_start: str) -> None:
        event = ChangeEvent(
            kind=EventKind.RECORD,
            week_start=week_start,
            payload={"week_start": week_start, "bulk": True},
            action=EventAction.UPDATE,
        )
        await self._publish(event)

    async def _publish(self, event: ChangeEvent) -> None:
        # The row is already saved; the periodic refresh catches up
        try:
            await self.feed.publish(event)
        except StorageWriteError as e:
            logger.warning(f"Change event not delivered: {e.message}")
