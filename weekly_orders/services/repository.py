"""
Order Repository

All SQL touching menus, order rows and summaries goes through this class.
SQLAlchemy failures are re-raised as StorageReadError / StorageWriteError so
callers can decide between serving a cached fallback and surfacing the
error.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from weekly_orders.core.errors import StorageReadError, StorageWriteError
from weekly_orders.core.timeutil import utcnow
from weekly_orders.models import MenuOrder, OrderSummary, WeeklyMenu

logger = logging.getLogger(__name__)


class OrderRepository:
    """Data access for one database session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _read(self, statement, what: str):
        try:
            return await self.session.execute(statement)
        except SQLAlchemyError as e:
            logger.error(f"Database read failed ({what}): {e}")
            raise StorageReadError(f"Could not read {what}", detail=str(e))

    async def _commit(self, what: str) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Database write failed ({what}): {e}")
            raise StorageWriteError(f"Could not save {what}", detail=str(e))

    # =========================================================================
    # MENUS
    # =========================================================================

    async def latest_menu(self) -> Optional[WeeklyMenu]:
        """The most recently updated menu, whatever its week."""
        result = await self._read(
            select(WeeklyMenu).order_by(WeeklyMenu.updated_at.desc(), WeeklyMenu.id.desc()).limit(1),
            "latest menu",
        )
        return result.scalar_one_or_none()

    async def add_menu(self, menu_data: dict[str, list[str]], week_start: str) -> WeeklyMenu:
        menu = WeeklyMenu(menu_data=menu_data, week_start=week_start, updated_at=utcnow())
        self.session.add(menu)
        await self._commit("menu")
        await self.session.refresh(menu)
        logger.info(f"Menu #{menu.id} saved for week {week_start}")
        return menu

    # =========================================================================
    # ORDER ROWS
    # =========================================================================

    async def list_orders(self, week_start: str, user_name: Optional[str] = None) -> list[MenuOrder]:
        query = select(MenuOrder).where(MenuOrder.week_start == week_start)
        if user_name is not None:
            query = query.where(MenuOrder.user_name == user_name)
        result = await self._read(query.order_by(MenuOrder.id), "orders")
        return list(result.scalars().all())

    async def get_order(self, week_start: str, day: str, option: str, user_name: str) -> Optional[MenuOrder]:
        result = await self._read(
            select(MenuOrder).where(
                MenuOrder.week_start == week_start,
                MenuOrder.day == day,
                MenuOrder.option == option,
                MenuOrder.user_name == user_name,
            ).execution_options(populate_existing=True),
            "order",
        )
        return result.scalar_one_or_none()

    async def day_comments(self, week_start: str, day: str, user_name: str) -> list[str]:
        """Comment list shared by the user's rows on ``day`` (empty if none)."""
        result = await self._read(
            select(MenuOrder.comments)
            .where(
                MenuOrder.week_start == week_start,
                MenuOrder.day == day,
                MenuOrder.user_name == user_name,
            )
            .order_by(MenuOrder.updated_at.desc())
            .limit(1),
            "comments",
        )
        comments = result.scalar_one_or_none()
        return list(comments or [])

    async def adjust_count(
        self,
        week_start: str,
        day: str,
        option: str,
        user_name: str,
        delta: int,
    ) -> tuple[Optional[MenuOrder], bool]:
        """
        Add ``delta`` to a counter, clamping at zero.

        The update is a single SQL statement so concurrent increments of the
        same row are not lost. A missing row is created for positive deltas
        (inheriting the user's comments for that day); a negative delta on a
        missing row is a no-op.

        Returns:
            (row, created) where row is None for a no-op
        """
        now = utcnow()
        new_count = MenuOrder.count + delta
        statement = (
            update(MenuOrder)
            .where(
                MenuOrder.week_start == week_start,
                MenuOrder.day == day,
                MenuOrder.option == option,
                MenuOrder.user_name == user_name,
            )
            .values(count=case((new_count < 0, 0), else_=new_count), updated_at=now)
            .execution_options(synchronize_session=False)
        )

        try:
            result = await self.session.execute(statement)
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Counter update failed: {e}")
            raise StorageWriteError("Could not update the counter", detail=str(e))

        if result.rowcount:
            await self._commit("counter")
            return await self.get_order(week_start, day, option, user_name), False

        if delta <= 0:
            return None, False

        comments = await self.day_comments(week_start, day, user_name)
        row = MenuOrder(
            week_start=week_start,
            day=day,
            option=option,
            user_name=user_name,
            count=delta,
            comments=comments,
            updated_at=now,
        )
        self.session.add(row)
        try:
            await self.session.commit()
        except IntegrityError:
            # Another request created the row first
            await self.session.rollback()
            logger.debug(f"Row {week_start}/{day}/{option}/{user_name} created concurrently, retrying")
            return await self.adjust_count(week_start, day, option, user_name, delta)
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Counter insert failed: {e}")
            raise StorageWriteError("Could not create the counter", detail=str(e))

        await self.session.refresh(row)
        return row, True

    async def set_day_comments(self, week_start: str, day: str, user_name: str, comments: list[str]) -> int:
        """Rewrite the comment list on every row of the user for ``day``."""
        try:
            result = await self.session.execute(
                update(MenuOrder)
                .where(
                    MenuOrder.week_start == week_start,
                    MenuOrder.day == day,
                    MenuOrder.user_name == user_name,
                )
                .values(comments=list(comments), updated_at=utcnow())
            )
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise StorageWriteError("Could not save comments", detail=str(e))
        await self._commit("comments")
        return result.rowcount or 0

    async def clear_week_comments(self, week_start: str) -> int:
        """Empty the comment lists of every row of the week."""
        try:
            result = await self.session.execute(
                update(MenuOrder)
                .where(MenuOrder.week_start == week_start)
                .values(comments=[], updated_at=utcnow())
            )
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise StorageWriteError("Could not clear comments", detail=str(e))
        await self._commit("comments")
        return result.rowcount or 0

    async def delete_week_orders(self, week_start: str) -> int:
        try:
            result = await self.session.execute(
                delete(MenuOrder).where(MenuOrder.week_start == week_start)
            )
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise StorageWriteError("Could not delete orders", detail=str(e))
        await self._commit("order deletion")
        logger.info(f"Deleted {result.rowcount} order rows of week {week_start}")
        return result.rowcount or 0

    async def count_orders(self, week_start: str) -> int:
        result = await self._read(
            select(func.count(MenuOrder.id)).where(MenuOrder.week_start == week_start),
            "order count",
        )
        return result.scalar() or 0

    async def list_weeks(self) -> list[dict[str, Any]]:
        """Weeks that have order rows, newest first, with their row counts."""
        result = await self._read(
            select(MenuOrder.week_start, func.count(MenuOrder.id))
            .group_by(MenuOrder.week_start)
            .order_by(MenuOrder.week_start.desc()),
            "weeks",
        )
        return [{"week_start": week, "records": count} for week, count in result.all()]

    # =========================================================================
    # SUMMARIES
    # =========================================================================

    async def get_summary(self, week_start: str, author: str) -> Optional[OrderSummary]:
        result = await self._read(
            select(OrderSummary).where(
                OrderSummary.week_start == week_start,
                OrderSummary.user_name == author,
            ),
            "summary",
        )
        return result.scalar_one_or_none()

    async def save_summary(
        self,
        week_start: str,
        author: str,
        summary: dict[str, Any],
        updated_by: Optional[str],
        updated_at: Optional[datetime] = None,
    ) -> OrderSummary:
        """Upsert the summary row; last writer wins."""
        updated_at = updated_at or utcnow()
        row = await self.get_summary(week_start, author)
        if row is None:
            row = OrderSummary(week_start=week_start, user_name=author)
            self.session.add(row)
        row.summary = summary
        row.updated_by = updated_by
        row.updated_at = updated_at

        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            logger.debug(f"Summary {week_start}/{author} inserted concurrently, overwriting")
            return await self.save_summary(week_start, author, summary, updated_by, updated_at)
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Summary write failed: {e}")
            raise StorageWriteError("Could not save the summary", detail=str(e))
        return row

    async def delete_summary(self, week_start: str, author: str) -> int:
        try:
            result = await self.session.execute(
                delete(OrderSummary).where(
                    OrderSummary.week_start == week_start,
                    OrderSummary.user_name == author,
                )
            )
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise StorageWriteError("Could not delete the summary", detail=str(e))
        await self._commit("summary deletion")
        return result.rowcount or 0
