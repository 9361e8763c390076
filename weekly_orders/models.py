"""
SQLAlchemy Database Models

Three tables back the weekly ordering cycle:
- weekly_menus: uploaded menus, the latest updated row is authoritative
- menu_orders: one counter row per user, day and option of a week
- order_summaries: the shared "general" aggregate of a week
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON, UniqueConstraint
from sqlalchemy.sql import func
from weekly_orders.database import Base


class WeeklyMenu(Base):
    """
    Uploaded weekly menu.

    ``menu_data`` holds the normalized mapping of canonical day name to the
    ordered list of option labels.
    """
    __tablename__ = "weekly_menus"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    menu_data = Column(JSON, nullable=False)
    week_start = Column(String(10), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, index=True)

    def __repr__(self):
        return f"<WeeklyMenu #{self.id} - {self.week_start}>"


class MenuOrder(Base):
    """
    One user's counter for one menu option on one day of one week.

    All rows of the same user and day share the same ``comments`` list.
    """
    __tablename__ = "menu_orders"
    __table_args__ = (
        UniqueConstraint("week_start", "day", "option", "user_name", name="uq_menu_orders_key"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Composite key
    week_start = Column(String(10), nullable=False, index=True)
    day = Column(String(20), nullable=False)
    option = Column(String(255), nullable=False)
    user_name = Column(String(100), nullable=False, index=True)

    # Payload
    count = Column(Integer, nullable=False, default=0)
    comments = Column(JSON, nullable=False, default=list)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<MenuOrder {self.week_start} {self.day} {self.option!r} {self.user_name}={self.count}>"


class OrderSummary(Base):
    """
    Persisted aggregate of a week.

    Only the row whose ``user_name`` is the general sentinel is used; any
    writer may overwrite it.
    """
    __tablename__ = "order_summaries"
    __table_args__ = (
        UniqueConstraint("week_start", "user_name", name="uq_order_summaries_week_user"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    week_start = Column(String(10), nullable=False, index=True)
    user_name = Column(String(100), nullable=False)
    summary = Column(JSON, nullable=False)
    updated_by = Column(String(100), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<OrderSummary {self.week_start} {self.user_name} by {self.updated_by}>"
