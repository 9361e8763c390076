"""
Week Key Resolver

The week key is the ISO date of the Monday that anchors one ordering cycle.
All components ask the resolver for it; nothing recomputes it ad hoc.

Policy:
    - No cutover configured: Monday of the current calendar week. Sunday maps
      to the Monday six days earlier.
    - Cutover configured (e.g. Friday 00:00): from the cutover until the end
      of that week, the key rolls forward to next Monday.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Optional

from weekly_orders.core.config import get_settings

logger = logging.getLogger(__name__)


def monday_of(day: date) -> date:
    """Return the Monday of the calendar week containing ``day``."""
    return day - timedelta(days=day.weekday())


class WeekKeyResolver:
    """Resolves the active week key from the clock or an override."""

    def __init__(
        self,
        cutover_weekday: Optional[int] = None,
        cutover_hour: int = 0,
        override: Optional[str] = None,
    ):
        if cutover_weekday is not None and not 0 <= cutover_weekday <= 6:
            raise ValueError("cutover_weekday must be between 0 (Monday) and 6 (Sunday)")
        if not 0 <= cutover_hour <= 23:
            raise ValueError("cutover_hour must be between 0 and 23")

        self.cutover_weekday = cutover_weekday
        self.cutover_hour = cutover_hour
        self.override = self._parse_override(override) if override else None

    @staticmethod
    def _parse_override(value: str) -> date:
        try:
            parsed = date.fromisoformat(value.strip())
        except ValueError:
            raise ValueError(f"Invalid week key override: {value!r} (expected YYYY-MM-DD)")

        anchored = monday_of(parsed)
        if anchored != parsed:
            logger.warning(f"Week key override {value} is not a Monday, using {anchored}")
        return anchored

    @property
    def policy(self) -> str:
        """Human readable description of the active policy."""
        if self.override:
            return f"override:{self.override.isoformat()}"
        if self.cutover_weekday is None:
            return "calendar"
        return f"cutover:{self.cutover_weekday}@{self.cutover_hour:02d}h"

    def resolve_date(self, now: Optional[datetime] = None) -> date:
        """Return the Monday anchoring the active week."""
        if self.override:
            return self.override

        now = now or datetime.now()
        monday = monday_of(now.date())

        if self.cutover_weekday is not None:
            weekday = now.weekday()
            past_cutover = weekday > self.cutover_weekday or (
                weekday == self.cutover_weekday and now.hour >= self.cutover_hour
            )
            if past_cutover:
                monday += timedelta(days=7)

        return monday

    def resolve(self, now: Optional[datetime] = None) -> str:
        """Return the active week key as an ISO date string."""
        return self.resolve_date(now).isoformat()


def get_week_resolver() -> WeekKeyResolver:
    """Build the resolver from the current settings."""
    settings = get_settings()
    return WeekKeyResolver(
        cutover_weekday=settings.week_cutover_weekday,
        cutover_hour=settings.week_cutover_hour,
        override=settings.week_key_override,
    )


def current_week_key(now: Optional[datetime] = None) -> str:
    """Shortcut for ``get_week_resolver().resolve(now)``."""
    return get_week_resolver().resolve(now)
