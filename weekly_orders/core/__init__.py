"""
Core module initialization.
Exports configuration, logging utilities and the week key resolver.
"""

from weekly_orders.core.config import get_settings, Settings, EnvironmentMode
from weekly_orders.core.weeks import WeekKeyResolver, current_week_key

__all__ = ["get_settings", "Settings", "EnvironmentMode", "WeekKeyResolver", "current_week_key"]
