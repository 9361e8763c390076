"""
Service Wiring

Process-wide service instances built from the settings, shared by the API,
the Celery tasks and the scripts. ``reset_services`` drops every cached
instance (tests, settings reloads).
"""

import logging
from functools import lru_cache

from weekly_orders.core.config import get_settings
from weekly_orders.core.weeks import WeekKeyResolver, get_week_resolver
from weekly_orders.database import async_session_maker
from weekly_orders.services.cache import get_snapshot_cache, reset_snapshot_cache
from weekly_orders.services.feed import get_change_feed, reset_change_feed
from weekly_orders.services.menu_service import MenuService
from weekly_orders.services.notifications import get_notification_service, reset_notification_service
from weekly_orders.services.orders import OrderService
from weekly_orders.services.reconciler import ReconcilerRegistry, SummaryReconciler
from weekly_orders.services.weekly_summary import WeeklySummaryMailer

logger = logging.getLogger(__name__)


@lru_cache()
def get_resolver() -> WeekKeyResolver:
    resolver = get_week_resolver()
    logger.info(f"Week key policy: {resolver.policy}")
    return resolver


@lru_cache()
def get_menu_service() -> MenuService:
    settings = get_settings()
    service = MenuService(
        session_factory=async_session_maker,
        cache=get_snapshot_cache(),
        feed=get_change_feed(),
        resolver=get_resolver(),
        summary_author=settings.general_summary_author,
        snapshot_max_age=settings.snapshot_max_age_seconds,
    )
    service.attach()
    return service


@lru_cache()
def get_order_service() -> OrderService:
    return OrderService(
        session_factory=async_session_maker,
        feed=get_change_feed(),
        menu_service=get_menu_service(),
        resolver=get_resolver(),
    )


@lru_cache()
def get_reconcilers() -> ReconcilerRegistry:
    """Registry attached to the change feed on first use."""
    settings = get_settings()
    registry = ReconcilerRegistry(
        session_factory=async_session_maker,
        cache=get_snapshot_cache(),
        feed=get_change_feed(),
        menu_provider=get_menu_service().current_menu,
        refresh_interval=settings.summary_refresh_interval_seconds,
        author=settings.general_summary_author,
        snapshot_max_age=settings.snapshot_max_age_seconds,
    )
    registry.attach()
    return registry


def get_current_reconciler() -> SummaryReconciler:
    """Reconciler of the active week."""
    return get_reconcilers().get(get_resolver().resolve())


@lru_cache()
def get_summary_mailer() -> WeeklySummaryMailer:
    return WeeklySummaryMailer(
        session_factory=async_session_maker,
        menu_service=get_menu_service(),
        notifier=get_notification_service(),
        resolver=get_resolver(),
        settings=get_settings(),
    )


def reset_services() -> None:
    """Clear every cached service instance."""
    if get_reconcilers.cache_info().currsize:
        get_reconcilers().detach()
    if get_menu_service.cache_info().currsize:
        get_menu_service().detach()
    for factory in (get_resolver, get_menu_service, get_order_service, get_reconcilers, get_summary_mailer):
        factory.cache_clear()
    reset_snapshot_cache()
    reset_change_feed()
    reset_notification_service()
