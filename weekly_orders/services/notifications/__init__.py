"""
Notification Service Factory

Returns Mock or Real notification service based on ENV_MODE.
"""

import logging
from functools import lru_cache

from weekly_orders.core.config import get_settings
from weekly_orders.services.notifications.base import (
    BaseNotificationService,
    NotificationResult,
)
from weekly_orders.services.notifications.mock import MockNotificationService
from weekly_orders.services.notifications.real import RealNotificationService

logger = logging.getLogger(__name__)


@lru_cache()
def get_notification_service() -> BaseNotificationService:
    """Get the configured notification service."""
    settings = get_settings()

    if settings.is_development:
        logger.info("Notification Service: Using MockNotificationService (development mode)")
        return MockNotificationService(failure_rate=settings.mock_failure_rate)
    else:
        logger.info(f"Notification Service: Using RealNotificationService ({settings.env_mode.value} mode)")
        return RealNotificationService()


def reset_notification_service() -> None:
    """Clear the cached service instance."""
    get_notification_service.cache_clear()


__all__ = [
    "get_notification_service",
    "reset_notification_service",
    "BaseNotificationService",
    "MockNotificationService",
    "NotificationResult",
    "RealNotificationService",
]
