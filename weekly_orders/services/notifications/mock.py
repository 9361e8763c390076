"""
Mock Notification Service

Simulates e-mail sending for development.
No actual messages are sent - just logged.
"""

import asyncio
import logging
import random
import uuid
from typing import Optional

from weekly_orders.services.notifications.base import (
    BaseNotificationService,
    NotificationResult,
)

logger = logging.getLogger(__name__)


class MockNotificationService(BaseNotificationService):
    """Mock notification service for development."""

    def __init__(self, failure_rate: float = 0.0, latency: tuple[float, float] = (0.1, 0.3)):
        self.failure_rate = failure_rate
        self.latency = latency
        self.sent: list[dict] = []
        logger.info(f"MockNotificationService initialized (failure_rate={failure_rate:.0%})")

    @property
    def provider_name(self) -> str:
        return "mock"

    async def _simulate_latency(self) -> None:
        """Simulate network latency."""
        await asyncio.sleep(random.uniform(*self.latency))

    def _should_fail(self) -> bool:
        return random.random() < self.failure_rate

    async def send_email(
        self,
        to_emails: list[str],
        subject: str,
        body_html: str,
        body_text: Optional[str] = None,
    ) -> NotificationResult:
        """Simulate sending email."""
        await self._simulate_latency()

        if self._should_fail():
            logger.warning(f"Mock email failed (simulated) to {to_emails}")
            return NotificationResult(
                success=False,
                error_message="Simulated email failure",
                provider="mock",
                recipients=list(to_emails),
            )

        message_id = f"email_mock_{uuid.uuid4().hex[:12]}"
        self.sent.append({
            "message_id": message_id,
            "to": list(to_emails),
            "subject": subject,
            "html": body_html,
            "text": body_text,
        })
        logger.info(f"Mock email sent to {to_emails}: {subject} (ID: {message_id})")

        return NotificationResult(
            success=True,
            message_id=message_id,
            provider="mock",
            recipients=list(to_emails),
        )

    async def health_check(self) -> bool:
        """Mock always returns healthy."""
        return True
