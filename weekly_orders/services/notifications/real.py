"""
Real Notification Service

Production implementation sending e-mail through SendGrid.
"""

import asyncio
import logging
from typing import Optional

from python_http_client.exceptions import HTTPError
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from weekly_orders.core.config import get_settings
from weekly_orders.services.notifications.base import (
    BaseNotificationService,
    NotificationResult,
)

logger = logging.getLogger(__name__)


class RealNotificationService(BaseNotificationService):
    """Production notification service using SendGrid."""

    def __init__(self):
        settings = get_settings()
        if settings.sendgrid_api_key:
            self.sendgrid_client = SendGridAPIClient(settings.sendgrid_api_key)
            self.sendgrid_from_email = settings.sendgrid_from_email
        else:
            self.sendgrid_client = None
            logger.warning("SendGrid credentials not configured")

        logger.info("RealNotificationService initialized")

    @property
    def provider_name(self) -> str:
        return "sendgrid"

    async def send_email(
        self,
        to_emails: list[str],
        subject: str,
        body_html: str,
        body_text: Optional[str] = None,
    ) -> NotificationResult:
        """Send email via SendGrid."""
        if not self.sendgrid_client:
            return NotificationResult(
                success=False,
                error_message="SendGrid not configured",
                provider="sendgrid",
                recipients=list(to_emails),
            )

        recipients = list(dict.fromkeys(to_emails))
        # One personalization per recipient: nobody sees the other addresses
        message = Mail(
            from_email=self.sendgrid_from_email,
            to_emails=recipients,
            subject=subject,
            html_content=body_html,
            plain_text_content=body_text,
            is_multiple=True,
        )

        try:
            # The SendGrid client is synchronous
            response = await asyncio.to_thread(self.sendgrid_client.send, message)
        except HTTPError as e:
            logger.error(f"SendGrid error: {e}")
            return NotificationResult(
                success=False,
                error_message=str(e),
                provider="sendgrid",
                recipients=recipients,
            )

        logger.info(f"Summary e-mail accepted for {len(recipients)} recipients: {response.status_code}")

        return NotificationResult(
            success=response.status_code in [200, 201, 202],
            message_id=response.headers.get("X-Message-Id"),
            provider="sendgrid",
            recipients=recipients,
        )

    async def health_check(self) -> bool:
        """SendGrid is usable when an API key is configured."""
        return self.sendgrid_client is not None
