"""
Weekly Summary Mailer

Sends the week's aggregate to the configured recipients. Runs from the
Celery beat schedule on Friday afternoon, or on demand with ``force``.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

from weekly_orders.core.config import Settings
from weekly_orders.core.errors import WeeklyOrdersError
from weekly_orders.core.weeks import WeekKeyResolver
from weekly_orders.services.aggregator import AggregateSummary, aggregate_orders
from weekly_orders.services.menu_service import MenuService
from weekly_orders.services.notifications import BaseNotificationService
from weekly_orders.services.repository import OrderRepository
from weekly_orders.services.summary_format import (
    email_subject,
    format_email_html,
    format_email_text,
)

logger = logging.getLogger(__name__)


class OutsideSendWindowError(WeeklyOrdersError):
    """The summary was requested outside the weekly window without force."""

    status_code = 400


class NoOrdersError(WeeklyOrdersError):
    """There is nothing to send for the week."""

    status_code = 404


@dataclass
class SendSummaryResult:
    """Outcome of a summary e-mail."""
    success: bool
    week_start: str
    message: str
    recipients: list[str] = field(default_factory=list)
    summary: Optional[AggregateSummary] = None
    message_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "week_start": self.week_start,
            "message": self.message,
            "recipients": list(self.recipients),
            "message_id": self.message_id,
            "summary": self.summary.to_dict() if self.summary else None,
        }


def schedule_now(settings: Settings, now: Optional[datetime] = None) -> datetime:
    """
    Wall clock of the beat schedule's timezone.

    Aware values are converted; naive ones are taken as already local to
    the schedule.
    """
    tz = ZoneInfo(settings.celery_timezone)
    if now is None:
        return datetime.now(tz)
    if now.tzinfo is not None:
        return now.astimezone(tz)
    return now


def in_send_window(settings: Settings, now: Optional[datetime] = None) -> bool:
    """True on the configured weekday between the start and end hours."""
    now = schedule_now(settings, now)
    return (
        now.weekday() == settings.summary_send_weekday
        and settings.summary_send_hour_start <= now.hour < settings.summary_send_hour_end
    )


class WeeklySummaryMailer:
    """Builds the summary from the order rows and e-mails it."""

    def __init__(
        self,
        session_factory: Callable[[], Any],
        menu_service: MenuService,
        notifier: BaseNotificationService,
        resolver: WeekKeyResolver,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.menu_service = menu_service
        self.notifier = notifier
        self.resolver = resolver
        self.settings = settings

    async def build(self, week_start: str) -> AggregateSummary:
        """
        Aggregate straight from the order rows, not from any cache.

        Raises:
            NoOrdersError: the week has no rows
        """
        async with self.session_factory() as session:
            rows = await OrderRepository(session).list_orders(week_start)
        if not rows:
            raise NoOrdersError("No hay pedidos para esta semana", detail=week_start)

        menu = await self.menu_service.current_menu()
        return aggregate_orders(rows, menu, week_start)

    async def send(
        self,
        force: bool = False,
        week_start: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SendSummaryResult:
        """
        E-mail the summary of ``week_start`` (the active week by default).

        Raises:
            OutsideSendWindowError: outside the window and not forced
            NoOrdersError: nothing ordered that week
        """
        now = schedule_now(self.settings, now)
        if not force and not in_send_window(self.settings, now):
            raise OutsideSendWindowError(
                "El resumen solo se envía los viernes por la tarde o con force=true"
            )

        week_start = week_start or self.resolver.resolve(now)
        summary = await self.build(week_start)
        recipients = self.settings.summary_recipients_list

        if not recipients:
            logger.warning("No summary recipients configured")
            return SendSummaryResult(
                success=False,
                week_start=week_start,
                message="No recipients configured",
                summary=summary,
            )

        result = await self.notifier.send_email(
            to_emails=recipients,
            subject=email_subject(week_start),
            body_html=format_email_html(summary),
            body_text=format_email_text(summary),
        )

        if result.success:
            logger.info(f"Summary {week_start} sent to {len(recipients)} recipients")
            message = "Resumen enviado por correo exitosamente"
        else:
            logger.error(f"Summary {week_start} not sent: {result.error_message}")
            message = f"Error al enviar el resumen por correo: {result.error_message}"

        return SendSummaryResult(
            success=result.success,
            week_start=week_start,
            message=message,
            recipients=recipients,
            summary=summary,
            message_id=result.message_id,
        )
