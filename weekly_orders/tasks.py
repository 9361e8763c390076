"""
Celery Tasks
Background tasks for the weekly summary: e-mail, workbook export and the
periodic recomputation of the general summary.

Tasks run the async services with ``asyncio.run``; every task builds fresh
service instances so nothing bound to a previous event loop is reused.
"""

import asyncio
import time
from datetime import datetime
from typing import Optional

from weekly_orders.celery_worker import celery_app
from weekly_orders.core.errors import StorageError
from weekly_orders.database import engine
from weekly_orders.dependencies import get_reconcilers, get_resolver, get_summary_mailer, reset_services
from weekly_orders.services.excel_manager import ExcelManager
from weekly_orders.services.feed import get_change_feed
from weekly_orders.services.weekly_summary import NoOrdersError, OutsideSendWindowError


async def _run(coro_factory):
    reset_services()
    try:
        return await coro_factory()
    finally:
        # Connections belong to this task's event loop
        await get_change_feed().stop()
        await engine.dispose()


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=30,
    autoretry_for=(StorageError,),
    retry_backoff=True
)
def send_weekly_summary(self, force: bool = False, week_start: Optional[str] = None) -> dict:
    """
    E-mail the summary of the active week.

    Scheduled on Friday afternoon; outside the window only with ``force``.
    """
    task_id = self.request.id
    print(f"📧 Task {task_id}: Sending weekly summary (force={force})")

    try:
        result = asyncio.run(_run(lambda: get_summary_mailer().send(force=force, week_start=week_start)))
    except (OutsideSendWindowError, NoOrdersError) as e:
        print(f"⚠️ Task {task_id}: {e.message}")
        return {'success': False, 'message': e.message, 'task_id': task_id}

    data = result.to_dict()
    data['task_id'] = task_id
    if result.success:
        print(f"✅ Task {task_id}: Summary {result.week_start} sent")
    else:
        print(f"⚠️ Task {task_id}: Summary {result.week_start} not sent - {result.message}")
    return data


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    autoretry_for=(StorageError,),
    retry_backoff=True
)
def export_summary_to_excel(self, week_start: Optional[str] = None) -> dict:
    """
    Recompute the summary of a week and write it to the shared workbook.

    Args:
        week_start: Week key (the active week by default)

    Returns:
        dict: Result of the export operation
    """
    task_id = self.request.id
    print(f"📋 Task {task_id}: Exporting summary {week_start or 'current week'}")
    start_time = time.time()

    async def build():
        week = week_start or get_resolver().resolve()
        return await get_reconcilers().get(week).recompute(persist=False, reason="export")

    summary = asyncio.run(_run(build))
    result = ExcelManager.export_summary(summary)

    elapsed = round(time.time() - start_time, 3)
    result['task_id'] = task_id
    result['processing_time_seconds'] = elapsed

    if result['success']:
        print(f"✅ Task {task_id}: Summary {summary.week_start} exported in {elapsed}s")
    else:
        print(f"⚠️ Task {task_id}: Export failed - {result['message']}")

    return result


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    autoretry_for=(StorageError,),
    retry_backoff=True
)
def refresh_general_summary(self, week_start: Optional[str] = None) -> dict:
    """
    Full recomputation of the general summary, persisted and pushed.

    Heals a general summary left behind by a crash between an order write
    and the summary write.
    """
    async def refresh():
        week = week_start or get_resolver().resolve()
        return await get_reconcilers().get(week).recompute(persist=True, updated_by="scheduler", reason="scheduled")

    summary = asyncio.run(_run(refresh))
    return {
        'success': True,
        'week_start': summary.week_start,
        'total': summary.total,
        'task_id': self.request.id,
        'timestamp': datetime.now().isoformat(),
    }


@celery_app.task
def health_check() -> dict:
    """
    Simple health check task to verify Celery is working.
    """
    return {
        'status': 'healthy',
        'worker': 'celery',
        'timestamp': datetime.now().isoformat()
    }
