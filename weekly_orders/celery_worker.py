"""
Celery Worker Configuration
Sets up Celery with Redis as message broker and result backend,
plus the beat schedule of the weekly summary.
"""

from celery import Celery
from celery.schedules import crontab

from weekly_orders.core.config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery(
    'weekly_orders_worker',
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=['weekly_orders.tasks']  # Module containing our tasks
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone=settings.celery_timezone,
    enable_utc=True,

    # Worker settings
    worker_prefetch_multiplier=1,  # Process one task at a time
    worker_concurrency=2,

    # Result settings
    result_expires=3600,  # Results expire after 1 hour

    # Task execution settings
    task_acks_late=True,  # Acknowledge task after completion
    task_reject_on_worker_lost=True,  # Requeue task if worker dies

    broker_connection_retry_on_startup=True,
)

# Beat schedule: Friday 16:00 summary e-mail and a periodic summary refresh
celery_app.conf.beat_schedule = {
    'weekly-summary-email': {
        'task': 'weekly_orders.tasks.send_weekly_summary',
        'schedule': crontab(
            day_of_week=(settings.summary_send_weekday + 1) % 7,  # crontab counts from Sunday
            hour=settings.summary_send_hour_start + 1,
            minute=0,
        ),
    },
    'refresh-general-summary': {
        'task': 'weekly_orders.tasks.refresh_general_summary',
        'schedule': settings.summary_refresh_interval_seconds * 5,
    },
}


if __name__ == '__main__':
    celery_app.start()
