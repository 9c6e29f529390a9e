"""Celery worker configuration.

Runs the scheduled batch work of the consistency engine:
- Daily reconciliation of the previous day's pairings
"""

from celery import Celery
from celery.schedules import crontab

from paysync.config import settings

# Create Celery app
celery_app = Celery(
    "paysync_tasks",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["paysync.tasks"],
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="Africa/Nairobi",
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=600,  # 10 minutes max
    task_soft_time_limit=540,

    # Worker settings
    worker_prefetch_multiplier=1,

    # Result backend settings
    result_expires=86400,  # Reports are kept for a day

    # Retry settings
    task_default_retry_delay=300,
    task_max_retries=3,

    # Beat schedule for periodic tasks
    beat_schedule={
        # Reconcile the previous day every night
        "daily-reconciliation": {
            "task": "paysync.tasks.run_daily_reconciliation",
            "schedule": crontab(hour=settings.reconciliation_hour, minute=0),
        },
    },
)


if __name__ == "__main__":
    celery_app.start()
