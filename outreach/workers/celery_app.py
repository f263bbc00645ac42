"""
Celery Application Configuration

The queue and health tickers run inside the API process; Celery beat only
drives maintenance: webhook recovery and retention cleanup.
"""
from celery import Celery

from outreach.core.config import settings

celery_app = Celery(
    "outreach",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["outreach.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.BUSINESS_TIMEZONE,
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "reprocess-webhooks-every-10-minutes": {
        "task": "outreach.workers.tasks.reprocess_webhook_events",
        "schedule": 600.0,  # 10 minutes
    },
    "cleanup-old-messages-daily": {
        "task": "outreach.workers.tasks.cleanup_old_messages",
        "schedule": 86400.0,  # 24 hours
    },
    "cleanup-old-webhook-events-daily": {
        "task": "outreach.workers.tasks.cleanup_old_webhook_events",
        "schedule": 86400.0,
    },
    "cleanup-old-logs-daily": {
        "task": "outreach.workers.tasks.cleanup_old_logs",
        "schedule": 86400.0,
    },
}
