"""
Celery Application Configuration
"""
from celery import Celery

from partner_sync.core.config import settings

celery_app = Celery(
    "partner_sync",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["partner_sync.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "process-queue-every-10-seconds": {
        "task": "partner_sync.workers.tasks.process_queue_items",
        "schedule": 10.0,
    },
    "release-stale-queue-items-every-5-minutes": {
        "task": "partner_sync.workers.tasks.release_stale_queue_items",
        "schedule": 300.0,
    },
    "cleanup-completed-queue-items-daily": {
        "task": "partner_sync.workers.tasks.cleanup_completed_queue_items",
        "schedule": 86400.0,  # 24 hours
    },
}
