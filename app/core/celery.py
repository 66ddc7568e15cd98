"""
Celery configuration for background tasks
"""
from celery import Celery
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

redis_url = settings.redis_url

# Create Celery instance
celery_app = Celery(
    "ebilling_ops",
    broker=redis_url,
    backend=redis_url,
    include=[
        "app.modules.documents.tasks",
        "app.modules.email.tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=10 * 60,  # 10 minutes
    task_soft_time_limit=8 * 60,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,

    # Rate limiting
    task_default_rate_limit="100/m",

    # Result backend settings
    result_expires=3600,  # 1 hour

    # Task routes for different queues
    task_routes={
        "app.modules.documents.tasks.*": {"queue": "documents"},
        "app.modules.email.tasks.*": {"queue": "email"},
    },

    # Beat schedule for periodic tasks
    beat_schedule={
        "process-pending-documents": {
            "task": "app.modules.documents.tasks.process_pending_documents_task",
            "schedule": float(settings.DOCUMENT_PROCESS_INTERVAL_SECONDS),
        },
        "reconcile-sent-documents": {
            "task": "app.modules.documents.tasks.reconcile_sent_documents_task",
            "schedule": float(settings.DOCUMENT_RECONCILE_INTERVAL_SECONDS),
        },
        "renew-ebilling-cycles": {
            "task": "app.modules.documents.tasks.renew_subscription_cycles_task",
            "schedule": 3600.0,  # Run every hour
        },
    }
)

if __name__ == "__main__":
    celery_app.start()
