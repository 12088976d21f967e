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
    "clinic_core",
    broker=redis_url,
    backend=redis_url,
    include=[
        "app.modules.refills.tasks",
        "app.modules.subscriptions.tasks"
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
    task_time_limit=30 * 60,  # 30 minutes
    task_soft_time_limit=25 * 60,  # 25 minutes
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,

    # Result backend settings
    result_expires=3600,  # 1 hour

    # Task routes for different queues
    task_routes={
        "app.modules.refills.tasks.*": {"queue": "refills"},
        "app.modules.subscriptions.tasks.*": {"queue": "billing"},
    },

    # Beat schedule for periodic tasks; overlapping runs are skipped by advisory locks
    beat_schedule={
        "process-due-refills": {
            "task": "app.modules.refills.tasks.process_due_refills",
            "schedule": settings.REFILL_SWEEP_INTERVAL_SECONDS,  # hourly by default
        },
        "reconcile-subscription-billing": {
            "task": "app.modules.subscriptions.tasks.reconcile_subscription_billing",
            "schedule": settings.BILLING_RECONCILE_INTERVAL_SECONDS,  # daily by default
        }
    }
)

if __name__ == "__main__":
    celery_app.start()
