"""
Celery application for background work.

Run the worker and the beat scheduler with::

    celery -A freshdrop.worker worker --loglevel=info
    celery -A freshdrop.worker beat --loglevel=info
"""

from celery import Celery

from freshdrop.core.config import get_settings
from freshdrop.core.logging import configure_logging

settings = get_settings()
configure_logging()

celery_app = Celery(
    "freshdrop",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    beat_schedule={
        "drain-notification-outbox": {
            "task": "notifications.drain_outbox",
            "schedule": float(settings.outbox_drain_interval_seconds),
        },
    },
)

celery_app.autodiscover_tasks(["freshdrop.services.notifications"])
