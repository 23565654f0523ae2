"""
Celery configuration for background tasks
"""
from celery import Celery
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

celery_app = Celery(
    "billing",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "app.modules.email.tasks"
    ]
)

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

    task_routes={
        "app.modules.email.tasks.*": {"queue": "email"},
    },
)


if __name__ == "__main__":
    celery_app.start()
