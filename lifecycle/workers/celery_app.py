"""
Celery application configuration.
"""

from celery import Celery
from celery.schedules import crontab

from lifecycle.config import settings

# Create Celery app
celery_app = Celery(
    "lifecycle",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "lifecycle.workers.daily_lifecycle",
    ],
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.default_timezone,
    enable_utc=True,
    task_track_started=True,
    task_time_limit=1800,  # 30 minutes, the daily check walks every active user
    worker_prefetch_multiplier=1,
    task_acks_late=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # Time-driven lifecycle events (inactivity, missed targets, broken streaks)
    "daily-lifecycle-check": {
        "task": "lifecycle.workers.daily_lifecycle.run_daily_lifecycle_check",
        "schedule": crontab(hour=settings.daily_check_hour, minute=0),
    },
}
