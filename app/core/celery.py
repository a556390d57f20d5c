"""
Celery configuration for background tasks
"""
from celery import Celery
from celery.schedules import crontab
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)


def sweep_crontab(expression: str) -> crontab:
    """Build a Celery crontab from a standard five-field cron expression."""
    minute, hour, day_of_month, month_of_year, day_of_week = expression.split()
    return crontab(
        minute=minute,
        hour=hour,
        day_of_month=day_of_month,
        month_of_year=month_of_year,
        day_of_week=day_of_week,
    )


def build_beat_schedule() -> dict:
    """Periodic tasks; the expiry sweep is only scheduled here in celery mode."""
    schedule = {}
    if settings.SUBSCRIPTION_SWEEP_MODE == "celery":
        schedule["expire-subscriptions"] = {
            "task": "app.modules.subscriptions.tasks.expire_subscriptions",
            "schedule": sweep_crontab(settings.SUBSCRIPTION_SWEEP_CRON),
        }
    return schedule


# Create Celery instance
celery_app = Celery(
    "labsaas",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "app.modules.subscriptions.tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.SUBSCRIPTION_SWEEP_TIMEZONE,
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
        "app.modules.subscriptions.tasks.*": {"queue": "subscriptions"},
    },

    # Beat schedule for periodic tasks
    beat_schedule=build_beat_schedule(),
)

logger.debug(f"Celery beat schedule: {list(celery_app.conf.beat_schedule)}")

if __name__ == "__main__":
    celery_app.start()
