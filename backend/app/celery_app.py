"""Celery application configuration."""

from celery import Celery
from celery.schedules import crontab

from app.config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery(
    "voltwise",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "app.tasks.automation",
    ],
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task execution
    task_track_started=True,
    task_time_limit=120,
    task_soft_time_limit=100,

    # Result backend
    result_expires=3600,

    # Worker settings
    worker_prefetch_multiplier=1,

    # A tick that misses its minute is caught up by the next one
    task_annotations={
        "app.tasks.automation.run_automation_tick": {"expires": 55},
    },

    # Scheduled tasks
    beat_schedule={
        # Evaluate automation rules every minute
        "run-automation-tick": {
            "task": "app.tasks.automation.run_automation_tick",
            "schedule": crontab(minute="*"),
        },
    },
)
