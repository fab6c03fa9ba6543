import os
from celery import Celery
from celery.schedules import crontab

# Redis URL for broker and result backend
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# Create Celery app
celery_app = Celery(
    "consent_reconciler",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=["app.tasks"],  # Auto-discover tasks from this module
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=3600,  # bulk sync pages through every customer of a shop
    task_soft_time_limit=3300,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=500,
)

celery_app.conf.beat_schedule = {
    "platform-customer-sync-daily": {
        "task": "sync_platform_customers",
        "schedule": crontab(hour=3, minute=0),  # 03:00 UTC daily
        "args": [],
    },
    "consent-session-prune-daily": {
        "task": "prune_consent_sessions",
        "schedule": crontab(hour=4, minute=30),  # 04:30 UTC daily
        "args": [],
    },
}
