from celery import Celery
from celery.schedules import crontab
from sitewise.shared.core.config import get_settings

settings = get_settings()

# Use Redis URL from settings, default to localhost if not set (development)
broker_url = settings.REDIS_URL or "redis://localhost:6379/0"
backend_url = settings.REDIS_URL or "redis://localhost:6379/0"

celery_app = Celery(
    "sitewise_worker",
    broker=broker_url,
    backend=backend_url,
    include=["sitewise.tasks.scheduler_tasks"]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Worker settings
    worker_prefetch_multiplier=1,  # Prevent worker from hogging tasks (fair dispatch)
    task_acks_late=True,           # Retry if worker crashes mid-task
    task_reject_on_worker_lost=True,
    broker_connection_retry_on_startup=True,
    # Nightly batch jobs; never scheduled to overlap
    beat_schedule={
        "usage-aggregation-nightly": {
            "task": "scheduler.usage_aggregation",
            "schedule": crontab(hour=settings.SCHEDULER_HOUR, minute=settings.SCHEDULER_MINUTE),
        },
        "retention-sweep-nightly": {
            "task": "scheduler.retention_sweep",
            "schedule": crontab(hour=settings.RETENTION_SCHEDULER_HOUR, minute=settings.SCHEDULER_MINUTE),
        },
    },
)

if __name__ == "__main__":
    celery_app.start()
