from celery import Celery
from celery.schedules import crontab

from kost.core.config import settings

celery_app = Celery(
    "kost",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)

# ─── Scheduled tasks ──────────────────────────
celery_app.conf.beat_schedule = {
    "mark-overdue-payments-daily": {
        "task": "kost.services.overdue.mark_overdue_all",
        "schedule": crontab(hour=settings.overdue_sweep_hour, minute=0),
    },
}

# autodiscover_tasks() only looks for a "tasks.py" file, which we don't use.
celery_app.conf.include = [
    "kost.services.overdue",
]
