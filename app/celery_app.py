"""Celery application instance shared across the backend.

Start a worker with:
    celery -A app.celery_app worker -Q reminder,summary -l info --concurrency=5
and the auto-summary scheduler with:
    celery -A app.celery_app beat -l info
"""

from celery import Celery
from celery.schedules import crontab

from config import settings

BROKER_URL = settings.REDIS_URL

celery_app = Celery("topicbot", broker=BROKER_URL)

# Global task settings: at-least-once delivery, one job per worker slot
celery_app.conf.task_acks_late = True
celery_app.conf.task_reject_on_worker_lost = True
celery_app.conf.worker_prefetch_multiplier = 1
celery_app.conf.worker_concurrency = settings.WORKER_CONCURRENCY
celery_app.conf.timezone = "UTC"
celery_app.conf.enable_utc = True

# Countdown tasks stay unacked in Redis until due; keep them from being redelivered early.
celery_app.conf.broker_transport_options = {
    "visibility_timeout": settings.BROKER_VISIBILITY_TIMEOUT,
}

celery_app.conf.task_routes = {
    "app.workers.reminder.fire": {"queue": "reminder"},
    "app.workers.summary.generate": {"queue": "summary"},
    "app.workers.summary.schedule_auto": {"queue": "summary"},
}

# Beat schedule: enqueue the previous period's summaries once a day
if settings.AUTO_SUMMARY_ENABLED:
    celery_app.conf.beat_schedule = {
        "schedule-auto-summaries": {
            "task": "app.workers.summary.schedule_auto",
            "schedule": crontab(hour=settings.AUTO_SUMMARY_HOUR, minute=settings.AUTO_SUMMARY_MINUTE),
        }
    }

# --- Ensure tasks are registered ---
import app.workers.reminder  # noqa: E402,F401
import app.workers.summary  # noqa: E402,F401
