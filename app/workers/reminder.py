"""Reminder delivery task."""

from __future__ import annotations

from celery.utils.log import get_task_logger

from app.celery_app import celery_app
from app.context import get_context
from app.services import reminders
from app.workers.failures import settle_failure
from config import settings

logger = get_task_logger(__name__)


# ---------------------------------------------------------------------------
# Celery Tasks
# ---------------------------------------------------------------------------

@celery_app.task(name="app.workers.reminder.fire", bind=True, max_retries=settings.JOB_MAX_RETRIES)
def fire(self, reminder_id: str, occurrence: str):  # noqa: D401
    """Deliver one reminder occurrence; mark it failed once retries run out."""
    ctx = get_context(celery_app)
    payload = {"reminder_id": reminder_id, "occurrence": occurrence}
    try:
        outcome = ctx.run(
            reminders.fire_reminder(
                reminder_id, occurrence, transport=ctx.transport, queue=ctx.queue
            )
        )
    except Exception as exc:  # noqa: BLE001
        return settle_failure(
            self,
            ctx.queue,
            "reminder",
            payload,
            exc,
            on_give_up=lambda: ctx.run(reminders.mark_reminder_failed(reminder_id, str(exc))),
        )
    logger.info("Reminder job %s finished: %s", self.request.id, outcome)
    return outcome
