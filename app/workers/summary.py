"""Summary generation tasks."""

from __future__ import annotations

from datetime import datetime

from celery.utils.log import get_task_logger

from app.celery_app import celery_app
from app.context import AppContext, get_context
from app.services import summaries
from app.types.errors import ConfigurationError
from app.workers.failures import settle_failure
from config import settings

logger = get_task_logger(__name__)


def _router_or_none(ctx: AppContext):
    try:
        return ctx.router
    except ConfigurationError as exc:
        logger.warning("No LLM provider configured, summaries use the statistics fallback: %s", exc)
        return None


# ---------------------------------------------------------------------------
# Celery Tasks
# ---------------------------------------------------------------------------

@celery_app.task(name="app.workers.summary.generate", bind=True, max_retries=settings.JOB_MAX_RETRIES)
def generate(self, topic_id: str, grain: str, date: str, timezone: str | None = None):  # noqa: D401
    """Generate one period summary; the last attempt falls back to statistics."""
    ctx = get_context(celery_app)
    payload = {"topic_id": topic_id, "grain": grain, "date": date, "timezone": timezone}
    when = datetime.fromisoformat(date)
    router = _router_or_none(ctx)
    allow_fallback = router is None or self.request.retries >= self.max_retries

    def release():
        ctx.run(summaries.release_request(topic_id, grain, when, ctx.queue, timezone=timezone))

    try:
        summary = ctx.run(
            summaries.generate_summary(
                topic_id,
                grain,
                when,
                router=router,
                timezone=timezone,
                allow_fallback=allow_fallback,
                max_chars=settings.SUMMARY_MAX_CHARS,
            )
        )
    except Exception as exc:  # noqa: BLE001
        return settle_failure(self, ctx.queue, "summary", payload, exc, on_give_up=release)
    if summary is None:
        logger.info("No messages for %s summary of topic %s; request released", grain, topic_id)
        release()
        return None
    return summary.summary_id


@celery_app.task(name="app.workers.summary.schedule_auto", bind=True)
def schedule_auto(self):  # noqa: D401
    """Enqueue yesterday's (and last week/month/year's) summaries for all topics."""
    ctx = get_context(celery_app)
    try:
        return ctx.run(summaries.schedule_auto_summaries(ctx.queue))
    except Exception as exc:  # noqa: BLE001
        raise self.retry(exc=exc, countdown=60)
