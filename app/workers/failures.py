"""Shared retry / dead-letter decision for Celery tasks."""

from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from celery.utils.log import get_task_logger

from app.jobs.queue import backoff_delay, should_retry
from config import settings

logger = get_task_logger(__name__)


def settle_failure(
    task,
    queue,
    kind: str,
    payload: Dict[str, Any],
    exc: BaseException,
    on_give_up: Optional[Callable[[], Any]] = None,
) -> str:
    """Retry ``task`` with exponential backoff, or give up and dead-letter the job.

    Raises celery's Retry when another attempt is scheduled; otherwise runs
    ``on_give_up`` and returns ``"failed"``.
    """
    retries = task.request.retries
    if should_retry(exc, retries, task.max_retries):
        delay = backoff_delay(retries, settings.JOB_BACKOFF_SECONDS)
        logger.warning(
            "%s job %s failed (attempt %d/%d), retrying in %.0fs: %s",
            kind, task.request.id, retries + 1, task.max_retries + 1, delay, exc,
        )
        raise task.retry(exc=exc, countdown=delay)

    if on_give_up is not None:
        on_give_up()
    queue.dead_letter(kind, task.request.id, payload, str(exc))
    return "failed"
