"""Delayed, idempotent job submission on top of Celery + Redis.

Celery carries the jobs (countdown delays, late acks, retries); Redis holds
idempotency keys and the per-kind dead-letter lists.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from app.types.errors import (
    DeliveryError,
    NotFoundError,
    ValidationError,
    is_retryable_status,
)

_LOGGER = logging.getLogger(__name__)

# Job kind -> Celery task; each kind is routed to a queue of the same name.
TASK_NAMES = {
    "reminder": "app.workers.reminder.fire",
    "summary": "app.workers.summary.generate",
}


@dataclass(frozen=True)
class JobHandle:
    kind: str
    job_id: str


def backoff_delay(retries: int, base: float = 2.0) -> float:
    """Seconds to wait before retry number ``retries + 1``."""
    return base * (2 ** retries)


def _decode(value: Any) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


class JobQueue:
    def __init__(self, app, redis_client, idempotency_ttl: int = 86400):
        self._app = app
        self._redis = redis_client
        self._ttl = idempotency_ttl

    def enqueue(
        self,
        kind: str,
        payload: Dict[str, Any],
        delay: float = 0,
        idempotency_key: Optional[str] = None,
    ) -> JobHandle:
        """Submit a job to run no earlier than ``delay`` seconds from now.

        A repeated ``idempotency_key`` returns the handle of the job that
        claimed it first and submits nothing.
        """
        task_name = TASK_NAMES.get(kind)
        if task_name is None:
            raise ValueError(f"Unknown job kind: {kind}")
        delay = max(0.0, float(delay))
        job_id = str(uuid4())

        redis_key = f"idem:{idempotency_key}" if idempotency_key else None
        if redis_key:
            # Keep the key alive at least until the job is due.
            ttl = int(delay) + self._ttl
            if not self._redis.set(redis_key, job_id, nx=True, ex=ttl):
                existing = self._redis.get(redis_key)
                if existing is not None:
                    _LOGGER.info("Job %s already enqueued as %s", idempotency_key, _decode(existing))
                    return JobHandle(kind, _decode(existing))
                # Expired between SET and GET.
                self._redis.set(redis_key, job_id, ex=ttl)

        try:
            self._app.send_task(
                task_name,
                kwargs=payload,
                countdown=delay,
                task_id=job_id,
                queue=kind,
            )
        except Exception:
            if redis_key:
                self._redis.delete(redis_key)
            raise
        _LOGGER.info("Enqueued %s job %s (delay %.0fs)", kind, job_id, delay)
        return JobHandle(kind, job_id)

    def cancel(self, handle: JobHandle) -> bool:
        """Best-effort revoke; False when the broker could not be reached."""
        try:
            self._app.control.revoke(handle.job_id)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("Failed to revoke %s job %s: %s", handle.kind, handle.job_id, exc)
            return False
        return True

    def release(self, idempotency_key: str) -> bool:
        """Free ``idempotency_key`` so the next enqueue under it submits a new job."""
        released = bool(self._redis.delete(f"idem:{idempotency_key}"))
        if released:
            _LOGGER.info("Released idempotency key %s", idempotency_key)
        return released

    def dead_letter(self, kind: str, job_id: str, payload: Dict[str, Any], error: str) -> None:
        entry = {
            "job_id": job_id,
            "kind": kind,
            "payload": payload,
            "error": error,
            "failed_at": datetime.now(timezone.utc).isoformat(),
        }
        self._redis.lpush(f"dead:{kind}", json.dumps(entry, default=str))
        _LOGGER.error("Dead-lettered %s job %s: %s", kind, job_id, error)

    def dead_letters(self, kind: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent first."""
        raw = self._redis.lrange(f"dead:{kind}", 0, limit - 1)
        return [json.loads(_decode(item)) for item in raw]


def is_permanent(exc: BaseException) -> bool:
    """Failures that no amount of retrying will fix."""
    if isinstance(exc, (NotFoundError, ValidationError, ValueError)):
        return True
    if isinstance(exc, DeliveryError):
        return exc.status is not None and not is_retryable_status(exc.status)
    return False


def should_retry(exc: BaseException, retries: int, max_retries: int) -> bool:
    return not is_permanent(exc) and retries < max_retries
