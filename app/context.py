"""Per-process wiring: queue, transport, LLM router and an event loop.

Workers are synchronous Celery tasks driving async services, so each worker
process owns one event loop for its whole life. Async clients (httpx, the
SQLAlchemy engine, provider SDKs) stay bound to that loop.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Optional, TypeVar

import redis

from app.jobs.queue import JobQueue
from app.llm.router import LLMRouter
from app.utils.telegram import TelegramTransport, build_transport
from config import Settings

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_CONTEXT_ATTR = "topicbot_context"


@dataclass
class AppContext:
    settings: Settings
    queue: JobQueue
    transport: TelegramTransport
    _router: Optional[LLMRouter] = None
    _loop: Optional[asyncio.AbstractEventLoop] = field(default=None, repr=False)

    @property
    def router(self) -> LLMRouter:
        # Built on first use so reminder-only workers start without provider keys.
        if self._router is None:
            self._router = LLMRouter.from_settings(self.settings)
        return self._router

    def run(self, coro: Awaitable[T]) -> T:
        """Run ``coro`` to completion on this process's event loop."""
        if self._loop is None or self._loop.is_closed():
            self._loop = asyncio.new_event_loop()
        return self._loop.run_until_complete(coro)


def build_context(
    settings: Settings,
    celery: Any = None,
    redis_client: Any = None,
    router: Optional[LLMRouter] = None,
) -> AppContext:
    if celery is None:
        from app.celery_app import celery_app as celery
    if redis_client is None:
        redis_client = redis.Redis.from_url(settings.REDIS_URL)
    queue = JobQueue(celery, redis_client, idempotency_ttl=settings.JOB_IDEMPOTENCY_TTL)
    return AppContext(
        settings=settings,
        queue=queue,
        transport=build_transport(settings),
        _router=router,
    )


def get_context(celery) -> AppContext:
    """The context attached to ``celery``, built on first use in this process."""
    ctx = getattr(celery, _CONTEXT_ATTR, None)
    if ctx is None:
        from config import settings

        _LOGGER.info("Building application context for worker process")
        ctx = build_context(settings, celery=celery)
        setattr(celery, _CONTEXT_ATTR, ctx)
    return ctx
