"""Operator sweep: re-enqueue scheduled reminders whose job went missing.
Run on a schedule (e.g. every 10 minutes):
    python -m app.scripts.rearm_overdue_reminders
"""

from __future__ import annotations

import asyncio
import logging

import db
from app.context import build_context
from app.services.reminders import rearm_overdue_reminders
from config import configure_logging, settings

logger = logging.getLogger("app.scripts.rearm_overdue_reminders")


async def main() -> int:
    ctx = build_context(settings)
    try:
        return await rearm_overdue_reminders(ctx.queue, grace_seconds=settings.REARM_GRACE_SECONDS)
    finally:
        await db.dispose_engine()


if __name__ == "__main__":  # pragma: no cover
    configure_logging()
    logger.info("[CRON] rearm_overdue_reminders: job started")
    try:
        count = asyncio.run(main())
        logger.info("[CRON] rearm_overdue_reminders: job completed, %d re-armed", count)
    except Exception:
        logger.exception("[CRON] rearm_overdue_reminders: job failed")
        raise
