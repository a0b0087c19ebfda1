"""Reminder lifecycle: create, fire, cancel, list and fail.

All state transitions are conditional database updates keyed on the current
status (and run count when firing), so duplicate job deliveries and races with
cancellation resolve in the database rather than in memory.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Union
from zoneinfo import ZoneInfo

import db
from app.jobs.queue import JobHandle, JobQueue
from app.services.recurrence import next_run
from app.types.contracts import (
    CreateReminderArgs,
    ListRemindersArgs,
    RepeatRule,
    ToolContext,
)
from app.types.errors import NotFoundError, UnsupportedFrequencyError, ValidationError

_LOGGER = logging.getLogger(__name__)

JOB_KIND = "reminder"

# fire_reminder outcomes
SENT = "sent"
REARMED = "rearmed"
SKIPPED = "skipped"
STALE = "stale"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso_utc(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def format_reminder_text(title: str, description: Optional[str] = None) -> str:
    text = f"⏰ Reminder\n\n{title}"
    if description:
        text += f"\n\n{description}"
    return text


def schedule_occurrence(
    queue: JobQueue,
    reminder_id: str,
    occurrence: datetime,
    now: Optional[datetime] = None,
    key_suffix: str = "",
) -> JobHandle:
    """Enqueue the fire job for one occurrence, keyed so it is submitted once."""
    now = now or _utcnow()
    iso = _iso_utc(occurrence)
    delay = max(0.0, (occurrence - now).total_seconds())
    return queue.enqueue(
        JOB_KIND,
        {"reminder_id": reminder_id, "occurrence": iso},
        delay=delay,
        idempotency_key=f"reminder:{reminder_id}:{iso}{key_suffix}",
    )


def serialize_reminder(reminder: db.Reminder) -> Dict[str, Any]:
    tz = ZoneInfo(reminder.timezone)
    upcoming = reminder.next_run_at or reminder.due_at
    return {
        "id": reminder.reminder_id,
        "title": reminder.title,
        "description": reminder.description,
        "due": upcoming.astimezone(tz).isoformat(),
        "timezone": reminder.timezone,
        "status": reminder.status,
        "repeat": reminder.repeat,
        "run_count": reminder.run_count,
    }


async def create_reminder(
    args: CreateReminderArgs,
    ctx: ToolContext,
    queue: JobQueue,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or _utcnow()
    topic = await db.get_topic(args.topic_id)
    if topic is None:
        raise NotFoundError("Topic not found")
    if args.repeat is not None and args.repeat.freq == "CRON":
        raise UnsupportedFrequencyError(
            "Cron schedules are not supported yet; use DAILY, WEEKLY or MONTHLY"
        )
    if args.due <= now:
        raise ValidationError("The reminder time must be in the future")

    tz_name = args.timezone or topic.timezone
    reminder = db.Reminder(
        topic_id=topic.topic_id,
        chat_id=topic.chat_id,
        thread_id=topic.thread_id,
        user_id=ctx.user_id,
        title=args.title,
        description=args.description,
        due_at=args.due,
        timezone=tz_name,
        status="scheduled",
        repeat=args.repeat.model_dump(mode="json") if args.repeat else None,
        next_run_at=args.due,
        run_count=0,
    )
    await db.insert_reminder(reminder)

    try:
        handle = schedule_occurrence(queue, reminder.reminder_id, args.due, now)
    except Exception as exc:
        await db.mark_reminder_failed(reminder.reminder_id, f"enqueue failed: {exc}")
        raise
    await db.update_reminder(reminder.reminder_id, job_id=handle.job_id)
    reminder.job_id = handle.job_id

    due_local = args.due.astimezone(ZoneInfo(tz_name))
    _LOGGER.info("Created reminder %s for %s", reminder.reminder_id, due_local.isoformat())
    return {
        "id": reminder.reminder_id,
        "title": reminder.title,
        "due": due_local.isoformat(),
        "timezone": tz_name,
        "repeat": reminder.repeat,
        "message": f'Reminder created: "{reminder.title}" on {due_local:%Y-%m-%d %H:%M} ({tz_name})',
    }


async def fire_reminder(
    reminder_id: str,
    occurrence: Union[datetime, str],
    *,
    transport,
    queue: JobQueue,
    now: Optional[datetime] = None,
) -> str:
    """Deliver one occurrence and advance the reminder.

    Returns ``sent`` (final delivery), ``rearmed`` (next occurrence queued),
    ``skipped`` (no longer scheduled) or ``stale`` (a redelivered job for an
    occurrence that has already been handled).
    """
    now = now or _utcnow()
    if isinstance(occurrence, str):
        occurrence = datetime.fromisoformat(occurrence)
    if occurrence.tzinfo is None:
        raise ValueError("occurrence must be timezone-aware")

    reminder = await db.get_reminder(reminder_id)
    if reminder is None:
        raise NotFoundError(f"Reminder {reminder_id} not found")
    if reminder.status != "scheduled":
        _LOGGER.info("Reminder %s is no longer scheduled (status: %s)", reminder_id, reminder.status)
        return SKIPPED
    if reminder.next_run_at is None or reminder.next_run_at != occurrence:
        _LOGGER.info(
            "Stale job for reminder %s (occurrence %s, next run %s)",
            reminder_id, _iso_utc(occurrence), reminder.next_run_at,
        )
        if reminder.next_run_at is not None:
            schedule_occurrence(queue, reminder_id, reminder.next_run_at, now)
        return STALE

    await transport.send_message(
        reminder.chat_id,
        reminder.thread_id,
        format_reminder_text(reminder.title, reminder.description),
    )

    runs = reminder.run_count + 1
    following = None
    if reminder.repeat:
        rule = RepeatRule.model_validate(reminder.repeat)
        local_due = occurrence.astimezone(ZoneInfo(reminder.timezone))
        following = next_run(rule, local_due, runs, now=now)

    if following is None:
        matched = await db.update_reminder(
            reminder_id,
            expected_status="scheduled",
            expected_run_count=reminder.run_count,
            status="sent",
            run_count=runs,
            last_run_at=now,
            next_run_at=None,
            job_id=None,
        )
        outcome = SENT
    else:
        matched = await db.update_reminder(
            reminder_id,
            expected_status="scheduled",
            expected_run_count=reminder.run_count,
            run_count=runs,
            last_run_at=now,
            next_run_at=following,
        )
        outcome = REARMED
        if matched:
            handle = schedule_occurrence(queue, reminder_id, following, now)
            await db.update_reminder(reminder_id, expected_status="scheduled", job_id=handle.job_id)

    if not matched:
        _LOGGER.warning("Reminder %s changed while firing; leaving it as is", reminder_id)
        return SKIPPED
    _LOGGER.info("Reminder %s fired (%s, run %d)", reminder_id, outcome, runs)
    return outcome


async def cancel_reminder(reminder_id: str, queue: JobQueue) -> Dict[str, Any]:
    reminder = await db.get_reminder(reminder_id)
    if reminder is None:
        raise NotFoundError("Reminder not found")
    if reminder.status != "scheduled":
        raise ValidationError("Reminder is not active")

    if reminder.job_id:
        # Revocation failures are logged by the queue; the fire guard still holds.
        queue.cancel(JobHandle(JOB_KIND, reminder.job_id))

    if not await db.update_reminder(reminder_id, expected_status="scheduled", status="cancelled"):
        raise ValidationError("Reminder is not active")
    _LOGGER.info("Cancelled reminder %s", reminder_id)
    return {
        "id": reminder.reminder_id,
        "title": reminder.title,
        "message": f'Reminder cancelled: "{reminder.title}"',
    }


async def list_reminders(args: ListRemindersArgs) -> Dict[str, Any]:
    topic = await db.get_topic(args.topic_id)
    if topic is None:
        raise NotFoundError("Topic not found")
    start = args.range.start if args.range else None
    end = args.range.end if args.range else None
    rows = await db.list_reminders(topic.topic_id, start=start, end=end)
    reminders = [serialize_reminder(r) for r in rows]
    return {
        "count": len(reminders),
        "reminders": reminders,
        "message": f"Found {len(reminders)} active reminders",
    }


async def mark_reminder_failed(reminder_id: str, error: str) -> bool:
    """Terminal failure after the job's retries are spent."""
    matched = await db.mark_reminder_failed(reminder_id, error)
    if matched:
        _LOGGER.error("Reminder %s marked failed: %s", reminder_id, error)
    return matched


async def rearm_overdue_reminders(
    queue: JobQueue,
    now: Optional[datetime] = None,
    grace_seconds: int = 300,
) -> int:
    """Re-enqueue scheduled reminders whose occurrence is overdue by more than the grace period."""
    now = now or _utcnow()
    overdue = await db.fetch_overdue_reminders(now - timedelta(seconds=grace_seconds))
    for reminder in overdue:
        schedule_occurrence(queue, reminder.reminder_id, reminder.next_run_at, now, key_suffix=":rearm")
    if overdue:
        _LOGGER.warning("Re-armed %d overdue reminders", len(overdue))
    return len(overdue)
