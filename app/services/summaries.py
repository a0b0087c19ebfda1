"""Period summaries of topic conversations.

A summary is identified by (topic, grain, period key). Periods are calendar
windows in the topic's timezone; the database query uses their UTC bounds.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Union
from zoneinfo import ZoneInfo

from dateutil.relativedelta import relativedelta

import db
from app.jobs.queue import JobQueue
from app.llm.types import LLMMessage
from app.types.contracts import GRAINS
from app.types.errors import DuplicateError, NotFoundError, ProviderError, ValidationError

_LOGGER = logging.getLogger(__name__)

JOB_KIND = "summary"
FALLBACK_PROVIDER = "fallback"
FALLBACK_MODEL = "statistics"

GRAIN_LABELS = {"day": "day", "week": "week", "month": "month", "year": "year"}

SUMMARY_SYSTEM_PROMPT = (
    "You summarise group chat conversations. Write a concise summary of the "
    "conversation below: the main topics, decisions, open questions and action "
    "items. Use short bullet points and the language of the conversation."
)


@dataclass(frozen=True)
class Period:
    start: datetime
    end: datetime
    key: str


def _local_date(when: Union[datetime, date], zone: ZoneInfo) -> date:
    if isinstance(when, datetime):
        if when.tzinfo is None:
            raise ValueError("when must be timezone-aware")
        return when.astimezone(zone).date()
    return when


def _midnight_utc(day: date, zone: ZoneInfo) -> datetime:
    return datetime.combine(day, time.min, tzinfo=zone).astimezone(timezone.utc)


def period_window(grain: str, when: Union[datetime, date], tz: Union[str, ZoneInfo]) -> Period:
    """The [start, end) window of ``grain`` containing ``when`` in ``tz``."""
    zone = ZoneInfo(tz) if isinstance(tz, str) else tz
    day = _local_date(when, zone)

    if grain == "day":
        first, last = day, day + timedelta(days=1)
        key = day.isoformat()
    elif grain == "week":
        first = day - timedelta(days=day.weekday())
        last = first + timedelta(weeks=1)
        iso_year, iso_week, _ = day.isocalendar()
        key = f"{iso_year:04d}-W{iso_week:02d}"
    elif grain == "month":
        first = day.replace(day=1)
        last = first + relativedelta(months=1)
        key = f"{day.year:04d}-{day.month:02d}"
    elif grain == "year":
        first = date(day.year, 1, 1)
        last = date(day.year + 1, 1, 1)
        key = f"{day.year:04d}"
    else:
        raise ValidationError(f"Invalid grain: {grain}")

    return Period(_midnight_utc(first, zone), _midnight_utc(last, zone), key)


def serialize_summary(summary: db.Summary) -> Dict[str, Any]:
    return {
        "id": summary.summary_id,
        "grain": summary.grain,
        "period_key": summary.period_key,
        "text": summary.text,
        "message_count": summary.message_count,
        "period_start": summary.period_start.isoformat(),
        "period_end": summary.period_end.isoformat(),
        "created_at": summary.created_at.isoformat() if summary.created_at else None,
        "model": summary.model,
        "provider": summary.provider,
    }


def fallback_summary_text(
    messages: Sequence[db.Message], grain: str, topic_title: str
) -> str:
    """Deterministic statistics summary used when no provider answered."""
    users = sum(1 for m in messages if m.role == "user")
    assistant = sum(1 for m in messages if m.role == "assistant")
    words = Counter(
        w for m in messages for w in m.content.lower().split() if len(w) > 3
    )
    # Ties broken alphabetically so the text is stable.
    top = [w for w, _ in sorted(words.items(), key=lambda kv: (-kv[1], kv[0]))[:5]]

    lines = [
        f"📊 Summary for the {GRAIN_LABELS.get(grain, grain)}",
        "",
        f"Topic: {topic_title}",
        f"Total messages: {len(messages)}",
        f"From users: {users}",
        f"From the assistant: {assistant}",
    ]
    if top:
        lines += ["", f"Key words: {', '.join(top)}"]
    return "\n".join(lines)


def _transcript(messages: Sequence[db.Message], zone: ZoneInfo, max_chars: int) -> str:
    lines: List[str] = []
    used = 0
    for index, message in enumerate(messages):
        stamp = message.created_at.astimezone(zone).strftime("%Y-%m-%d %H:%M")
        line = f"[{stamp}] {message.role}: {message.content}"
        if used + len(line) > max_chars:
            lines.append(f"... ({len(messages) - index} more messages omitted)")
            break
        lines.append(line)
        used += len(line) + 1
    return "\n".join(lines)


async def generate_summary(
    topic_id: str,
    grain: str,
    when: Union[datetime, date],
    *,
    router=None,
    timezone: Optional[str] = None,
    allow_fallback: bool = True,
    max_chars: int = 12000,
) -> Optional[db.Summary]:
    """Return the summary for the period containing ``when``, creating it if needed.

    Returns None when the period has no user or assistant messages. With
    ``allow_fallback`` a provider failure produces a statistics summary
    instead of raising ProviderError.
    """
    topic = await db.get_topic(topic_id)
    if topic is None:
        raise NotFoundError(f"Topic {topic_id} not found")
    tz_name = timezone or topic.timezone
    zone = ZoneInfo(tz_name)
    period = period_window(grain, when, zone)

    existing = await db.get_summary(topic_id, grain, period.key)
    if existing is not None:
        _LOGGER.info("Summary already exists for %s %s in topic %s", grain, period.key, topic_id)
        return existing

    messages = await db.fetch_messages(topic_id, period.start, period.end)
    if not messages:
        _LOGGER.info("No messages found for %s %s in topic %s", grain, period.key, topic_id)
        return None

    try:
        if router is None:
            raise ProviderError(FALLBACK_PROVIDER, "no LLM router configured")
        prompt = [
            LLMMessage(role="system", content=SUMMARY_SYSTEM_PROMPT),
            LLMMessage(
                role="user",
                content=(
                    f"Topic: {topic.title}\nPeriod: {grain} {period.key} ({tz_name})\n\n"
                    + _transcript(messages, zone, max_chars)
                ),
            ),
        ]
        response = await router.chat(prompt, provider=topic.provider)
        text = (response.content or "").strip()
        if not text:
            raise ProviderError(response.provider, "empty summary")
        provider, model = response.provider, response.model
    except ProviderError as exc:
        if not allow_fallback:
            raise
        _LOGGER.warning("Summary generation failed, using statistics fallback: %s", exc)
        text = fallback_summary_text(messages, grain, topic.title)
        provider, model = FALLBACK_PROVIDER, FALLBACK_MODEL

    summary = db.Summary(
        topic_id=topic.topic_id,
        chat_id=topic.chat_id,
        thread_id=topic.thread_id,
        grain=grain,
        period_key=period.key,
        text=text,
        message_count=len(messages),
        period_start=period.start,
        period_end=period.end,
        model=model,
        provider=provider,
    )
    try:
        await db.insert_summary(summary)
    except DuplicateError:
        _LOGGER.info("Concurrent summary for %s %s in topic %s won the insert", grain, period.key, topic_id)
        return await db.get_summary(topic_id, grain, period.key)
    _LOGGER.info("Summary created for %s %s in topic %s", grain, period.key, topic_id)
    return summary


async def request_summary(
    topic_id: str,
    grain: str,
    when: Union[datetime, date, None],
    queue: JobQueue,
    *,
    timezone: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Return a stored summary, or enqueue its generation exactly once."""
    if grain not in GRAINS:
        raise ValidationError(f"Invalid grain: {grain}")
    topic = await db.get_topic(topic_id)
    if topic is None:
        raise NotFoundError("Topic not found")
    tz_name = timezone or topic.timezone
    period = period_window(grain, when or now or datetime.now(tz=ZoneInfo(tz_name)), tz_name)

    existing = await db.get_summary(topic_id, grain, period.key)
    if existing is not None:
        return {
            "summary": serialize_summary(existing),
            "generating": False,
            "message": f"📊 Summary for the {GRAIN_LABELS[grain]} ({period.key})\n\n{existing.text}",
        }

    queue.enqueue(
        JOB_KIND,
        {
            "topic_id": topic_id,
            "grain": grain,
            "date": period.start.isoformat(),
            "timezone": tz_name,
        },
        idempotency_key=summary_job_key(topic_id, grain, period.key),
    )
    _LOGGER.info("Initiated summary generation for %s %s in topic %s", grain, period.key, topic_id)
    return {
        "summary": None,
        "generating": True,
        "period_key": period.key,
        "message": (
            f"🔄 Generating the summary for the {GRAIN_LABELS[grain]} ({period.key}). "
            "It will be ready shortly; ask again in a minute."
        ),
    }


def summary_job_key(topic_id: str, grain: str, period_key: str) -> str:
    return f"summary:{topic_id}:{grain}:{period_key}"


async def release_request(
    topic_id: str,
    grain: str,
    when: Union[datetime, date],
    queue: JobQueue,
    *,
    timezone: Optional[str] = None,
) -> None:
    """Let a later request enqueue this period again after a job ended without a summary."""
    tz_name = timezone
    if tz_name is None:
        topic = await db.get_topic(topic_id)
        if topic is None:
            return
        tz_name = topic.timezone
    period = period_window(grain, when, tz_name)
    queue.release(summary_job_key(topic_id, grain, period.key))


def due_auto_periods(local_now: datetime) -> List[tuple]:
    """(grain, anchor date) pairs for the periods that closed before ``local_now``."""
    today = local_now.date()
    yesterday = today - timedelta(days=1)
    periods = [("day", yesterday)]
    if today.weekday() == 0:
        periods.append(("week", yesterday))
    if today.day == 1:
        periods.append(("month", yesterday))
        if today.month == 1:
            periods.append(("year", yesterday))
    return periods


async def schedule_auto_summaries(queue: JobQueue, now: Optional[datetime] = None) -> int:
    """Enqueue summaries of the just-closed periods for every auto-summary topic."""
    now = now or datetime.now(tz=timezone.utc)
    requested = 0
    for topic in await db.list_auto_summary_topics():
        local_now = now.astimezone(ZoneInfo(topic.timezone))
        for grain, anchor in due_auto_periods(local_now):
            result = await request_summary(topic.topic_id, grain, anchor, queue)
            if result["generating"]:
                requested += 1
    _LOGGER.info("Auto summaries requested: %d", requested)
    return requested
