"""
Async DB helpers for topics, messages, reminders and summaries.
Uses SQLAlchemy 2.0 (asyncpg in production, aiosqlite in tests) – no raw SQL
strings in app code.
"""

from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Optional, Sequence
from uuid import uuid4

from sqlalchemy import (
    JSON, BigInteger, DateTime, ForeignKey, Index, Text, TypeDecorator,
    UniqueConstraint, func, select, update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.ext.asyncio import (
    AsyncSession, async_sessionmaker, create_async_engine,
)

from app.types.errors import DuplicateError
from config import settings


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


def require_aware(value: Optional[datetime], field: str) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        raise ValueError(f"{field} must be timezone-aware")
    return value


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamps, stored and returned in UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        require_aware(value, "timestamp")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ──────────────────────────────────────────────────────────────────────
# 1. Declarative metadata
# ──────────────────────────────────────────────────────────────────────
class Base(DeclarativeBase):
    pass

# ──────────────────────────────────────────────────────────────────────
# 2. Lazy engine / session factory
# ──────────────────────────────────────────────────────────────────────
_engine = None
_session_maker: async_sessionmaker[AsyncSession] | None = None

def database_url() -> str:
    url = os.getenv("DATABASE_URL") or os.getenv("DATABASE_PUBLIC_URL")
    if not url:
        raise RuntimeError("DATABASE_URL not set")
    if url.startswith("sqlite"):
        return url
    if "+asyncpg" not in url:
        url = url.replace("postgres://", "postgresql+asyncpg://", 1).replace(
            "postgresql://", "postgresql+asyncpg://", 1
        )
    return url

def get_engine():
    global _engine
    if _engine is None:
        url = database_url()
        if url.startswith("sqlite"):
            _engine = create_async_engine(url)
        else:
            _engine = create_async_engine(url, pool_size=5, max_overflow=5)
    return _engine

def get_session() -> AsyncGenerator[AsyncSession, None]:
    global _session_maker
    if _session_maker is None:
        _session_maker = async_sessionmaker(get_engine(), expire_on_commit=False)
    async def _session_scope():
        async with _session_maker() as session:
            yield session
    return _session_scope()

# ──────────────────────────────────────────────────────────────────────
# 3. ORM models
# ──────────────────────────────────────────────────────────────────────

class Topic(Base):
    __tablename__ = "topics"
    __table_args__ = (UniqueConstraint("chat_id", "thread_id", name="uq_topics_chat_thread"),)

    topic_id:     Mapped[str]  = mapped_column(primary_key=True, default=_new_id)
    chat_id:      Mapped[int]  = mapped_column(BigInteger)
    thread_id:    Mapped[int | None] = mapped_column(BigInteger)
    title:        Mapped[str]
    timezone:     Mapped[str]  = mapped_column(default=lambda: settings.DEFAULT_TIMEZONE)
    provider:     Mapped[str | None]
    model:        Mapped[str | None]
    auto_summary: Mapped[bool] = mapped_column(default=True)
    is_active:    Mapped[bool] = mapped_column(default=True)
    created_at:   Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (Index("ix_messages_topic_created", "topic_id", "created_at"),)

    message_id:          Mapped[str] = mapped_column(primary_key=True, default=_new_id)
    topic_id:            Mapped[str] = mapped_column(ForeignKey("topics.topic_id"))
    chat_id:             Mapped[int] = mapped_column(BigInteger)
    thread_id:           Mapped[int | None] = mapped_column(BigInteger)
    telegram_message_id: Mapped[int | None] = mapped_column(BigInteger)
    user_id:             Mapped[int | None] = mapped_column(BigInteger)
    role:                Mapped[str]
    content:             Mapped[str] = mapped_column(Text)
    provider:            Mapped[str | None]
    model:               Mapped[str | None]
    prompt_tokens:       Mapped[int] = mapped_column(default=0)
    completion_tokens:   Mapped[int] = mapped_column(default=0)
    latency_ms:          Mapped[int] = mapped_column(default=0)
    created_at:          Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)


class Reminder(Base):
    __tablename__ = "reminders"
    __table_args__ = (
        Index("ix_reminders_topic_status", "topic_id", "status"),
        Index("ix_reminders_next_run_status", "next_run_at", "status"),
    )

    reminder_id:  Mapped[str]  = mapped_column(primary_key=True, default=_new_id)
    topic_id:     Mapped[str]  = mapped_column(ForeignKey("topics.topic_id"))
    chat_id:      Mapped[int]  = mapped_column(BigInteger)
    thread_id:    Mapped[int | None] = mapped_column(BigInteger)
    user_id:      Mapped[int | None] = mapped_column(BigInteger)
    title:        Mapped[str]
    description:  Mapped[str | None] = mapped_column(Text)
    due_at:       Mapped[datetime] = mapped_column(UTCDateTime)
    timezone:     Mapped[str]
    status:       Mapped[str]  = mapped_column(default="scheduled")
    repeat:       Mapped[dict[str, Any] | None] = mapped_column(JSON)
    job_id:       Mapped[str | None]
    next_run_at:  Mapped[datetime | None] = mapped_column(UTCDateTime)
    last_run_at:  Mapped[datetime | None] = mapped_column(UTCDateTime)
    run_count:    Mapped[int]  = mapped_column(default=0)
    last_error:   Mapped[str | None] = mapped_column(Text)
    created_at:   Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)
    updated_at:   Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow)


class Summary(Base):
    __tablename__ = "summaries"
    __table_args__ = (
        UniqueConstraint("topic_id", "grain", "period_key", name="uq_summaries_topic_grain_period"),
    )

    summary_id:    Mapped[str] = mapped_column(primary_key=True, default=_new_id)
    topic_id:      Mapped[str] = mapped_column(ForeignKey("topics.topic_id"))
    chat_id:       Mapped[int] = mapped_column(BigInteger)
    thread_id:     Mapped[int | None] = mapped_column(BigInteger)
    grain:         Mapped[str]
    period_key:    Mapped[str]
    text:          Mapped[str] = mapped_column(Text)
    message_count: Mapped[int]
    period_start:  Mapped[datetime] = mapped_column(UTCDateTime)
    period_end:    Mapped[datetime] = mapped_column(UTCDateTime)
    model:         Mapped[str]
    provider:      Mapped[str]
    created_at:    Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)


# ──────────────────────────────────────────────────────────────────────
# 4. DDL helper (run once at startup or from Alembic)
# ──────────────────────────────────────────────────────────────────────
async def create_all():
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ──────────────────────────────────────────────────────────────────────
# 5. CRUD helpers
# ──────────────────────────────────────────────────────────────────────

# 5.1 Topics -----------------------------------------------------------
async def insert_topic(
    chat_id: int,
    thread_id: int | None,
    title: str,
    tz_name: str | None = None,
    provider: str | None = None,
    auto_summary: bool = True,
) -> Topic:
    topic = Topic(
        chat_id=chat_id,
        thread_id=thread_id,
        title=title,
        timezone=tz_name or settings.DEFAULT_TIMEZONE,
        provider=provider,
        auto_summary=auto_summary,
    )
    async for s in get_session():
        s.add(topic)
        await s.commit()
    return topic


async def get_topic(topic_id: str) -> Topic | None:
    async for s in get_session():
        topic = await s.get(Topic, topic_id)
    return topic


async def list_auto_summary_topics() -> Sequence[Topic]:
    async for s in get_session():
        res = await s.execute(
            select(Topic)
            .where(Topic.is_active.is_(True), Topic.auto_summary.is_(True))
            .order_by(Topic.created_at)
        )
        topics = res.scalars().all()
    return topics


# 5.2 Messages ---------------------------------------------------------
async def insert_message(
    topic: Topic,
    role: str,
    content: str,
    *,
    user_id: int | None = None,
    telegram_message_id: int | None = None,
    created_at: datetime | None = None,
    response=None,
) -> Message:
    """Persist one turn; an LLMResponse, when given, is embedded as metadata."""
    message = Message(
        topic_id=topic.topic_id,
        chat_id=topic.chat_id,
        thread_id=topic.thread_id,
        telegram_message_id=telegram_message_id,
        user_id=user_id,
        role=role,
        content=content,
        created_at=require_aware(created_at, "created_at") or _utcnow(),
    )
    if response is not None:
        message.provider = response.provider
        message.model = response.model
        message.prompt_tokens = response.usage.prompt_tokens
        message.completion_tokens = response.usage.completion_tokens
        message.latency_ms = response.latency_ms
    async for s in get_session():
        s.add(message)
        await s.commit()
    return message


async def fetch_messages(
    topic_id: str,
    start: datetime,
    end: datetime,
    roles: Sequence[str] = ("user", "assistant"),
) -> Sequence[Message]:
    """Messages with ``start <= created_at < end``, oldest first."""
    require_aware(start, "start")
    require_aware(end, "end")
    async for s in get_session():
        res = await s.execute(
            select(Message)
            .where(
                Message.topic_id == topic_id,
                Message.created_at >= start,
                Message.created_at < end,
                Message.role.in_(roles),
            )
            .order_by(Message.created_at, Message.message_id)
        )
        messages = res.scalars().all()
    return messages


async def fetch_recent_messages(
    topic_id: str,
    limit: int = 20,
    roles: Sequence[str] = ("system", "user", "assistant"),
) -> Sequence[Message]:
    """The newest ``limit`` messages of a topic, returned oldest first."""
    async for s in get_session():
        res = await s.execute(
            select(Message)
            .where(Message.topic_id == topic_id, Message.role.in_(roles))
            .order_by(Message.created_at.desc(), Message.message_id.desc())
            .limit(limit)
        )
        messages = list(res.scalars().all())
    messages.reverse()
    return messages


# 5.3 Reminders --------------------------------------------------------
async def insert_reminder(reminder: Reminder) -> Reminder:
    require_aware(reminder.due_at, "due_at")
    async for s in get_session():
        s.add(reminder)
        await s.commit()
    return reminder


async def get_reminder(reminder_id: str) -> Reminder | None:
    async for s in get_session():
        reminder = await s.get(Reminder, reminder_id)
    return reminder


async def update_reminder(
    reminder_id: str,
    *,
    expected_status: str | None = None,
    expected_run_count: int | None = None,
    **values: Any,
) -> bool:
    """Conditional update; True when exactly one row matched the guards."""
    conditions = [Reminder.reminder_id == reminder_id]
    if expected_status is not None:
        conditions.append(Reminder.status == expected_status)
    if expected_run_count is not None:
        conditions.append(Reminder.run_count == expected_run_count)
    values.setdefault("updated_at", _utcnow())
    async for s in get_session():
        res = await s.execute(update(Reminder).where(*conditions).values(**values))
        await s.commit()
        matched = res.rowcount == 1
    return matched


async def mark_reminder_failed(reminder_id: str, err: str) -> bool:
    return await update_reminder(
        reminder_id, expected_status="scheduled", status="failed", last_error=err
    )


async def list_reminders(
    topic_id: str,
    status: str | None = "scheduled",
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 100,
) -> Sequence[Reminder]:
    async for s in get_session():
        # Recurring reminders are listed by their upcoming occurrence.
        upcoming = func.coalesce(Reminder.next_run_at, Reminder.due_at)
        stmt = select(Reminder).where(Reminder.topic_id == topic_id)
        if status:
            stmt = stmt.where(Reminder.status == status)
        if start:
            stmt = stmt.where(upcoming >= start)
        if end:
            stmt = stmt.where(upcoming <= end)
        stmt = stmt.order_by(upcoming, Reminder.reminder_id).limit(limit)
        res = await s.execute(stmt)
        reminders = res.scalars().all()
    return reminders


async def fetch_overdue_reminders(before: datetime, limit: int = 100) -> Sequence[Reminder]:
    async for s in get_session():
        res = await s.execute(
            select(Reminder)
            .where(Reminder.status == "scheduled", Reminder.next_run_at <= before)
            .order_by(Reminder.next_run_at)
            .limit(limit)
        )
        reminders = res.scalars().all()
    return reminders


# 5.4 Summaries --------------------------------------------------------
async def get_summary(topic_id: str, grain: str, period_key: str) -> Summary | None:
    async for s in get_session():
        res = await s.execute(
            select(Summary).where(
                Summary.topic_id == topic_id,
                Summary.grain == grain,
                Summary.period_key == period_key,
            )
        )
        summary = res.scalar_one_or_none()
    return summary


async def insert_summary(summary: Summary) -> Summary:
    """Insert; raises DuplicateError when (topic, grain, period_key) exists."""
    conflict = None
    async for s in get_session():
        s.add(summary)
        try:
            await s.commit()
        except IntegrityError as exc:
            await s.rollback()
            conflict = exc
    if conflict is not None:
        raise DuplicateError(
            f"summary {summary.grain} {summary.period_key} already exists"
        ) from conflict
    return summary


async def count_summaries(topic_id: str) -> int:
    async for s in get_session():
        res = await s.execute(select(func.count()).select_from(Summary).where(Summary.topic_id == topic_id))
        total = res.scalar_one()
    return total


async def dispose_engine():
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_maker = None
