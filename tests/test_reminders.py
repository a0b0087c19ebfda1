import pytest
from datetime import datetime, timedelta, timezone

import db
from app.services import reminders
from app.types.contracts import (
    CreateReminderArgs,
    DateRange,
    ListRemindersArgs,
    RepeatRule,
    ToolContext,
)
from app.types.errors import (
    DeliveryError,
    NotFoundError,
    UnsupportedFrequencyError,
    ValidationError,
)

CTX = ToolContext(chat_id=-1001234, thread_id=42, user_id=7)


def _args(topic, due, **kwargs):
    return CreateReminderArgs(topic_id=topic.topic_id, title="Water the plants", due=due, **kwargs)


async def _create(topic, queue, now, **kwargs):
    due = kwargs.pop("due", now + timedelta(seconds=2))
    result = await reminders.create_reminder(_args(topic, due, **kwargs), CTX, queue, now=now)
    return await db.get_reminder(result["id"]), result


@pytest.mark.asyncio
async def test_create_persists_and_enqueues_delayed_job(topic, queue, fake_celery, now):
    reminder, result = await _create(topic, queue, now, due=now + timedelta(minutes=30))

    assert reminder.status == "scheduled"
    assert reminder.next_run_at == now + timedelta(minutes=30)
    assert reminder.timezone == "Europe/Berlin"
    assert reminder.chat_id == topic.chat_id and reminder.thread_id == 42
    (call,) = fake_celery.sent_for("reminder")
    assert call.countdown == 1800
    assert call.kwargs == {"reminder_id": reminder.reminder_id, "occurrence": (now + timedelta(minutes=30)).isoformat()}
    assert reminder.job_id == call.task_id
    assert result["due"].endswith("+01:00")


@pytest.mark.asyncio
async def test_create_rejects_missing_topic(database, queue, now):
    args = CreateReminderArgs(topic_id="nope", title="x", due=now + timedelta(hours=1))
    with pytest.raises(NotFoundError):
        await reminders.create_reminder(args, CTX, queue, now=now)


@pytest.mark.asyncio
async def test_create_rejects_past_due(topic, queue, fake_celery, now):
    with pytest.raises(ValidationError, match="future"):
        await _create(topic, queue, now, due=now - timedelta(minutes=1))
    assert fake_celery.sent == []
    assert await db.list_reminders(topic.topic_id) == []


@pytest.mark.asyncio
async def test_create_rejects_cron(topic, queue, now):
    with pytest.raises(UnsupportedFrequencyError):
        await _create(topic, queue, now, repeat=RepeatRule(freq="CRON", cron="0 9 * * *"))


@pytest.mark.asyncio
async def test_one_shot_reminder_fires_once(topic, queue, fake_celery, transport, now):
    reminder, _ = await _create(topic, queue, now)
    occurrence = fake_celery.sent[0].kwargs["occurrence"]
    fired_at = now + timedelta(seconds=2)

    first = await reminders.fire_reminder(reminder.reminder_id, occurrence, transport=transport, queue=queue, now=fired_at)
    second = await reminders.fire_reminder(reminder.reminder_id, occurrence, transport=transport, queue=queue, now=fired_at)

    assert (first, second) == ("sent", "skipped")
    assert transport.sent == [(topic.chat_id, 42, "⏰ Reminder\n\nWater the plants")]
    stored = await db.get_reminder(reminder.reminder_id)
    assert stored.status == "sent"
    assert stored.run_count == 1
    assert stored.last_run_at == fired_at
    assert stored.job_id is None
    assert len(fake_celery.sent) == 1


@pytest.mark.asyncio
async def test_daily_reminder_rearms_next_occurrence(topic, queue, fake_celery, transport, now):
    due = datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc) + timedelta(hours=1)  # 10:00 Berlin
    reminder, _ = await _create(topic, queue, now, due=due, repeat=RepeatRule(freq="DAILY"))

    outcome = await reminders.fire_reminder(
        reminder.reminder_id, due.isoformat(), transport=transport, queue=queue, now=due
    )

    assert outcome == "rearmed"
    stored = await db.get_reminder(reminder.reminder_id)
    assert stored.status == "scheduled"
    assert stored.run_count == 1
    assert stored.next_run_at == due + timedelta(days=1)
    follow_up = fake_celery.sent[-1]
    assert follow_up.kwargs["occurrence"] == (due + timedelta(days=1)).isoformat()
    assert follow_up.countdown == 86400
    assert stored.job_id == follow_up.task_id


@pytest.mark.asyncio
async def test_counted_reminder_stops_after_last_run(topic, queue, fake_celery, transport, now):
    due = now + timedelta(hours=1)
    reminder, _ = await _create(topic, queue, now, due=due, repeat=RepeatRule(freq="DAILY", count=2))

    first = await reminders.fire_reminder(reminder.reminder_id, due, transport=transport, queue=queue, now=due)
    second_due = due + timedelta(days=1)
    second = await reminders.fire_reminder(
        reminder.reminder_id, second_due, transport=transport, queue=queue, now=second_due
    )

    assert (first, second) == ("rearmed", "sent")
    stored = await db.get_reminder(reminder.reminder_id)
    assert stored.run_count == 2
    assert stored.status == "sent"


@pytest.mark.asyncio
async def test_redelivered_old_occurrence_is_stale(topic, queue, fake_celery, transport, now):
    due = now + timedelta(hours=1)
    reminder, _ = await _create(topic, queue, now, due=due, repeat=RepeatRule(freq="DAILY"))
    await reminders.fire_reminder(reminder.reminder_id, due, transport=transport, queue=queue, now=due)
    jobs_before = len(fake_celery.sent)

    outcome = await reminders.fire_reminder(reminder.reminder_id, due, transport=transport, queue=queue, now=due)

    assert outcome == "stale"
    assert len(transport.sent) == 1
    # The job for the real next occurrence is already queued under the same key.
    assert len(fake_celery.sent) == jobs_before
    assert (await db.get_reminder(reminder.reminder_id)).run_count == 1


@pytest.mark.asyncio
async def test_fire_missing_reminder_raises_not_found(database, queue, transport, now):
    with pytest.raises(NotFoundError):
        await reminders.fire_reminder("missing", now, transport=transport, queue=queue, now=now)


@pytest.mark.asyncio
async def test_delivery_failure_leaves_reminder_scheduled(topic, queue, transport, now):
    reminder, _ = await _create(topic, queue, now)
    transport.error = DeliveryError("timeout")
    with pytest.raises(DeliveryError):
        await reminders.fire_reminder(
            reminder.reminder_id, reminder.next_run_at, transport=transport, queue=queue, now=now
        )
    stored = await db.get_reminder(reminder.reminder_id)
    assert stored.status == "scheduled"
    assert stored.run_count == 0


@pytest.mark.asyncio
async def test_cancel_then_fire_is_noop(topic, queue, fake_celery, transport, now):
    reminder, _ = await _create(topic, queue, now)

    result = await reminders.cancel_reminder(reminder.reminder_id, queue)
    outcome = await reminders.fire_reminder(
        reminder.reminder_id, reminder.next_run_at, transport=transport, queue=queue, now=now
    )

    assert "cancelled" in result["message"]
    assert fake_celery.control.revoked == [reminder.job_id]
    assert outcome == "skipped"
    assert transport.sent == []
    assert (await db.get_reminder(reminder.reminder_id)).status == "cancelled"


@pytest.mark.asyncio
async def test_cancel_survives_revoke_failure(topic, queue, fake_celery, now):
    reminder, _ = await _create(topic, queue, now)
    fake_celery.control.fail = True
    await reminders.cancel_reminder(reminder.reminder_id, queue)
    assert (await db.get_reminder(reminder.reminder_id)).status == "cancelled"


@pytest.mark.asyncio
async def test_cancel_only_from_scheduled(topic, queue, now):
    reminder, _ = await _create(topic, queue, now)
    await reminders.cancel_reminder(reminder.reminder_id, queue)
    with pytest.raises(ValidationError, match="not active"):
        await reminders.cancel_reminder(reminder.reminder_id, queue)
    with pytest.raises(NotFoundError):
        await reminders.cancel_reminder("missing", queue)


@pytest.mark.asyncio
async def test_mark_failed_only_from_scheduled(topic, queue, now):
    reminder, _ = await _create(topic, queue, now)
    assert await reminders.mark_reminder_failed(reminder.reminder_id, "telegram down") is True
    stored = await db.get_reminder(reminder.reminder_id)
    assert stored.status == "failed"
    assert stored.last_error == "telegram down"
    assert await reminders.mark_reminder_failed(reminder.reminder_id, "again") is False


@pytest.mark.asyncio
async def test_list_returns_scheduled_sorted_by_due(topic, queue, now):
    later, _ = await _create(topic, queue, now, due=now + timedelta(days=2))
    sooner, _ = await _create(topic, queue, now, due=now + timedelta(days=1))
    cancelled, _ = await _create(topic, queue, now, due=now + timedelta(hours=5))
    await reminders.cancel_reminder(cancelled.reminder_id, queue)

    result = await reminders.list_reminders(ListRemindersArgs(topic_id=topic.topic_id))
    assert result["count"] == 2
    assert [r["id"] for r in result["reminders"]] == [sooner.reminder_id, later.reminder_id]

    window = DateRange(start=now + timedelta(days=1, hours=12))
    ranged = await reminders.list_reminders(ListRemindersArgs(topic_id=topic.topic_id, range=window))
    assert [r["id"] for r in ranged["reminders"]] == [later.reminder_id]


@pytest.mark.asyncio
async def test_list_filters_recurring_by_next_run(topic, queue, transport, now):
    due = now + timedelta(hours=1)
    daily, _ = await _create(topic, queue, now, due=due, repeat=RepeatRule(freq="DAILY"))
    one_shot, _ = await _create(topic, queue, now, due=now + timedelta(days=2, hours=6))
    for day in range(3):
        occurrence = due + timedelta(days=day)
        await reminders.fire_reminder(
            daily.reminder_id, occurrence, transport=transport, queue=queue, now=occurrence
        )
    stored = await db.get_reminder(daily.reminder_id)
    assert stored.next_run_at == due + timedelta(days=3)

    window = DateRange(start=now + timedelta(days=2), end=now + timedelta(days=4))
    ranged = await reminders.list_reminders(ListRemindersArgs(topic_id=topic.topic_id, range=window))

    assert [r["id"] for r in ranged["reminders"]] == [one_shot.reminder_id, daily.reminder_id]
    assert ranged["reminders"][1]["due"] == "2025-03-13T10:00:00+01:00"


@pytest.mark.asyncio
async def test_topic_timezone_defaults_to_setting(database, monkeypatch):
    monkeypatch.setattr(db.db.settings, "DEFAULT_TIMEZONE", "America/New_York")
    topic = await db.insert_topic(-100777, None, "Elsewhere")
    assert (await db.get_topic(topic.topic_id)).timezone == "America/New_York"


@pytest.mark.asyncio
async def test_rearm_overdue_reminders(topic, queue, fake_celery, now):
    reminder, _ = await _create(topic, queue, now)
    much_later = now + timedelta(hours=1)

    assert await reminders.rearm_overdue_reminders(queue, now=much_later, grace_seconds=300) == 1
    assert await reminders.rearm_overdue_reminders(queue, now=much_later, grace_seconds=300) == 1
    rearmed = [c for c in fake_celery.sent if c.kwargs["reminder_id"] == reminder.reminder_id]
    assert len(rearmed) == 2  # original + one re-arm, repeated sweeps deduplicated
    assert rearmed[-1].countdown == 0
