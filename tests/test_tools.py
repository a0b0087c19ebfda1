import json
from datetime import datetime, timedelta, timezone

import pytest

import db
from app.llm.types import ToolCall, ToolFunction
from app.services import tools
from app.services.tools import TOOLS, ToolDeps, execute_tool, execute_tool_calls
from app.types.contracts import ToolContext

CTX = ToolContext(chat_id=-1001234, thread_id=42, user_id=7)


def _future(hours=1):
    return (datetime.now(timezone.utc) + timedelta(hours=hours)).isoformat()


def test_tool_definitions_are_json_schemas():
    names = [t.function.name for t in TOOLS]
    assert names == [
        "create_reminder", "list_reminders", "cancel_reminder", "get_summary", "append_note", "get_context_window",
    ]
    for tool in TOOLS:
        assert tool.type == "function"
        assert tool.function.parameters["type"] == "object"
        assert set(tool.function.parameters["required"]) <= set(tool.function.parameters["properties"])


@pytest.mark.asyncio
async def test_create_list_cancel_round(topic, queue):
    deps = ToolDeps(queue=queue)
    created = await execute_tool(
        "create_reminder",
        json.dumps({"topic_id": topic.topic_id, "title": "Standup", "due": _future()}),
        CTX,
        deps,
    )
    assert created.success, created.error
    reminder_id = created.result["id"]

    listed = await execute_tool("list_reminders", {"topic_id": topic.topic_id}, CTX, deps)
    assert listed.envelope()["result"]["count"] == 1

    cancelled = await execute_tool("cancel_reminder", {"reminder_id": reminder_id}, CTX, deps)
    assert cancelled.success

    again = await execute_tool("cancel_reminder", {"reminder_id": reminder_id}, CTX, deps)
    assert again.envelope() == {"success": False, "error": "Reminder is not active"}


@pytest.mark.asyncio
async def test_validation_errors_are_plain_messages(topic, queue):
    result = await execute_tool(
        "create_reminder",
        {"topic_id": topic.topic_id, "title": "x", "due": "2025-01-01T09:00:00"},
        CTX,
        ToolDeps(queue=queue),
    )
    assert result.success is False
    assert result.error.startswith("Invalid arguments: due")
    assert "Traceback" not in result.error


@pytest.mark.asyncio
async def test_not_found_is_reported(database, queue):
    result = await execute_tool("list_reminders", {"topic_id": "missing"}, CTX, ToolDeps(queue=queue))
    assert result.envelope() == {"success": False, "error": "Topic not found"}


@pytest.mark.asyncio
async def test_get_summary_starts_generation(topic, queue, fake_celery):
    result = await execute_tool(
        "get_summary", {"topic_id": topic.topic_id, "grain": "month", "date": "2025-02-14"}, CTX, ToolDeps(queue=queue)
    )
    assert result.success
    assert result.result["generating"] is True
    assert result.result["period_key"] == "2025-02"
    assert len(fake_celery.sent_for("summary")) == 1


@pytest.mark.asyncio
async def test_unknown_tool_and_bad_json(queue):
    deps = ToolDeps(queue=queue)
    assert (await execute_tool("make_coffee", {}, CTX, deps)).error == "Unknown tool: make_coffee"
    assert (await execute_tool("list_reminders", "{not json", CTX, deps)).error == "Invalid tool arguments format"


@pytest.mark.asyncio
async def test_unexpected_errors_are_hidden(monkeypatch, queue):
    async def explode(args, context, deps):
        raise RuntimeError("connection string postgres://secret")

    monkeypatch.setitem(tools._HANDLERS, "list_reminders", explode)
    result = await execute_tool("list_reminders", {"topic_id": "t"}, CTX, ToolDeps(queue=queue))
    assert result.success is False
    assert "secret" not in result.error


@pytest.mark.asyncio
async def test_execute_tool_calls_returns_tool_messages(database, queue):
    calls = [ToolCall(id="c1", function=ToolFunction(name="list_reminders", arguments='{"topic_id": "missing"}'))]
    (message,) = await execute_tool_calls(calls, CTX, ToolDeps(queue=queue))
    assert message.role == "tool"
    assert message.tool_call_id == "c1"
    assert json.loads(message.content) == {"success": False, "error": "Topic not found"}


@pytest.mark.asyncio
async def test_append_note_is_stored_and_shown_in_context(topic, queue):
    deps = ToolDeps(queue=queue)
    earlier = datetime.now(timezone.utc) - timedelta(minutes=1)
    await db.insert_message(topic, "user", "What did we decide?", created_at=earlier)
    saved = await execute_tool(
        "append_note", {"topic_id": topic.topic_id, "text": " Book the venue ", "tags": ["todo", " "]}, CTX, deps
    )
    assert saved.success, saved.error
    assert saved.result["text"] == "Book the venue"
    assert saved.result["tags"] == ["todo"]

    window = await execute_tool("get_context_window", {"topic_id": topic.topic_id}, CTX, deps)
    messages = window.result["messages"]
    assert window.result["message_count"] == 2
    assert [m["role"] for m in messages] == ["user", "system"]
    assert messages[1]["content"] == "📝 Note: Book the venue\n\nTags: todo"
    assert messages[1]["user_id"] == 7


@pytest.mark.asyncio
async def test_context_window_keeps_newest_messages(topic, queue):
    start = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)
    for i in range(5):
        await db.insert_message(topic, "user", f"message {i}", created_at=start + timedelta(minutes=i))

    result = await execute_tool(
        "get_context_window", {"topic_id": topic.topic_id, "limit": 2}, CTX, ToolDeps(queue=queue)
    )
    assert [m["content"] for m in result.result["messages"]] == ["message 3", "message 4"]


@pytest.mark.asyncio
async def test_notes_tools_validate_arguments(topic, queue):
    deps = ToolDeps(queue=queue)
    too_many = await execute_tool("get_context_window", {"topic_id": topic.topic_id, "limit": 101}, CTX, deps)
    assert too_many.error.startswith("Invalid arguments: limit")
    blank = await execute_tool("append_note", {"topic_id": topic.topic_id, "text": "   "}, CTX, deps)
    assert blank.success is False
    missing = await execute_tool("append_note", {"topic_id": "missing", "text": "hi"}, CTX, deps)
    assert missing.envelope() == {"success": False, "error": "Topic not found"}
