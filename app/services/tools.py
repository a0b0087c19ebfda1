"""Tool-call surface for reminders, summaries and notes.

Each tool takes JSON arguments, validates them with the models in
``app.types.contracts`` and returns a ``ToolResult`` envelope. Callers never
see stack traces: expected failures become their plain message and anything
else is logged and reported generically.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import pydantic

from app.jobs.queue import JobQueue
from app.llm.types import FunctionSpec, LLMMessage, ToolCall, ToolDefinition
from app.services import notes, reminders, summaries
from app.types.contracts import (
    AppendNoteArgs,
    CancelReminderArgs,
    CreateReminderArgs,
    GetSummaryArgs,
    GetContextWindowArgs,
    ListRemindersArgs,
    ToolContext,
    ToolResult,
)
from app.types.errors import AssistantError, ValidationError

_LOGGER = logging.getLogger(__name__)

_WEEKDAY_ENUM = ["MO", "TU", "WE", "TH", "FR", "SA", "SU"]

TOOLS: List[ToolDefinition] = [
    ToolDefinition(
        function=FunctionSpec(
            name="create_reminder",
            description="Create a new reminder (one-time or recurring)",
            parameters={
                "type": "object",
                "properties": {
                    "topic_id": {"type": "string", "description": "Topic ID where the reminder belongs"},
                    "title": {"type": "string", "description": "Reminder title"},
                    "due": {
                        "type": "string",
                        "description": 'Due date/time in ISO 8601 with offset (e.g. "2024-01-15T10:00:00+01:00")',
                    },
                    "description": {"type": "string", "description": "Additional details for the reminder"},
                    "timezone": {
                        "type": "string",
                        "description": "IANA timezone for the reminder (defaults to the topic timezone)",
                    },
                    "repeat": {
                        "type": "object",
                        "description": "Repeat configuration for recurring reminders",
                        "properties": {
                            "freq": {"type": "string", "enum": ["DAILY", "WEEKLY", "MONTHLY"]},
                            "interval": {"type": "integer", "minimum": 1, "description": "Default 1"},
                            "by_day": {
                                "type": "array",
                                "items": {"type": "string", "enum": _WEEKDAY_ENUM},
                                "description": "Days of week for weekly repetition",
                            },
                            "until": {"type": "string", "description": "End of repetition (ISO 8601)"},
                            "count": {"type": "integer", "minimum": 1, "description": "Maximum number of occurrences"},
                        },
                        "required": ["freq"],
                    },
                },
                "required": ["topic_id", "title", "due"],
            },
        )
    ),
    ToolDefinition(
        function=FunctionSpec(
            name="list_reminders",
            description="List active reminders for a topic",
            parameters={
                "type": "object",
                "properties": {
                    "topic_id": {"type": "string", "description": "Topic ID to list reminders for"},
                    "range": {
                        "type": "object",
                        "description": "Optional due-date filter",
                        "properties": {
                            "start": {"type": "string", "description": "Start in ISO 8601"},
                            "end": {"type": "string", "description": "End in ISO 8601"},
                        },
                    },
                },
                "required": ["topic_id"],
            },
        )
    ),
    ToolDefinition(
        function=FunctionSpec(
            name="cancel_reminder",
            description="Cancel an active reminder",
            parameters={
                "type": "object",
                "properties": {
                    "reminder_id": {"type": "string", "description": "ID of the reminder to cancel"},
                },
                "required": ["reminder_id"],
            },
        )
    ),
    ToolDefinition(
        function=FunctionSpec(
            name="get_summary",
            description="Get or generate a summary of a topic for a time period",
            parameters={
                "type": "object",
                "properties": {
                    "topic_id": {"type": "string", "description": "Topic ID to summarise"},
                    "grain": {"type": "string", "enum": ["day", "week", "month", "year"]},
                    "date": {
                        "type": "string",
                        "description": "Date inside the period (YYYY-MM-DD). Defaults to today.",
                    },
                },
                "required": ["topic_id", "grain"],
            },
        )
    ),
    ToolDefinition(
        function=FunctionSpec(
            name="append_note",
            description="Save a note to the topic",
            parameters={
                "type": "object",
                "properties": {
                    "topic_id": {"type": "string", "description": "Topic ID where the note belongs"},
                    "text": {"type": "string", "description": "Note content"},
                    "tags": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Optional tags for the note",
                    },
                },
                "required": ["topic_id", "text"],
            },
        )
    ),
    ToolDefinition(
        function=FunctionSpec(
            name="get_context_window",
            description="Get recent messages from the topic for context",
            parameters={
                "type": "object",
                "properties": {
                    "topic_id": {"type": "string", "description": "Topic ID to get messages from"},
                    "limit": {
                        "type": "integer",
                        "minimum": 1,
                        "maximum": 100,
                        "description": "Number of recent messages to retrieve (default 20)",
                    },
                },
                "required": ["topic_id"],
            },
        )
    ),
]


@dataclass
class ToolDeps:
    queue: JobQueue


def _validation_message(exc: pydantic.ValidationError) -> str:
    parts = []
    for err in exc.errors():
        where = ".".join(str(p) for p in err.get("loc", ())) or "arguments"
        parts.append(f"{where}: {err.get('msg')}")
    return "Invalid arguments: " + "; ".join(parts)


async def _create_reminder(args: Dict[str, Any], context: ToolContext, deps: ToolDeps):
    return await reminders.create_reminder(CreateReminderArgs.model_validate(args), context, deps.queue)


async def _list_reminders(args: Dict[str, Any], context: ToolContext, deps: ToolDeps):
    return await reminders.list_reminders(ListRemindersArgs.model_validate(args))


async def _cancel_reminder(args: Dict[str, Any], context: ToolContext, deps: ToolDeps):
    parsed = CancelReminderArgs.model_validate(args)
    return await reminders.cancel_reminder(parsed.reminder_id, deps.queue)


async def _get_summary(args: Dict[str, Any], context: ToolContext, deps: ToolDeps):
    parsed = GetSummaryArgs.model_validate(args)
    return await summaries.request_summary(parsed.topic_id, parsed.grain, parsed.date, deps.queue)


async def _append_note(args: Dict[str, Any], context: ToolContext, deps: ToolDeps):
    return await notes.append_note(AppendNoteArgs.model_validate(args), context)


async def _get_context_window(args: Dict[str, Any], context: ToolContext, deps: ToolDeps):
    return await notes.get_context_window(GetContextWindowArgs.model_validate(args))


_HANDLERS: Dict[str, Callable[[Dict[str, Any], ToolContext, ToolDeps], Awaitable[Any]]] = {
    "create_reminder": _create_reminder,
    "list_reminders": _list_reminders,
    "cancel_reminder": _cancel_reminder,
    "get_summary": _get_summary,
    "append_note": _append_note,
    "get_context_window": _get_context_window,
}


def is_valid_tool(name: str) -> bool:
    return name in _HANDLERS


async def execute_tool(
    name: str,
    arguments: Union[str, Dict[str, Any], None],
    context: ToolContext,
    deps: ToolDeps,
) -> ToolResult:
    handler = _HANDLERS.get(name)
    if handler is None:
        return ToolResult.fail(f"Unknown tool: {name}")

    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments or "{}")
        except json.JSONDecodeError:
            _LOGGER.error("Failed to parse tool arguments for %s: %r", name, arguments)
            return ToolResult.fail("Invalid tool arguments format")
    if not isinstance(arguments, dict):
        return ToolResult.fail("Invalid tool arguments format")

    _LOGGER.info("Executing tool: %s", name)
    try:
        result = await handler(arguments, context, deps)
    except pydantic.ValidationError as exc:
        return ToolResult.fail(ValidationError(_validation_message(exc)).message)
    except AssistantError as exc:
        _LOGGER.info("Tool %s failed: %s", name, exc.message)
        return ToolResult.fail(exc.message)
    except Exception:  # noqa: BLE001
        _LOGGER.exception("Error executing tool %s", name)
        return ToolResult.fail("Something went wrong, please try again later")
    _LOGGER.info("Tool %s executed: success", name)
    return ToolResult.ok(result)


async def execute_tool_calls(
    tool_calls: List[ToolCall],
    context: ToolContext,
    deps: ToolDeps,
) -> List[LLMMessage]:
    """Run each requested call and return the ``tool`` messages to send back to the model."""
    results: List[LLMMessage] = []
    for call in tool_calls:
        outcome = await execute_tool(call.function.name, call.function.arguments, context, deps)
        results.append(
            LLMMessage(
                role="tool",
                name=call.function.name,
                tool_call_id=call.id,
                content=json.dumps(outcome.envelope(), ensure_ascii=False, default=str),
            )
        )
    return results


def get_tool(name: str) -> Optional[ToolDefinition]:
    return next((t for t in TOOLS if t.function.name == name), None)
