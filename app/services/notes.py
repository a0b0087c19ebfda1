"""Topic notes and the recent-message context window."""

from __future__ import annotations

import logging
from typing import Any, Dict

import db
from app.types.contracts import AppendNoteArgs, GetContextWindowArgs, ToolContext
from app.types.errors import NotFoundError

_LOGGER = logging.getLogger(__name__)

NOTE_PREFIX = "📝 Note: "


def format_note(text: str, tags) -> str:
    content = f"{NOTE_PREFIX}{text}"
    if tags:
        content += f"\n\nTags: {', '.join(tags)}"
    return content


async def append_note(args: AppendNoteArgs, ctx: ToolContext) -> Dict[str, Any]:
    """Store a note as a system message so it shows up in the context window but not in summaries."""
    topic = await db.get_topic(args.topic_id)
    if topic is None:
        raise NotFoundError("Topic not found")
    message = await db.insert_message(topic, "system", format_note(args.text, args.tags), user_id=ctx.user_id)
    _LOGGER.info("Saved note to topic %s: %.50s", topic.topic_id, args.text)
    return {
        "note_id": message.message_id,
        "text": args.text,
        "tags": args.tags,
        "message": f"📝 Note saved\n\n{args.text}",
    }


async def get_context_window(args: GetContextWindowArgs) -> Dict[str, Any]:
    topic = await db.get_topic(args.topic_id)
    if topic is None:
        raise NotFoundError("Topic not found")
    rows = await db.fetch_recent_messages(topic.topic_id, limit=args.limit)
    messages = [
        {
            "id": m.message_id,
            "role": m.role,
            "content": m.content,
            "created_at": m.created_at.isoformat(),
            "user_id": m.user_id,
        }
        for m in rows
    ]
    return {
        "topic_id": topic.topic_id,
        "topic_title": topic.title,
        "message_count": len(messages),
        "messages": messages,
        "message": f'Loaded the last {len(messages)} messages of "{topic.title}"',
    }
