"""Chat turns against the generation service, with a follow-on conversation outline."""

import json
import logging
import re
import sqlite3
from dataclasses import dataclass, field

from taskpilot.core.messages import get_general_messages, get_message_thread, save_message
from taskpilot.core.prompts import DEFAULT_HISTORY_WINDOW, PromptBuilder
from taskpilot.db.models import Message, MessageType
from taskpilot.errors import NotFoundError, ValidationError
from taskpilot.integrations.generation import GenerationService

logger = logging.getLogger(__name__)

OUTLINE_PROMPT = (
    "Based on the following conversation, generate a project outline with 5-10 key "
    "points. Format the response as a numbered list.\n\nConversation context:\n{context}"
)
_LIST_MARKER = re.compile(r"^(?:\d+[.)]?|[-*])\s*-?\s*")


@dataclass
class ChatTurn:
    user_message: Message
    reply: Message
    outline: list[dict] = field(default_factory=list)


def _scope(project_id, milestone_id, task_id) -> dict:
    return {"project_id": project_id, "milestone_id": milestone_id, "task_id": task_id}


def _conversation(db: sqlite3.Connection, scope: dict) -> list[Message]:
    if any(v is not None for v in scope.values()):
        messages = get_message_thread(db, **scope)
    else:
        messages = get_general_messages(db)
    return [m for m in messages if m.role in ("user", "assistant") and m.type != MessageType.OUTLINE]


async def chat_turn(
    db: sqlite3.Connection,
    service: GenerationService,
    content: str,
    project_id: int | None = None,
    milestone_id: int | None = None,
    task_id: int | None = None,
    history_window: int = DEFAULT_HISTORY_WINDOW,
) -> ChatTurn:
    """Save the user's message, get a reply, then refresh the outline.

    The outline step is best-effort: if it fails the turn still succeeds
    with an empty outline.
    """
    if not content or not content.strip():
        raise ValidationError("Message content cannot be empty")
    scope = _scope(project_id, milestone_id, task_id)
    history = _conversation(db, scope)

    user_message = save_message(db, content, role="user", type=MessageType.USER_QUERY, **scope)

    builder = PromptBuilder()
    if history:
        builder.with_conversation_history(history, history_window)
    prompt = builder.with_custom_section("User Message", content).build()

    try:
        response = await service.complete(prompt)
    except Exception:
        logger.exception("Error processing chat message %s", user_message.id)
        raise
    reply = save_message(
        db,
        response or "(empty response)",
        role="assistant",
        type=MessageType.AGENT_RESPONSE,
        **scope,
    )

    outline: list[dict] = []
    try:
        outline = await generate_outline(db, service, **scope)
    except Exception:
        logger.exception("Error generating outline after message %s", user_message.id)
    return ChatTurn(user_message=user_message, reply=reply, outline=outline)


def parse_outline(text: str) -> list[dict]:
    """Turn a numbered or bulleted list into outline items."""
    items = []
    for line in (text or "").splitlines():
        line = line.strip()
        if not line:
            continue
        line = _LIST_MARKER.sub("", line)
        if line:
            items.append({"id": len(items) + 1, "text": line, "checked": False})
    return items


async def generate_outline(
    db: sqlite3.Connection,
    service: GenerationService,
    project_id: int | None = None,
    milestone_id: int | None = None,
    task_id: int | None = None,
) -> list[dict]:
    scope = _scope(project_id, milestone_id, task_id)
    context = "\n".join(f"{m.role}: {m.content}" for m in _conversation(db, scope))
    response = await service.complete(OUTLINE_PROMPT.format(context=context))
    items = parse_outline(response)
    _save_outline(db, items, scope)
    return items


def get_outline(
    db: sqlite3.Connection,
    project_id: int | None = None,
    milestone_id: int | None = None,
    task_id: int | None = None,
) -> list[dict]:
    """The most recent outline for a scope, or an empty list."""
    scope = _scope(project_id, milestone_id, task_id)
    if any(v is not None for v in scope.values()):
        messages = get_message_thread(db, **scope)
    else:
        messages = get_general_messages(db)
    for message in reversed(messages):
        if message.type == MessageType.OUTLINE:
            return json.loads(message.content)
    return []


def update_outline_item(
    db: sqlite3.Connection,
    item_id: int,
    checked: bool,
    project_id: int | None = None,
    milestone_id: int | None = None,
    task_id: int | None = None,
) -> list[dict]:
    """Check or uncheck one item. Outlines are immutable, so this appends a new one."""
    scope = _scope(project_id, milestone_id, task_id)
    items = get_outline(db, **scope)
    for item in items:
        if item["id"] == item_id:
            item["checked"] = checked
            break
    else:
        raise NotFoundError("Outline item", item_id)
    _save_outline(db, items, scope)
    return items


def _save_outline(db: sqlite3.Connection, items: list[dict], scope: dict) -> Message:
    return save_message(
        db,
        json.dumps(items),
        role="system",
        type=MessageType.OUTLINE,
        metadata={"item_count": len(items)},
        **scope,
    )
