"""Append-only message log: chat transcript and orchestration audit trail."""

import json
import re
import sqlite3
from datetime import datetime

from taskpilot.db.engine import format_dt, parse_dt
from taskpilot.db.models import ROLES, Message, MessageType
from taskpilot.errors import NotFoundError, ValidationError


def tokenize_content(content: str) -> str:
    """Collapse line breaks and runs of spaces into single spaces."""
    return re.sub(r"\s+", " ", content).strip()


def log_message(
    db: sqlite3.Connection,
    content: str,
    role: str = "system",
    type: MessageType = MessageType.STANDARD,
    project_id: int | None = None,
    milestone_id: int | None = None,
    task_id: int | None = None,
    metadata: dict | None = None,
) -> Message:
    """Insert a message without committing. The caller owns the transaction."""
    if not content:
        raise ValidationError("Message content cannot be empty")
    if role not in ROLES:
        raise ValidationError(f"Invalid message role: {role}")
    scopes = [s for s in (project_id, milestone_id, task_id) if s is not None]
    if len(scopes) > 1:
        raise ValidationError("A message is scoped to at most one of project, milestone or task")

    message = Message(
        content=content,
        role=role,
        type=MessageType(type),
        project_id=project_id,
        milestone_id=milestone_id,
        task_id=task_id,
        tokenized_content=tokenize_content(content),
        metadata=dict(metadata or {}),
    )
    cur = db.execute(
        """INSERT INTO messages
           (project_id, milestone_id, task_id, role, content, tokenized_content, type, metadata)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            project_id,
            milestone_id,
            task_id,
            role,
            content,
            message.tokenized_content,
            message.type.value,
            json.dumps(message.metadata, default=str),
        ),
    )
    message.id = cur.lastrowid
    return message


def save_message(db: sqlite3.Connection, content: str, **kwargs) -> Message:
    """Insert a message in its own transaction."""
    with db:
        message = log_message(db, content, **kwargs)
    return get_message(db, message.id)


def get_message(db: sqlite3.Connection, message_id: int) -> Message | None:
    row = db.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
    if not row:
        return None
    return _row_to_message(row)


def get_message_thread(
    db: sqlite3.Connection,
    task_id: int | None = None,
    milestone_id: int | None = None,
    project_id: int | None = None,
) -> list[Message]:
    """Messages oldest-first, filtered by whichever scope ids are given."""
    query = "SELECT * FROM messages WHERE 1=1"
    params: list = []
    if task_id is not None:
        query += " AND task_id = ?"
        params.append(task_id)
    if milestone_id is not None:
        query += " AND milestone_id = ?"
        params.append(milestone_id)
    if project_id is not None:
        query += " AND project_id = ?"
        params.append(project_id)
    query += " ORDER BY id"
    return [_row_to_message(r) for r in db.execute(query, params).fetchall()]


def get_general_messages(db: sqlite3.Connection) -> list[Message]:
    """Messages not scoped to any project, milestone or task."""
    rows = db.execute(
        """SELECT * FROM messages
           WHERE project_id IS NULL AND milestone_id IS NULL AND task_id IS NULL
           ORDER BY id"""
    ).fetchall()
    return [_row_to_message(r) for r in rows]


def get_messages_by_role(
    db: sqlite3.Connection,
    role: str,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[Message]:
    query = "SELECT * FROM messages WHERE role = ?"
    params: list = [role]
    if start is not None:
        query += " AND created_at >= ?"
        params.append(format_dt(start))
    if end is not None:
        query += " AND created_at <= ?"
        params.append(format_dt(end))
    query += " ORDER BY id"
    return [_row_to_message(r) for r in db.execute(query, params).fetchall()]


def delete_message(db: sqlite3.Connection, message_id: int) -> None:
    with db:
        cur = db.execute("DELETE FROM messages WHERE id = ?", (message_id,))
        if cur.rowcount == 0:
            raise NotFoundError("Message", message_id)


# ── DTO ───────────────────────────────────────────────────────────────────────


def thread_level(message: Message) -> str:
    if message.task_id is not None:
        return "Task"
    if message.milestone_id is not None:
        return "Milestone"
    if message.project_id is not None:
        return "Project"
    return "General"


def message_to_dict(db: sqlite3.Connection, message: Message) -> dict:
    """Flattened view with a human-readable context string and thread level."""
    context = "General"
    if message.project_id is not None:
        row = db.execute("SELECT name FROM projects WHERE id = ?", (message.project_id,)).fetchone()
        context = f"Project: {row['name']}" if row else context
    elif message.milestone_id is not None:
        row = db.execute("SELECT title FROM milestones WHERE id = ?", (message.milestone_id,)).fetchone()
        context = f"Milestone: {row['title']}" if row else context
    elif message.task_id is not None:
        row = db.execute("SELECT title FROM tasks WHERE id = ?", (message.task_id,)).fetchone()
        context = f"Task: {row['title']}" if row else context

    return {
        "id": message.id,
        "content": message.content,
        "role": message.role,
        "type": str(message.type),
        "context": context,
        "thread_level": thread_level(message),
        "project_id": message.project_id,
        "milestone_id": message.milestone_id,
        "task_id": message.task_id,
        "metadata": {k: _format_metadata_value(v) for k, v in message.metadata.items()},
        "created_at": message.created_at.isoformat() if message.created_at else None,
    }


def _format_metadata_value(value) -> str:
    if value is None:
        return "null"
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return str(value)


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        content=row["content"],
        role=row["role"],
        type=MessageType(row["type"]),
        project_id=row["project_id"],
        milestone_id=row["milestone_id"],
        task_id=row["task_id"],
        tokenized_content=row["tokenized_content"],
        metadata=json.loads(row["metadata"] or "{}"),
        created_at=parse_dt(row["created_at"]),
    )
