"""Task management operations: the task tree, dependency graph and status engine."""

import logging
import sqlite3
from collections.abc import Iterable

from taskpilot.core.messages import get_message_thread, log_message
from taskpilot.core.metrics import (
    calculate_success_rate,
    insert_metric,
    list_task_metrics,
    task_metrics_summary,
)
from taskpilot.db.engine import format_dt, parse_dt, utcnow
from taskpilot.db.models import (
    AgentMetric,
    Message,
    MessageType,
    MilestoneStatus,
    Task,
    TaskDependency,
    TaskPriority,
    TaskStatus,
)
from taskpilot.errors import (
    CircularDependencyError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

DEFAULT_BLOCKED_REASON = "Task blocked without specific reason"

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED}),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.BLOCKED, TaskStatus.FAILED}
    ),
    TaskStatus.BLOCKED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED}),
    TaskStatus.COMPLETED: frozenset({TaskStatus.IN_PROGRESS}),
    TaskStatus.FAILED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED}),
    TaskStatus.CANCELLED: frozenset({TaskStatus.PENDING}),
}


def can_transition(current: TaskStatus, new: TaskStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, frozenset())


def derive_status(statuses: Iterable[str]) -> str | None:
    """Status implied by a set of child statuses.

    All completed wins, then any blocked, then any in progress, else pending.
    Returns None for an empty set.
    """
    statuses = [str(s) for s in statuses]
    if not statuses:
        return None
    if all(s == TaskStatus.COMPLETED for s in statuses):
        return TaskStatus.COMPLETED.value
    if any(s == TaskStatus.BLOCKED for s in statuses):
        return TaskStatus.BLOCKED.value
    if any(s == TaskStatus.IN_PROGRESS for s in statuses):
        return TaskStatus.IN_PROGRESS.value
    return TaskStatus.PENDING.value


def _parse_priority(priority) -> TaskPriority:
    if priority is None:
        return TaskPriority.MEDIUM
    try:
        return TaskPriority(priority)
    except ValueError:
        raise ValidationError(f"Invalid task priority: {priority}") from None


def _parse_status(status) -> TaskStatus:
    try:
        return TaskStatus(status)
    except ValueError:
        raise ValidationError(f"Invalid task status: {status}") from None


# ── CRUD ──────────────────────────────────────────────────────────────────────


def create_task(
    db: sqlite3.Connection,
    milestone_id: int,
    title: str,
    description: str = "",
    priority: TaskPriority | str | None = TaskPriority.MEDIUM,
    parent_task_id: int | None = None,
    depends_on: list[int] | None = None,
) -> Task:
    """Create a task, its dependency edges and an audit message in one transaction."""
    if not title or not title.strip():
        raise ValidationError("Task title cannot be empty")
    priority = _parse_priority(priority)
    _require_milestone(db, milestone_id)
    if parent_task_id is not None:
        parent = require_task(db, parent_task_id)
        if parent.milestone_id != milestone_id:
            raise ValidationError(
                f"Parent task {parent_task_id} belongs to milestone {parent.milestone_id}"
            )
    for dep_id in depends_on or []:
        require_task(db, dep_id)

    try:
        with db:
            task_id = _insert_task(
                db, milestone_id, title, description, priority, parent_task_id, depends_on
            )
            refresh_milestone_status(db, milestone_id)
    except sqlite3.Error:
        logger.exception("Error creating task %r in milestone %s", title, milestone_id)
        raise
    logger.info("Created task %s (%s) in milestone %s", task_id, title, milestone_id)
    return get_task(db, task_id)


def _insert_task(db, milestone_id, title, description, priority, parent_task_id, depends_on) -> int:
    cur = db.execute(
        """INSERT INTO tasks (milestone_id, parent_task_id, title, description, priority, status)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (
            milestone_id,
            parent_task_id,
            title,
            description or "",
            priority.value,
            TaskStatus.PENDING.value,
        ),
    )
    task_id = cur.lastrowid
    for dep_id in dict.fromkeys(depends_on or []):
        db.execute(
            "INSERT INTO task_dependencies (task_id, depends_on_task_id) VALUES (?, ?)",
            (task_id, dep_id),
        )
    log_message(
        db,
        f"Task '{title}' created with {priority} priority.",
        type=MessageType.SYSTEM_PROMPT,
        task_id=task_id,
    )
    return task_id


def get_task(db: sqlite3.Connection, task_id: int) -> Task | None:
    """Get a task by ID with its dependencies, direct subtasks and metrics."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None

    task = _row_to_task(row)
    task.dependencies = get_dependencies(db, task_id)
    subtasks = db.execute(
        "SELECT * FROM tasks WHERE parent_task_id = ? ORDER BY id", (task_id,)
    ).fetchall()
    task.subtasks = [_row_to_task(s) for s in subtasks]
    task.metrics = list_task_metrics(db, task_id)
    return task


def require_task(db: sqlite3.Connection, task_id: int) -> Task:
    task = get_task(db, task_id)
    if not task:
        raise NotFoundError("Task", task_id)
    return task


def list_tasks(
    db: sqlite3.Connection,
    milestone_id: int,
    status: TaskStatus | str | None = None,
    parent_task_id: int | None = None,
    all_levels: bool = False,
) -> list[Task]:
    """List a milestone's tasks.

    By default only top-level tasks; pass parent_task_id for one parent's
    children, or all_levels=True for the whole tree flattened.
    """
    query = "SELECT * FROM tasks WHERE milestone_id = ?"
    params: list = [milestone_id]

    if status:
        query += " AND status = ?"
        params.append(_parse_status(status).value)

    if parent_task_id is not None:
        query += " AND parent_task_id = ?"
        params.append(parent_task_id)
    elif not all_levels:
        query += " AND parent_task_id IS NULL"

    query += " ORDER BY id"
    tasks = []
    for row in db.execute(query, params).fetchall():
        task = _row_to_task(row)
        task.dependencies = get_dependencies(db, task.id)
        tasks.append(task)
    return tasks


def add_subtask(
    db: sqlite3.Connection,
    parent_task_id: int,
    title: str,
    description: str = "",
    priority: TaskPriority | str | None = TaskPriority.MEDIUM,
) -> Task:
    """Create a task under a parent, in the parent's milestone."""
    if not title or not title.strip():
        raise ValidationError("Task title cannot be empty")
    priority = _parse_priority(priority)
    parent = require_task(db, parent_task_id)

    with db:
        task_id = _insert_task(
            db, parent.milestone_id, title, description, priority, parent.id, None
        )
        log_message(
            db,
            f"Added subtask '{title}' to task '{parent.title}'",
            type=MessageType.STATUS_UPDATE,
            task_id=parent.id,
        )
        refresh_milestone_status(db, parent.milestone_id)
    return get_task(db, task_id)


def assign_task(db: sqlite3.Connection, task_id: int, agent_id: str) -> Task:
    """Record the assigned agent without touching status."""
    if not agent_id:
        raise ValidationError("Agent id cannot be empty")
    task = require_task(db, task_id)
    previous = task.assigned_agent_id

    with db:
        db.execute("UPDATE tasks SET assigned_agent_id = ? WHERE id = ?", (agent_id, task_id))
        content = f"Task assigned to agent {agent_id}"
        if previous:
            content += f" (previously: {previous})"
        log_message(db, content, type=MessageType.STATUS_UPDATE, task_id=task_id)
    return get_task(db, task_id)


def delete_task(db: sqlite3.Connection, task_id: int) -> bool:
    """Delete a task and its whole subtree in one transaction."""
    task = get_task(db, task_id)
    if not task:
        return False

    try:
        with db:
            subtree = [
                r["id"]
                for r in db.execute(
                    """WITH RECURSIVE subtree(id) AS (
                           SELECT id FROM tasks WHERE id = ?
                           UNION ALL
                           SELECT t.id FROM tasks t JOIN subtree s ON t.parent_task_id = s.id
                       )
                       SELECT id FROM subtree""",
                    (task_id,),
                ).fetchall()
            ]
            delete_task_rows(db, subtree)
            if task.parent_task_id is not None:
                _propagate_to_parent(db, task.parent_task_id)
            refresh_milestone_status(db, task.milestone_id)
    except sqlite3.Error:
        logger.exception("Error deleting task %s", task_id)
        raise
    logger.info("Deleted task %s with %d descendants", task_id, len(subtree) - 1)
    return True


def delete_task_rows(db: sqlite3.Connection, task_ids: list[int]) -> None:
    """Remove tasks with their dependencies, metrics and messages. No commit.

    The ids must cover whole subtrees, since the task rows go in one statement.
    """
    if not task_ids:
        return
    marks = ", ".join("?" for _ in task_ids)
    db.execute(
        f"""DELETE FROM task_dependencies
            WHERE task_id IN ({marks}) OR depends_on_task_id IN ({marks})""",
        task_ids + task_ids,
    )
    db.execute(f"DELETE FROM agent_metrics WHERE task_id IN ({marks})", task_ids)
    db.execute(f"DELETE FROM messages WHERE task_id IN ({marks})", task_ids)
    db.execute(f"DELETE FROM tasks WHERE id IN ({marks})", task_ids)


def get_task_history(db: sqlite3.Connection, task_id: int) -> list[Message]:
    require_task(db, task_id)
    return get_message_thread(db, task_id=task_id)


# ── Status engine ─────────────────────────────────────────────────────────────


def update_task_status(
    db: sqlite3.Connection,
    task_id: int,
    status: TaskStatus | str,
    reason: str | None = None,
) -> Task:
    """Move a task through the transition table and cascade to its ancestors."""
    with db:
        apply_status_change(db, task_id, status, reason)
    return get_task(db, task_id)


def apply_status_change(
    db: sqlite3.Connection,
    task_id: int,
    status: TaskStatus | str,
    reason: str | None = None,
    audit: bool = True,
) -> Task:
    """Validated status change without committing. The caller owns the transaction.

    With audit=False the caller writes its own message for the change.
    """
    new_status = _parse_status(status)
    task = require_task(db, task_id)
    if not can_transition(task.status, new_status):
        logger.warning(
            "Rejected status change for task %s: %s -> %s", task_id, task.status, new_status
        )
        raise InvalidTransitionError(task.status, new_status)

    _write_status(db, task, new_status, reason)
    if audit:
        content = f"Task status changed from {task.status} to {new_status}"
        if reason:
            content += f" Reason: {reason}"
        log_message(db, content, type=MessageType.STATUS_UPDATE, task_id=task_id)
    logger.info("Task %s status %s -> %s", task_id, task.status, new_status)

    if task.parent_task_id is not None:
        _propagate_to_parent(db, task.parent_task_id)
    refresh_milestone_status(db, task.milestone_id)
    return get_task(db, task_id)


def _write_status(
    db: sqlite3.Connection,
    task: Task,
    new_status: TaskStatus,
    reason: str | None = None,
) -> None:
    now = format_dt(utcnow())
    started_at = format_dt(task.started_at)
    if new_status == TaskStatus.IN_PROGRESS and task.started_at is None:
        started_at = now
    completed_at = format_dt(task.completed_at)
    if new_status == TaskStatus.COMPLETED:
        completed_at = now
    blocked_reason = None
    if new_status == TaskStatus.BLOCKED:
        blocked_reason = reason or DEFAULT_BLOCKED_REASON

    db.execute(
        """UPDATE tasks SET status = ?, started_at = ?, completed_at = ?, blocked_reason = ?
           WHERE id = ?""",
        (new_status.value, started_at, completed_at, blocked_reason, task.id),
    )


def _propagate_to_parent(db: sqlite3.Connection, parent_id: int | None) -> None:
    """Recompute ancestors' statuses from their subtasks, walking up by id."""
    while parent_id is not None:
        row = db.execute("SELECT * FROM tasks WHERE id = ?", (parent_id,)).fetchone()
        if not row:
            return
        parent = _row_to_task(row)
        children = db.execute(
            "SELECT status FROM tasks WHERE parent_task_id = ?", (parent_id,)
        ).fetchall()
        derived = derive_status(c["status"] for c in children)
        if derived is not None and derived != parent.status:
            new_status = TaskStatus(derived)
            _write_status(db, parent, new_status)
            log_message(
                db,
                f"Task status changed from {parent.status} to {new_status} "
                "Reason: derived from subtasks",
                type=MessageType.STATUS_UPDATE,
                task_id=parent_id,
            )
            logger.debug("Parent task %s derived status %s", parent_id, new_status)
        parent_id = parent.parent_task_id


def refresh_milestone_status(db: sqlite3.Connection, milestone_id: int) -> None:
    """Recompute a milestone's derived status from all of its tasks. No commit."""
    row = db.execute(
        "SELECT status, completed_at FROM milestones WHERE id = ?", (milestone_id,)
    ).fetchone()
    if not row:
        return
    statuses = db.execute(
        "SELECT status FROM tasks WHERE milestone_id = ?", (milestone_id,)
    ).fetchall()
    derived = derive_status(s["status"] for s in statuses) or MilestoneStatus.PENDING.value
    if derived == row["status"]:
        return

    completed_at = format_dt(utcnow()) if derived == MilestoneStatus.COMPLETED else None
    db.execute(
        "UPDATE milestones SET status = ?, completed_at = ? WHERE id = ?",
        (derived, completed_at, milestone_id),
    )
    log_message(
        db,
        f"Milestone status changed from {row['status']} to {derived}",
        type=MessageType.STATUS_UPDATE,
        milestone_id=milestone_id,
    )
    logger.info("Milestone %s status %s -> %s", milestone_id, row["status"], derived)


def _require_milestone(db: sqlite3.Connection, milestone_id: int) -> None:
    if not db.execute("SELECT 1 FROM milestones WHERE id = ?", (milestone_id,)).fetchone():
        raise NotFoundError("Milestone", milestone_id)


# ── Dependencies ──────────────────────────────────────────────────────────────


def get_dependencies(db: sqlite3.Connection, task_id: int) -> list[TaskDependency]:
    """Outgoing edges joined with the referenced task's title and status."""
    rows = db.execute(
        """SELECT d.*, t.title AS depends_on_title, t.status AS depends_on_status
           FROM task_dependencies d
           JOIN tasks t ON t.id = d.depends_on_task_id
           WHERE d.task_id = ?
           ORDER BY d.id""",
        (task_id,),
    ).fetchall()
    return [
        TaskDependency(
            id=r["id"],
            task_id=r["task_id"],
            depends_on_task_id=r["depends_on_task_id"],
            created_at=parse_dt(r["created_at"]),
            depends_on_title=r["depends_on_title"],
            depends_on_status=TaskStatus(r["depends_on_status"]),
        )
        for r in rows
    ]


def _reaches(db: sqlite3.Connection, start_id: int, target_id: int) -> bool:
    """Whether target is in start's transitive dependency closure (start included)."""
    visited: set[int] = set()
    stack = [start_id]
    while stack:
        current = stack.pop()
        if current == target_id:
            return True
        if current in visited:
            continue
        visited.add(current)
        rows = db.execute(
            "SELECT depends_on_task_id FROM task_dependencies WHERE task_id = ?", (current,)
        ).fetchall()
        stack.extend(r["depends_on_task_id"] for r in rows if r["depends_on_task_id"] not in visited)
    return False


def add_dependency(db: sqlite3.Connection, task_id: int, depends_on_id: int) -> Task:
    """Add an edge task -> depends_on, refusing anything that would close a cycle."""
    task = require_task(db, task_id)
    dep = get_task(db, depends_on_id)
    if not dep:
        raise NotFoundError("Dependency task", depends_on_id)
    if depends_on_id in task.depends_on:
        return task
    if _reaches(db, depends_on_id, task_id):
        logger.warning("Rejected circular dependency %s -> %s", task_id, depends_on_id)
        raise CircularDependencyError(task_id, depends_on_id)

    with db:
        db.execute(
            "INSERT INTO task_dependencies (task_id, depends_on_task_id) VALUES (?, ?)",
            (task_id, depends_on_id),
        )
        log_message(
            db,
            f"Added dependency on task '{dep.title}'",
            type=MessageType.STATUS_UPDATE,
            task_id=task_id,
        )
    return get_task(db, task_id)


def remove_dependency(db: sqlite3.Connection, task_id: int, depends_on_id: int) -> Task:
    task = require_task(db, task_id)
    if depends_on_id not in task.depends_on:
        return task
    with db:
        db.execute(
            "DELETE FROM task_dependencies WHERE task_id = ? AND depends_on_task_id = ?",
            (task_id, depends_on_id),
        )
        log_message(
            db,
            f"Removed dependency on task {depends_on_id}",
            type=MessageType.STATUS_UPDATE,
            task_id=task_id,
        )
    return get_task(db, task_id)


def can_start(task: Task) -> bool:
    """Pending, and every dependency is completed."""
    if task.status != TaskStatus.PENDING:
        return False
    return all(d.depends_on_status == TaskStatus.COMPLETED for d in task.dependencies)


def get_ready_tasks(db: sqlite3.Connection, milestone_id: int) -> list[Task]:
    """Pending tasks at any level whose dependencies are all completed."""
    return [t for t in list_tasks(db, milestone_id, TaskStatus.PENDING, all_levels=True) if can_start(t)]


def get_blocked_tasks(db: sqlite3.Connection, milestone_id: int) -> list[Task]:
    """Tasks marked Blocked, plus pending tasks held back by unfinished dependencies."""
    blocked = []
    for task in list_tasks(db, milestone_id, all_levels=True):
        if task.status == TaskStatus.BLOCKED:
            blocked.append(task)
        elif task.status == TaskStatus.PENDING and not can_start(task):
            blocked.append(task)
    return blocked


def blocking_issues(task: Task) -> list[str]:
    issues = []
    if task.status == TaskStatus.BLOCKED:
        issues.append(task.blocked_reason or f"Task '{task.title}' is blocked")
    for dep in task.dependencies:
        if dep.depends_on_status != TaskStatus.COMPLETED:
            issues.append(
                f"Task '{task.title}' waits on '{dep.depends_on_title}' ({dep.depends_on_status})"
            )
    return issues


# ── Metrics & progress ────────────────────────────────────────────────────────


def record_agent_metrics(db: sqlite3.Connection, task_id: int, metric: AgentMetric) -> AgentMetric:
    """Store a metric for a task, computing its success rate, with an audit message."""
    require_task(db, task_id)
    metric.task_id = task_id
    metric.success_rate = calculate_success_rate(metric)
    with db:
        insert_metric(db, metric)
        log_message(
            db,
            f"Agent metrics recorded - Success Rate: {metric.success_rate:g}%, "
            f"Status: {metric.status}",
            type=MessageType.METRIC_UPDATE,
            task_id=task_id,
        )
    return metric


def aggregate_progress(statuses: Iterable[str]) -> float:
    """Mean of 100 per completed item and 50 per in-progress item."""
    statuses = [str(s) for s in statuses]
    if not statuses:
        return 0.0
    completed = sum(1 for s in statuses if s == TaskStatus.COMPLETED)
    in_progress = sum(1 for s in statuses if s == TaskStatus.IN_PROGRESS)
    return round((completed * 100 + in_progress * 50) / len(statuses), 2)


def calculate_progress(task: Task) -> float:
    """Progress percentage from the task's own status and its direct subtasks."""
    if task.status == TaskStatus.COMPLETED:
        return 100.0
    if not task.subtasks:
        return 50.0 if task.status == TaskStatus.IN_PROGRESS else 0.0
    return aggregate_progress(s.status for s in task.subtasks)


def task_to_dict(task: Task) -> dict:
    return {
        "id": task.id,
        "milestone_id": task.milestone_id,
        "parent_task_id": task.parent_task_id,
        "title": task.title,
        "description": task.description,
        "priority": str(task.priority),
        "status": str(task.status),
        "assigned_agent_id": task.assigned_agent_id,
        "created_at": task.created_at.isoformat() if task.created_at else None,
        "started_at": task.started_at.isoformat() if task.started_at else None,
        "completed_at": task.completed_at.isoformat() if task.completed_at else None,
        "blocked_reason": task.blocked_reason,
        "depends_on": task.depends_on,
        "dependencies": [d.depends_on_title for d in task.dependencies if d.depends_on_title],
        "subtasks": [task_to_dict(s) for s in task.subtasks],
        "progress": calculate_progress(task),
        "blocking_issues": blocking_issues(task),
        "agent_metrics": task_metrics_summary(task.metrics),
    }


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        milestone_id=row["milestone_id"],
        title=row["title"],
        description=row["description"] or "",
        priority=TaskPriority(row["priority"]),
        status=TaskStatus(row["status"]),
        parent_task_id=row["parent_task_id"],
        assigned_agent_id=row["assigned_agent_id"],
        created_at=parse_dt(row["created_at"]),
        started_at=parse_dt(row["started_at"]),
        completed_at=parse_dt(row["completed_at"]),
        blocked_reason=row["blocked_reason"],
    )
