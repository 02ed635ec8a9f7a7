"""Milestone management operations. Milestone status is derived from its tasks."""

import logging
import sqlite3

from taskpilot.core.messages import log_message
from taskpilot.core.tasks import (
    aggregate_progress,
    blocking_issues,
    delete_task_rows,
    list_tasks,
    refresh_milestone_status,
)
from taskpilot.db.engine import parse_dt
from taskpilot.db.models import MessageType, Milestone, MilestoneStatus
from taskpilot.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def create_milestone(
    db: sqlite3.Connection,
    project_id: int,
    title: str,
    description: str = "",
    success_criteria: str = "",
) -> Milestone:
    if not title or not title.strip():
        raise ValidationError("Milestone title cannot be empty")
    if not db.execute("SELECT 1 FROM projects WHERE id = ?", (project_id,)).fetchone():
        raise NotFoundError("Project", project_id)

    with db:
        cur = db.execute(
            """INSERT INTO milestones (project_id, title, description, success_criteria, status)
               VALUES (?, ?, ?, ?, ?)""",
            (
                project_id,
                title,
                description or "",
                success_criteria or "",
                MilestoneStatus.PENDING.value,
            ),
        )
        milestone_id = cur.lastrowid
        log_message(
            db,
            f"Milestone '{title}' created.",
            type=MessageType.SYSTEM_PROMPT,
            project_id=project_id,
        )
    logger.info("Created milestone %s (%s) in project %s", milestone_id, title, project_id)
    return get_milestone(db, milestone_id)


def get_milestone(db: sqlite3.Connection, milestone_id: int) -> Milestone | None:
    """Get a milestone with its top-level tasks."""
    row = db.execute("SELECT * FROM milestones WHERE id = ?", (milestone_id,)).fetchone()
    if not row:
        return None
    milestone = _row_to_milestone(row)
    milestone.tasks = list_tasks(db, milestone_id)
    return milestone


def require_milestone(db: sqlite3.Connection, milestone_id: int) -> Milestone:
    milestone = get_milestone(db, milestone_id)
    if not milestone:
        raise NotFoundError("Milestone", milestone_id)
    return milestone


def list_milestones(db: sqlite3.Connection, project_id: int) -> list[Milestone]:
    rows = db.execute(
        "SELECT * FROM milestones WHERE project_id = ? ORDER BY id", (project_id,)
    ).fetchall()
    return [_row_to_milestone(r) for r in rows]


def recompute_milestone_status(db: sqlite3.Connection, milestone_id: int) -> Milestone:
    require_milestone(db, milestone_id)
    with db:
        refresh_milestone_status(db, milestone_id)
    return get_milestone(db, milestone_id)


def delete_milestone(db: sqlite3.Connection, milestone_id: int) -> bool:
    """Delete a milestone with all of its tasks in one transaction."""
    if not get_milestone(db, milestone_id):
        return False
    try:
        with db:
            delete_milestone_rows(db, milestone_id)
    except sqlite3.Error:
        logger.exception("Error deleting milestone %s", milestone_id)
        raise
    logger.info("Deleted milestone %s", milestone_id)
    return True


def delete_milestone_rows(db: sqlite3.Connection, milestone_id: int) -> None:
    """Remove a milestone's tasks, their dependent rows, and the milestone. No commit."""
    task_ids = [
        r["id"]
        for r in db.execute(
            "SELECT id FROM tasks WHERE milestone_id = ?", (milestone_id,)
        ).fetchall()
    ]
    delete_task_rows(db, task_ids)
    db.execute("DELETE FROM messages WHERE milestone_id = ?", (milestone_id,))
    db.execute("DELETE FROM milestones WHERE id = ?", (milestone_id,))


def milestone_progress(milestone: Milestone) -> float:
    if milestone.status == MilestoneStatus.COMPLETED:
        return 100.0
    return aggregate_progress(t.status for t in milestone.tasks)


def milestone_to_dict(db: sqlite3.Connection, milestone: Milestone) -> dict:
    issues = []
    for task in list_tasks(db, milestone.id, all_levels=True):
        issues.extend(blocking_issues(task))
    return {
        "id": milestone.id,
        "project_id": milestone.project_id,
        "title": milestone.title,
        "description": milestone.description,
        "success_criteria": milestone.success_criteria,
        "status": str(milestone.status),
        "created_at": milestone.created_at.isoformat() if milestone.created_at else None,
        "completed_at": milestone.completed_at.isoformat() if milestone.completed_at else None,
        "task_count": len(milestone.tasks),
        "progress": milestone_progress(milestone),
        "blocking_issues": issues,
    }


def _row_to_milestone(row: sqlite3.Row) -> Milestone:
    return Milestone(
        id=row["id"],
        project_id=row["project_id"],
        title=row["title"],
        description=row["description"] or "",
        success_criteria=row["success_criteria"] or "",
        status=MilestoneStatus(row["status"]),
        created_at=parse_dt(row["created_at"]),
        completed_at=parse_dt(row["completed_at"]),
    )
