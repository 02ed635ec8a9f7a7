"""Project management operations."""

import logging
import sqlite3

from taskpilot.core.messages import get_message_thread, log_message
from taskpilot.core.milestones import delete_milestone_rows, list_milestones
from taskpilot.core.tasks import aggregate_progress
from taskpilot.db.engine import parse_dt
from taskpilot.db.models import Message, MessageType, Project, ProjectStatus
from taskpilot.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def create_project(
    db: sqlite3.Connection,
    name: str,
    description: str = "",
) -> Project:
    """Create a new project."""
    if not name or not name.strip():
        raise ValidationError("Project name cannot be empty")

    with db:
        cur = db.execute(
            "INSERT INTO projects (name, description, status) VALUES (?, ?, ?)",
            (name, description or "", ProjectStatus.ACTIVE.value),
        )
        project_id = cur.lastrowid
        log_message(
            db,
            f"Project '{name}' created.",
            type=MessageType.SYSTEM_PROMPT,
            project_id=project_id,
        )
    logger.info("Created project %s (%s)", project_id, name)
    return get_project(db, project_id)


def get_project(db: sqlite3.Connection, project_id: int) -> Project | None:
    """Get a project by ID with its milestones."""
    row = db.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not row:
        return None
    project = _row_to_project(row)
    project.milestones = list_milestones(db, project_id)
    return project


def require_project(db: sqlite3.Connection, project_id: int) -> Project:
    project = get_project(db, project_id)
    if not project:
        raise NotFoundError("Project", project_id)
    return project


def list_projects(db: sqlite3.Connection) -> list[Project]:
    """List all projects."""
    rows = db.execute("SELECT * FROM projects ORDER BY created_at DESC, id DESC").fetchall()
    return [_row_to_project(r) for r in rows]


def update_project(
    db: sqlite3.Connection,
    project_id: int,
    name: str | None = None,
    description: str | None = None,
) -> Project:
    """Update name and/or description. An empty name leaves the name unchanged."""
    project = require_project(db, project_id)

    new_name = name if name else project.name
    new_description = description if description is not None else project.description
    if new_name == project.name and new_description == project.description:
        return project

    changes = []
    if new_name != project.name:
        changes.append(f"Name changed from '{project.name}' to '{new_name}'.")
    if new_description != project.description:
        changes.append("Description updated.")

    with db:
        db.execute(
            "UPDATE projects SET name = ?, description = ? WHERE id = ?",
            (new_name, new_description, project_id),
        )
        log_message(
            db,
            "Project details updated: " + " ".join(changes),
            type=MessageType.STATUS_UPDATE,
            project_id=project_id,
        )
    return get_project(db, project_id)


def update_project_status(
    db: sqlite3.Connection,
    project_id: int,
    status: ProjectStatus | str,
) -> Project:
    """Set a project's status explicitly."""
    try:
        new_status = ProjectStatus(status)
    except ValueError:
        raise ValidationError(f"Invalid project status: {status}") from None
    project = require_project(db, project_id)

    with db:
        db.execute(
            "UPDATE projects SET status = ? WHERE id = ?",
            (new_status.value, project_id),
        )
        log_message(
            db,
            f"Project status changed from {project.status} to {new_status}",
            type=MessageType.STATUS_UPDATE,
            project_id=project_id,
        )
    logger.info("Project %s status %s -> %s", project_id, project.status, new_status)
    return get_project(db, project_id)


def archive_project(db: sqlite3.Connection, project_id: int) -> Project:
    return update_project_status(db, project_id, ProjectStatus.COMPLETED)


def delete_project(db: sqlite3.Connection, project_id: int) -> bool:
    """Delete a project with its milestones, tasks, and everything scoped to them.

    Runs in a single transaction; a failure leaves every row in place.
    """
    if not get_project(db, project_id):
        return False

    try:
        with db:
            milestone_ids = [
                r["id"]
                for r in db.execute(
                    "SELECT id FROM milestones WHERE project_id = ?", (project_id,)
                ).fetchall()
            ]
            for milestone_id in milestone_ids:
                delete_milestone_rows(db, milestone_id)
            db.execute("DELETE FROM messages WHERE project_id = ?", (project_id,))
            db.execute("DELETE FROM projects WHERE id = ?", (project_id,))
    except sqlite3.Error:
        logger.exception("Error deleting project %s", project_id)
        raise
    logger.info("Deleted project %s", project_id)
    return True


def get_project_history(db: sqlite3.Connection, project_id: int) -> list[Message]:
    return get_message_thread(db, project_id=project_id)


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        description=row["description"] or "",
        status=ProjectStatus(row["status"]),
        created_at=parse_dt(row["created_at"]),
    )


def project_progress(project: Project) -> float:
    if project.status == ProjectStatus.COMPLETED:
        return 100.0
    return aggregate_progress(m.status for m in project.milestones)


def project_to_dict(project: Project) -> dict:
    return {
        "id": project.id,
        "name": project.name,
        "description": project.description,
        "status": str(project.status),
        "created_at": project.created_at.isoformat() if project.created_at else None,
        "milestone_count": len(project.milestones),
        "progress": project_progress(project),
    }
