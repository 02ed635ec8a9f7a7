"""Tests for progress reporting."""

import tempfile
from pathlib import Path

import pytest

from taskpilot.core import milestones as milestones_mod
from taskpilot.core import projects as projects_mod
from taskpilot.core import tasks as tasks_mod
from taskpilot.core.progress import ProgressTracker
from taskpilot.db.engine import init_db
from taskpilot.db.models import AgentMetric
from taskpilot.errors import NotFoundError


@pytest.fixture
def db():
    """Seed a project with two milestones:

    Backend: Schema (Completed), API (InProgress) with subtasks Auth (Completed), Users (Pending)
    Frontend: Screens (Pending)
    """
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        conn = init_db(db_path)
        project = projects_mod.create_project(conn, "Shop")
        backend = milestones_mod.create_milestone(conn, project.id, "Backend")
        frontend = milestones_mod.create_milestone(conn, project.id, "Frontend")

        schema = tasks_mod.create_task(conn, backend.id, "Schema")
        for status in ("InProgress", "Completed"):
            tasks_mod.update_task_status(conn, schema.id, status)
        api = tasks_mod.create_task(conn, backend.id, "API", depends_on=[schema.id])
        auth = tasks_mod.add_subtask(conn, api.id, "Auth")
        tasks_mod.add_subtask(conn, api.id, "Users")
        for status in ("InProgress", "Completed"):
            tasks_mod.update_task_status(conn, auth.id, status)
        tasks_mod.update_task_status(conn, api.id, "InProgress")
        tasks_mod.record_agent_metrics(
            conn, auth.id, AgentMetric(agent_id="w", task_id=auth.id, status="Completed")
        )
        tasks_mod.create_task(conn, frontend.id, "Screens")
        yield conn
        conn.close()


class TestProgressTracker:
    def test_project_report(self, db):
        report = ProgressTracker(db).project_report(1)
        assert report.name == "Shop"
        assert report.total_milestones == 2
        assert report.completed_milestones == 0
        assert report.total_tasks == 5
        assert report.completed_tasks == 2
        assert report.in_progress_tasks == 1
        assert report.blocked_tasks == 0
        assert report.progress == 25.0

    def test_milestone_report(self, db):
        report = ProgressTracker(db).project_report(1)
        backend, frontend = report.milestones
        assert backend.status == "InProgress"
        assert backend.total_tasks == 4
        assert backend.progress == 75.0
        assert [t.title for t in backend.tasks] == ["Schema", "API"]
        assert frontend.status == "Pending"
        assert frontend.progress == 0.0

    def test_task_report_recurses(self, db):
        api = ProgressTracker(db).project_report(1).milestones[0].tasks[1]
        assert api.status == "InProgress"
        assert api.progress == 50.0
        assert [s.title for s in api.subtasks] == ["Auth", "Users"]
        auth = api.subtasks[0]
        assert auth.progress == 100.0
        assert auth.completed_at is not None
        assert auth.latest_metric["success_rate"] == 100.0
        assert api.subtasks[1].latest_metric is None

    def test_to_dict(self, db):
        data = ProgressTracker(db).project_report(1).to_dict()
        assert data["milestones"][0]["tasks"][1]["subtasks"][0]["title"] == "Auth"
        assert data["milestones"][0]["completed_at"] is None

    def test_missing_project(self, db):
        with pytest.raises(NotFoundError):
            ProgressTracker(db).project_report(99)
