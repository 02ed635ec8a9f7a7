"""Tests for project and milestone management."""

import sqlite3
import tempfile
from pathlib import Path

import pytest

from taskpilot.core import messages as messages_mod
from taskpilot.core import milestones as milestones_mod
from taskpilot.core import projects as projects_mod
from taskpilot.core import tasks as tasks_mod
from taskpilot.core.agents import AgentManager
from taskpilot.db.engine import init_db
from taskpilot.db.models import AgentMetric
from taskpilot.errors import NotFoundError, ValidationError


@pytest.fixture
def db():
    """Create a temporary SQLite database for testing."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        conn = init_db(db_path)
        yield conn
        conn.close()


def _count(db, table, where="1=1", params=()):
    return db.execute(f"SELECT COUNT(*) FROM {table} WHERE {where}", params).fetchone()[0]


class TestProjectCRUD:
    def test_create_project(self, db):
        project = projects_mod.create_project(db, "Launch", "Ship v1")
        assert project.name == "Launch"
        assert project.description == "Ship v1"
        assert project.status == "Active"
        history = projects_mod.get_project_history(db, project.id)
        assert [m.content for m in history] == ["Project 'Launch' created."]

    def test_empty_name_rejected(self, db):
        with pytest.raises(ValidationError):
            projects_mod.create_project(db, "")
        assert projects_mod.list_projects(db) == []

    def test_get_nonexistent(self, db):
        assert projects_mod.get_project(db, 42) is None
        with pytest.raises(NotFoundError, match="Project not found: 42"):
            projects_mod.require_project(db, 42)

    def test_list_projects(self, db):
        projects_mod.create_project(db, "One")
        projects_mod.create_project(db, "Two")
        names = {p.name for p in projects_mod.list_projects(db)}
        assert names == {"One", "Two"}

    def test_update_project(self, db):
        project = projects_mod.create_project(db, "Old", "desc")
        updated = projects_mod.update_project(db, project.id, name="New")
        assert updated.name == "New"
        assert updated.description == "desc"
        last = projects_mod.get_project_history(db, project.id)[-1]
        assert last.content == "Project details updated: Name changed from 'Old' to 'New'."

    def test_update_without_changes_is_silent(self, db):
        project = projects_mod.create_project(db, "Same", "desc")
        projects_mod.update_project(db, project.id, name="", description="desc")
        assert len(projects_mod.get_project_history(db, project.id)) == 1

    def test_update_status(self, db):
        project = projects_mod.create_project(db, "Launch")
        project = projects_mod.update_project_status(db, project.id, "OnHold")
        assert project.status == "OnHold"
        last = projects_mod.get_project_history(db, project.id)[-1]
        assert last.content == "Project status changed from Active to OnHold"

    def test_update_status_invalid(self, db):
        project = projects_mod.create_project(db, "Launch")
        with pytest.raises(ValidationError):
            projects_mod.update_project_status(db, project.id, "Paused")

    def test_archive(self, db):
        project = projects_mod.create_project(db, "Launch")
        assert projects_mod.archive_project(db, project.id).status == "Completed"
        assert projects_mod.project_progress(projects_mod.get_project(db, project.id)) == 100.0

    def test_project_to_dict(self, db):
        project = projects_mod.create_project(db, "Launch")
        milestones_mod.create_milestone(db, project.id, "Alpha")
        data = projects_mod.project_to_dict(projects_mod.get_project(db, project.id))
        assert data["name"] == "Launch"
        assert data["status"] == "Active"
        assert data["milestone_count"] == 1
        assert data["progress"] == 0.0


class TestProjectDelete:
    def test_delete_nonexistent(self, db):
        assert projects_mod.delete_project(db, 42) is False

    def test_delete_cascades(self, db):
        project = projects_mod.create_project(db, "Doomed")
        keep = projects_mod.create_project(db, "Keeper")
        alpha = milestones_mod.create_milestone(db, project.id, "Alpha")
        beta = milestones_mod.create_milestone(db, project.id, "Beta")
        kept_milestone = milestones_mod.create_milestone(db, keep.id, "Kept")

        a = tasks_mod.create_task(db, alpha.id, "A")
        b = tasks_mod.create_task(db, alpha.id, "B", depends_on=[a.id])
        tasks_mod.add_subtask(db, b.id, "B.1")
        c = tasks_mod.create_task(db, beta.id, "C")
        kept_task = tasks_mod.create_task(db, kept_milestone.id, "Kept task")
        tasks_mod.record_agent_metrics(
            db, c.id, AgentMetric(agent_id="w", task_id=c.id, status="Completed")
        )
        agents = AgentManager(db)
        agent_id = agents.initialize_agent("Worker")
        agents.assign_task_to_agent(agent_id, a.id)
        messages_mod.save_message(db, "note", role="user", milestone_id=beta.id)

        assert projects_mod.delete_project(db, project.id) is True

        assert projects_mod.get_project(db, project.id) is None
        assert _count(db, "milestones", "project_id = ?", (project.id,)) == 0
        assert _count(db, "tasks", "milestone_id IN (?, ?)", (alpha.id, beta.id)) == 0
        assert _count(db, "task_dependencies") == 0
        assert _count(db, "agent_metrics") == 0
        assert _count(db, "messages", "project_id = ?", (project.id,)) == 0
        assert _count(db, "messages", "milestone_id IN (?, ?)", (alpha.id, beta.id)) == 0
        assert _count(db, "messages", "task_id IS NOT NULL AND task_id != ?", (kept_task.id,)) == 0

        assert projects_mod.get_project(db, keep.id) is not None
        assert tasks_mod.get_task(db, kept_task.id) is not None

    def test_failed_delete_keeps_every_row(self, db):
        project = projects_mod.create_project(db, "Sticky")
        milestone = milestones_mod.create_milestone(db, project.id, "Alpha")
        a = tasks_mod.create_task(db, milestone.id, "A")
        tasks_mod.create_task(db, milestone.id, "B", depends_on=[a.id])
        tasks_mod.record_agent_metrics(
            db, a.id, AgentMetric(agent_id="w", task_id=a.id, status="Completed")
        )
        before = {
            table: _count(db, table)
            for table in ("projects", "milestones", "tasks", "task_dependencies",
                          "agent_metrics", "messages")
        }
        db.execute(
            """CREATE TRIGGER keep_projects BEFORE DELETE ON projects
               BEGIN SELECT RAISE(ABORT, 'delete rejected'); END"""
        )
        db.commit()

        with pytest.raises(sqlite3.Error):
            projects_mod.delete_project(db, project.id)

        assert {table: _count(db, table) for table in before} == before
        assert [t.title for t in tasks_mod.list_tasks(db, milestone.id)] == ["A", "B"]


class TestMilestones:
    def test_create_milestone(self, db):
        project = projects_mod.create_project(db, "Launch")
        milestone = milestones_mod.create_milestone(
            db, project.id, "Alpha", "First cut", "Demo works"
        )
        assert milestone.project_id == project.id
        assert milestone.success_criteria == "Demo works"
        assert milestone.status == "Pending"
        contents = [m.content for m in projects_mod.get_project_history(db, project.id)]
        assert "Milestone 'Alpha' created." in contents

    def test_create_requires_project(self, db):
        with pytest.raises(NotFoundError):
            milestones_mod.create_milestone(db, 42, "Alpha")

    def test_create_requires_title(self, db):
        project = projects_mod.create_project(db, "Launch")
        with pytest.raises(ValidationError):
            milestones_mod.create_milestone(db, project.id, " ")

    def test_list_milestones(self, db):
        project = projects_mod.create_project(db, "Launch")
        milestones_mod.create_milestone(db, project.id, "Alpha")
        milestones_mod.create_milestone(db, project.id, "Beta")
        titles = [m.title for m in milestones_mod.list_milestones(db, project.id)]
        assert titles == ["Alpha", "Beta"]
        assert [m.title for m in projects_mod.get_project(db, project.id).milestones] == titles

    def test_status_is_derived(self, db):
        project = projects_mod.create_project(db, "Launch")
        milestone = milestones_mod.create_milestone(db, project.id, "Alpha")
        task = tasks_mod.create_task(db, milestone.id, "Only task")
        tasks_mod.update_task_status(db, task.id, "InProgress")
        assert milestones_mod.get_milestone(db, milestone.id).status == "InProgress"
        tasks_mod.update_task_status(db, task.id, "Completed")
        milestone = milestones_mod.get_milestone(db, milestone.id)
        assert milestone.status == "Completed"
        assert milestones_mod.milestone_progress(milestone) == 100.0
        history = messages_mod.get_message_thread(db, milestone_id=milestone.id)
        assert history[-1].content == "Milestone status changed from InProgress to Completed"

    def test_recompute_after_last_task_deleted(self, db):
        project = projects_mod.create_project(db, "Launch")
        milestone = milestones_mod.create_milestone(db, project.id, "Alpha")
        task = tasks_mod.create_task(db, milestone.id, "Only task")
        tasks_mod.update_task_status(db, task.id, "InProgress")
        tasks_mod.delete_task(db, task.id)
        assert milestones_mod.recompute_milestone_status(db, milestone.id).status == "Pending"

    def test_delete_milestone(self, db):
        project = projects_mod.create_project(db, "Launch")
        milestone = milestones_mod.create_milestone(db, project.id, "Alpha")
        task = tasks_mod.create_task(db, milestone.id, "Gone")
        assert milestones_mod.delete_milestone(db, milestone.id) is True
        assert milestones_mod.get_milestone(db, milestone.id) is None
        assert tasks_mod.get_task(db, task.id) is None
        assert milestones_mod.delete_milestone(db, milestone.id) is False

    def test_milestone_to_dict(self, db):
        project = projects_mod.create_project(db, "Launch")
        milestone = milestones_mod.create_milestone(db, project.id, "Alpha")
        a = tasks_mod.create_task(db, milestone.id, "A")
        tasks_mod.create_task(db, milestone.id, "B", depends_on=[a.id])
        tasks_mod.update_task_status(db, a.id, "InProgress")
        data = milestones_mod.milestone_to_dict(db, milestones_mod.get_milestone(db, milestone.id))
        assert data["status"] == "InProgress"
        assert data["task_count"] == 2
        assert data["progress"] == 25.0
        assert data["blocking_issues"] == ["Task 'B' waits on 'A' (InProgress)"]
