"""Tests for the CLI."""

import json
import os
import tempfile
from pathlib import Path

import pytest
from click.testing import CliRunner

from taskpilot import cli as cli_mod
from taskpilot.cli import main
from taskpilot.core import milestones as milestones_mod
from taskpilot.core import projects as projects_mod
from taskpilot.core import tasks as tasks_mod
from taskpilot.db.engine import init_db


@pytest.fixture
def cli_env():
    """Set up a temp environment for CLI testing."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        env = {
            "TP_DB_PATH": str(db_path),
            "TP_API_KEY": None,
            "OPENAI_API_KEY": None,
            "SLACK_BOT_TOKEN": None,
            "TP_SLACK_CHANNEL": None,
        }
        old_env = {}
        for k, v in env.items():
            old_env[k] = os.environ.get(k)
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v

        yield CliRunner(), db_path

        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


@pytest.fixture
def seeded(cli_env):
    """Project 1 with milestone 1 holding tasks 1 (Setup) and 2 (Build, depends on 1)."""
    runner, db_path = cli_env
    db = init_db(db_path)
    project = projects_mod.create_project(db, "Demo")
    milestone = milestones_mod.create_milestone(db, project.id, "Backend")
    setup = tasks_mod.create_task(db, milestone.id, "Setup")
    tasks_mod.create_task(db, milestone.id, "Build", depends_on=[setup.id])
    db.close()
    return runner, db_path


class FakeService:
    """Stands in for OpenAIChatService: replies in order, repeating the last reply."""

    replies = ["Task completed."]

    def __init__(self, api_key, **kwargs):
        self.api_key = api_key
        self.kwargs = kwargs
        self.prompts = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return None

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        index = min(len(self.prompts), len(self.replies)) - 1
        return self.replies[index]


@pytest.fixture
def fake_service(monkeypatch):
    monkeypatch.setenv("TP_API_KEY", "sk-test")
    monkeypatch.setattr(cli_mod, "OpenAIChatService", FakeService)
    return FakeService


class TestCLI:
    def test_help(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "task orchestration" in result.output

    def test_project_milestone_task_flow(self, cli_env):
        runner, _ = cli_env

        result = runner.invoke(main, ["project", "create", "Website", "-d", "Company site"])
        assert result.exit_code == 0
        assert "Project created: 1 (Website)" in result.output

        result = runner.invoke(
            main, ["milestone", "add", "1", "Launch", "--criteria", "Site is live"]
        )
        assert result.exit_code == 0
        assert "Created milestone: 1 (Launch)" in result.output

        result = runner.invoke(main, ["task", "add", "1", "Design pages", "-p", "High"])
        assert result.exit_code == 0
        assert "Created task: 1" in result.output
        assert "Priority: High" in result.output
        assert "Status: Pending" in result.output

        result = runner.invoke(main, ["task", "add", "1", "Deploy", "--depends-on", "1"])
        assert result.exit_code == 0
        assert "Depends on: 1" in result.output

        result = runner.invoke(main, ["task", "list", "1"])
        assert result.exit_code == 0
        assert "Design pages" in result.output
        assert "[depends: 1]" in result.output

        result = runner.invoke(main, ["task", "status", "1", "InProgress"])
        assert result.exit_code == 0
        assert "Task 1 is now InProgress" in result.output

        result = runner.invoke(main, ["milestone", "show", "1"])
        assert result.exit_code == 0
        assert "Status: InProgress" in result.output
        assert "Success criteria: Site is live" in result.output

    def test_project_list_json(self, seeded):
        runner, _ = seeded
        result = runner.invoke(main, ["project", "list", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data[0]["name"] == "Demo"
        assert data[0]["milestone_count"] == 1

    def test_project_status(self, seeded):
        runner, _ = seeded
        result = runner.invoke(main, ["project", "status", "1", "OnHold"])
        assert result.exit_code == 0
        assert "Project 1 is now OnHold" in result.output

        result = runner.invoke(main, ["project", "status", "1", "Sleeping"])
        assert result.exit_code == 1
        assert "Invalid project status" in result.output

    def test_invalid_transition(self, seeded):
        runner, _ = seeded
        result = runner.invoke(main, ["task", "status", "1", "Completed"])
        assert result.exit_code == 1
        assert "Invalid status transition from Pending to Completed" in result.output

    def test_circular_dependency(self, seeded):
        runner, _ = seeded
        result = runner.invoke(main, ["task", "add-dep", "1", "2"])
        assert result.exit_code == 1
        assert "circular" in result.output

    def test_missing_task(self, seeded):
        runner, _ = seeded
        result = runner.invoke(main, ["task", "show", "99"])
        assert result.exit_code == 1
        assert "Task not found: 99" in result.output

    def test_ready_tasks(self, seeded):
        runner, _ = seeded
        result = runner.invoke(main, ["task", "ready", "1"])
        assert result.exit_code == 0
        assert "1: Setup" in result.output
        assert "Build" not in result.output

    def test_subtask_and_history(self, seeded):
        runner, _ = seeded
        result = runner.invoke(main, ["task", "subtask", "2", "Write handler"])
        assert result.exit_code == 0
        assert "Created subtask: 3 under 2" in result.output

        result = runner.invoke(main, ["task", "history", "2"])
        assert result.exit_code == 0
        assert "Added subtask 'Write handler' to task 'Build'" in result.output

    def test_report(self, seeded):
        runner, _ = seeded
        runner.invoke(main, ["task", "status", "1", "InProgress"])
        result = runner.invoke(main, ["report", "1"])
        assert result.exit_code == 0
        assert "Demo (Active): 50.00%" in result.output
        assert "Tasks: 0/2 completed, 1 in progress, 0 blocked" in result.output

    def test_report_json(self, seeded):
        runner, _ = seeded
        result = runner.invoke(main, ["report", "1", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["milestones"][0]["title"] == "Backend"

    def test_delete_project(self, seeded):
        runner, _ = seeded
        result = runner.invoke(main, ["project", "delete", "1", "--yes"])
        assert result.exit_code == 0
        assert "Deleted project 1" in result.output
        result = runner.invoke(main, ["task", "show", "1"])
        assert result.exit_code == 1

    def test_agent_metrics_empty(self, seeded):
        runner, _ = seeded
        result = runner.invoke(main, ["agent", "metrics", "nobody"])
        assert result.exit_code == 0
        assert "No metrics for agent nobody" in result.output


class TestGenerationCommands:
    def test_run_without_key(self, seeded):
        runner, _ = seeded
        result = runner.invoke(main, ["task", "run", "1"])
        assert result.exit_code == 1
        assert "Generation service not configured" in result.output

    def test_run_completes_task(self, seeded, fake_service):
        runner, db_path = seeded
        result = runner.invoke(main, ["task", "run", "1"])
        assert result.exit_code == 0, result.output
        assert "Task 1 completed after 1 attempt(s)" in result.output

        db = init_db(db_path)
        try:
            assert tasks_mod.get_task(db, 1).status == "Completed"
        finally:
            db.close()

    def test_run_failure_exits_nonzero(self, seeded, fake_service, monkeypatch):
        runner, _ = seeded
        monkeypatch.setattr(FakeService, "replies", ["Still thinking."])
        monkeypatch.setenv("TP_MAX_ATTEMPTS", "2")
        result = runner.invoke(main, ["task", "run", "1"])
        assert result.exit_code == 1
        assert "Task 1 failed after 2 attempt(s)" in result.output

    def test_run_missing_task(self, seeded, fake_service):
        runner, _ = seeded
        result = runner.invoke(main, ["task", "run", "99"])
        assert result.exit_code == 1
        assert "Task 99 error: Task not found: 99" in result.output

    def test_chat_prints_reply_and_outline(self, seeded, fake_service, monkeypatch):
        runner, _ = seeded
        monkeypatch.setattr(FakeService, "replies", ["Start with the schema.", "1. Schema\n2. API"])
        result = runner.invoke(main, ["chat", "Where do we start?", "--project", "1"])
        assert result.exit_code == 0, result.output
        assert "Start with the schema." in result.output
        assert "Outline:" in result.output
        assert "[ ] 1. Schema" in result.output
        assert "[ ] 2. API" in result.output
