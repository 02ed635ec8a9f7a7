"""MCP server exposing the task orchestration tools."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from taskpilot.config import Config, get_config
from taskpilot.core import chat as chat_mod
from taskpilot.core import messages as messages_mod
from taskpilot.core import metrics as metrics_mod
from taskpilot.core import milestones as milestones_mod
from taskpilot.core import projects as projects_mod
from taskpilot.core import tasks as tasks_mod
from taskpilot.core.agents import AgentManager
from taskpilot.core.executor import TaskExecutor
from taskpilot.core.progress import ProgressTracker
from taskpilot.db.engine import init_db
from taskpilot.errors import TaskPilotError
from taskpilot.integrations import slack as slack_mod
from taskpilot.integrations.generation import GenerationServiceError, OpenAIChatService

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config
    agents: AgentManager
    service: OpenAIChatService | None = None


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Open the database and generation client on startup, close on shutdown."""
    config = get_config()
    db = init_db(config.db_path)
    service = None
    if config.api_key:
        service = OpenAIChatService(
            config.api_key,
            base_url=config.api_base_url,
            model=config.model,
            timeout_seconds=config.request_timeout,
        )

    try:
        yield AppContext(db=db, config=config, agents=AgentManager(db), service=service)
    finally:
        if service is not None:
            await service.aclose()
        db.close()


mcp = FastMCP("taskpilot", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _error(exc: Exception) -> dict:
    return {"error": str(exc)}


def _no_service() -> dict:
    return {"error": "Generation service not configured: TP_API_KEY not set"}


# ── Project & Milestone Tools ────────────────────────────────────────────────


@mcp.tool()
def create_project(ctx: Context, name: str, description: str = "") -> dict:
    """Create a new project."""
    app = _ctx(ctx)
    try:
        return projects_mod.project_to_dict(projects_mod.create_project(app.db, name, description))
    except TaskPilotError as e:
        return _error(e)


@mcp.tool()
def list_projects(ctx: Context) -> list[dict]:
    """List all projects with their progress."""
    app = _ctx(ctx)
    projects = [projects_mod.get_project(app.db, p.id) for p in projects_mod.list_projects(app.db)]
    return [projects_mod.project_to_dict(p) for p in projects]


@mcp.tool()
def update_project_status(ctx: Context, project_id: int, status: str) -> dict:
    """Set a project's status: Active, OnHold, Completed or Cancelled."""
    app = _ctx(ctx)
    try:
        project = projects_mod.update_project_status(app.db, project_id, status)
        return projects_mod.project_to_dict(project)
    except TaskPilotError as e:
        return _error(e)


@mcp.tool()
def delete_project(ctx: Context, project_id: int) -> dict:
    """Delete a project with all of its milestones, tasks and messages."""
    app = _ctx(ctx)
    if not projects_mod.delete_project(app.db, project_id):
        return {"error": f"Project not found: {project_id}"}
    return {"deleted": project_id}


@mcp.tool()
def project_progress(ctx: Context, project_id: int) -> dict:
    """Progress report: milestones, tasks and subtasks with percentages."""
    app = _ctx(ctx)
    try:
        return ProgressTracker(app.db).project_report(project_id).to_dict()
    except TaskPilotError as e:
        return _error(e)


@mcp.tool()
def create_milestone(
    ctx: Context,
    project_id: int,
    title: str,
    description: str = "",
    success_criteria: str = "",
) -> dict:
    """Create a milestone in a project. Its status is derived from its tasks."""
    app = _ctx(ctx)
    try:
        milestone = milestones_mod.create_milestone(
            app.db, project_id, title, description, success_criteria
        )
        return milestones_mod.milestone_to_dict(app.db, milestone)
    except TaskPilotError as e:
        return _error(e)


@mcp.tool()
def list_milestones(ctx: Context, project_id: int) -> list[dict]:
    """List a project's milestones."""
    app = _ctx(ctx)
    milestones = [
        milestones_mod.get_milestone(app.db, m.id)
        for m in milestones_mod.list_milestones(app.db, project_id)
    ]
    return [milestones_mod.milestone_to_dict(app.db, m) for m in milestones]


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def create_task(
    ctx: Context,
    milestone_id: int,
    title: str,
    description: str = "",
    priority: str = "Medium",
    depends_on: list[int] | None = None,
) -> dict:
    """Create a task. Priority: Low, Medium, High or Critical."""
    app = _ctx(ctx)
    try:
        task = tasks_mod.create_task(
            app.db, milestone_id, title, description, priority, depends_on=depends_on
        )
        return tasks_mod.task_to_dict(task)
    except TaskPilotError as e:
        return _error(e)


@mcp.tool()
def list_tasks(ctx: Context, milestone_id: int, status: str | None = None) -> list[dict]:
    """List a milestone's top-level tasks, optionally filtered by status."""
    app = _ctx(ctx)
    tasks = tasks_mod.list_tasks(app.db, milestone_id, status=status)
    return [tasks_mod.task_to_dict(tasks_mod.get_task(app.db, t.id)) for t in tasks]


@mcp.tool()
def get_task(ctx: Context, task_id: int) -> dict:
    """Get full details of a task including dependencies, subtasks and metrics."""
    app = _ctx(ctx)
    task = tasks_mod.get_task(app.db, task_id)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    return tasks_mod.task_to_dict(task)


@mcp.tool()
def update_task_status(ctx: Context, task_id: int, status: str, reason: str | None = None) -> dict:
    """Change a task's status.

    Allowed moves: Pending -> InProgress|Cancelled, InProgress -> Completed|Blocked|Failed,
    Blocked -> InProgress|Cancelled, Completed -> InProgress, Failed -> InProgress|Cancelled,
    Cancelled -> Pending. Parent tasks and the milestone follow automatically.
    """
    app = _ctx(ctx)
    try:
        return tasks_mod.task_to_dict(
            tasks_mod.update_task_status(app.db, task_id, status, reason)
        )
    except TaskPilotError as e:
        return _error(e)


@mcp.tool()
def add_subtask(
    ctx: Context,
    parent_task_id: int,
    title: str,
    description: str = "",
    priority: str = "Medium",
) -> dict:
    """Add a subtask under an existing task."""
    app = _ctx(ctx)
    try:
        return tasks_mod.task_to_dict(
            tasks_mod.add_subtask(app.db, parent_task_id, title, description, priority)
        )
    except TaskPilotError as e:
        return _error(e)


@mcp.tool()
def add_dependency(ctx: Context, task_id: int, depends_on_id: int) -> dict:
    """Make a task depend on another. Circular dependencies are rejected."""
    app = _ctx(ctx)
    try:
        return tasks_mod.task_to_dict(tasks_mod.add_dependency(app.db, task_id, depends_on_id))
    except TaskPilotError as e:
        return _error(e)


@mcp.tool()
def remove_dependency(ctx: Context, task_id: int, depends_on_id: int) -> dict:
    """Remove a dependency from a task."""
    app = _ctx(ctx)
    try:
        return tasks_mod.task_to_dict(tasks_mod.remove_dependency(app.db, task_id, depends_on_id))
    except TaskPilotError as e:
        return _error(e)


@mcp.tool()
def assign_task(ctx: Context, task_id: int, agent_id: str) -> dict:
    """Record which agent a task is assigned to."""
    app = _ctx(ctx)
    try:
        return tasks_mod.task_to_dict(tasks_mod.assign_task(app.db, task_id, agent_id))
    except TaskPilotError as e:
        return _error(e)


@mcp.tool()
def delete_task(ctx: Context, task_id: int) -> dict:
    """Delete a task with its subtasks, dependencies, metrics and messages."""
    app = _ctx(ctx)
    if not tasks_mod.delete_task(app.db, task_id):
        return {"error": f"Task not found: {task_id}"}
    return {"deleted": task_id}


@mcp.tool()
def get_ready_tasks(ctx: Context, milestone_id: int) -> list[dict]:
    """Pending tasks whose dependencies are all completed."""
    app = _ctx(ctx)
    return [tasks_mod.task_to_dict(t) for t in tasks_mod.get_ready_tasks(app.db, milestone_id)]


@mcp.tool()
def get_task_history(ctx: Context, task_id: int) -> list[dict]:
    """The task's message log, oldest first."""
    app = _ctx(ctx)
    try:
        history = tasks_mod.get_task_history(app.db, task_id)
    except TaskPilotError as e:
        return [_error(e)]
    return [messages_mod.message_to_dict(app.db, m) for m in history]


# ── Agent & Execution Tools ──────────────────────────────────────────────────


@mcp.tool()
def agent_metrics(ctx: Context, agent_id: str) -> list[dict]:
    """All recorded metrics for an agent, with performance summaries."""
    app = _ctx(ctx)
    return [metrics_mod.metric_to_dict(m) for m in app.agents.get_agent_history(agent_id)]


@mcp.tool()
async def execute_task(ctx: Context, task_id: int) -> dict:
    """Run a task through the generation service until it completes or runs out of attempts."""
    app = _ctx(ctx)
    if app.service is None:
        return _no_service()
    notifier = None
    if app.config.slack_bot_token and app.config.slack_channel:
        notifier = slack_mod.SlackNotifier(app.config.slack_bot_token, app.config.slack_channel)
    executor = TaskExecutor(
        app.db,
        app.service,
        app.agents,
        max_attempts=app.config.max_attempts,
        history_window=app.config.history_window,
        request_timeout=app.config.request_timeout,
        notifier=notifier,
    )
    try:
        result = await executor.execute(task_id)
    except (TaskPilotError, TimeoutError) as e:
        return _error(e)
    return {
        "task_id": result.task_id,
        "agent_id": result.agent_id,
        "success": result.success,
        "attempts": result.attempts,
        "state": str(result.state),
    }


@mcp.tool()
async def chat(
    ctx: Context,
    message: str,
    project_id: int | None = None,
    milestone_id: int | None = None,
    task_id: int | None = None,
) -> dict:
    """Send a chat message in a scope and get the reply plus a refreshed outline."""
    app = _ctx(ctx)
    if app.service is None:
        return _no_service()
    try:
        turn = await chat_mod.chat_turn(
            app.db,
            app.service,
            message,
            project_id=project_id,
            milestone_id=milestone_id,
            task_id=task_id,
            history_window=app.config.history_window,
        )
    except (TaskPilotError, GenerationServiceError) as e:
        return _error(e)
    return {"reply": turn.reply.content, "outline": turn.outline}


# ── Slack Tools ───────────────────────────────────────────────────────────────


@mcp.tool()
def post_status_update(ctx: Context, project_id: int, channel: str | None = None) -> dict:
    """Post a project progress summary to Slack."""
    app = _ctx(ctx)
    channel = channel or app.config.slack_channel
    if not channel:
        return {"error": "No Slack channel given and TP_SLACK_CHANNEL not set"}
    try:
        report = ProgressTracker(app.db).project_report(project_id).to_dict()
        blocks = slack_mod.format_progress_update(report)
        msg = slack_mod.send_message(
            app.config.slack_bot_token, channel, f"Status: {report['name']}", blocks
        )
        return {"channel": msg.channel, "ts": msg.ts}
    except (TaskPilotError, slack_mod.SlackError) as e:
        return _error(e)
