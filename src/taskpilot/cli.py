"""CLI entry point for taskpilot."""

import asyncio
import json
import logging
import sys

import click

from taskpilot.config import get_config
from taskpilot.core import chat as chat_mod
from taskpilot.core import metrics as metrics_mod
from taskpilot.core import milestones as milestones_mod
from taskpilot.core import projects as projects_mod
from taskpilot.core import tasks as tasks_mod
from taskpilot.core.executor import ExecutionResult, TaskExecutor
from taskpilot.core.progress import ProgressTracker
from taskpilot.db.engine import get_db
from taskpilot.errors import TaskPilotError
from taskpilot.integrations import slack as slack_mod
from taskpilot.integrations.generation import OpenAIChatService

STATUS_ICONS = {
    "Pending": "○",
    "InProgress": "●",
    "Completed": "✓",
    "Blocked": "✗",
    "Failed": "!",
    "Cancelled": "-",
}


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _fail(message) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _service(config) -> OpenAIChatService:
    if not config.api_key:
        _fail("Generation service not configured: set TP_API_KEY or OPENAI_API_KEY")
    return OpenAIChatService(
        config.api_key,
        base_url=config.api_base_url,
        model=config.model,
        timeout_seconds=config.request_timeout,
    )


def _ids(value: str | None) -> list[int] | None:
    if not value:
        return None
    try:
        return [int(v.strip()) for v in value.split(",")]
    except ValueError:
        raise click.BadParameter("expected comma-separated task ids") from None


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Log at DEBUG level")
def main(verbose):
    """tp - task orchestration CLI"""
    config = get_config()
    logging.basicConfig(
        level=logging.DEBUG if verbose else config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Project Commands ──────────────────────────────────────────────────────────


@main.group("project")
def project_group():
    """Manage projects."""
    pass


@project_group.command("create")
@click.argument("name")
@click.option("--description", "-d", default="", help="Project description")
def project_create(name, description):
    """Create a new project."""
    with _get_db() as db:
        try:
            project = projects_mod.create_project(db, name, description)
        except TaskPilotError as e:
            _fail(e)
        click.echo(f"Project created: {project.id} ({project.name})")


@project_group.command("list")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def project_list(json_output):
    """List projects."""
    with _get_db() as db:
        projects = [projects_mod.get_project(db, p.id) for p in projects_mod.list_projects(db)]
        if json_output:
            click.echo(json.dumps([projects_mod.project_to_dict(p) for p in projects], indent=2))
            return
        if not projects:
            click.echo("No projects found.")
            return
        for p in projects:
            progress = projects_mod.project_progress(p)
            click.echo(f"  {p.id}: {p.name} ({p.status}) {progress:.0f}%")


@project_group.command("show")
@click.argument("project_id", type=int)
def project_show(project_id):
    """Show project details with its milestones."""
    with _get_db() as db:
        project = projects_mod.get_project(db, project_id)
        if not project:
            _fail(f"Project not found: {project_id}")
        click.echo(f"Project: {project.id}")
        click.echo(f"  Name: {project.name}")
        click.echo(f"  Status: {project.status}")
        if project.description:
            click.echo(f"  Description: {project.description}")
        click.echo(f"  Progress: {projects_mod.project_progress(project):.0f}%")
        for m in project.milestones:
            click.echo(f"    {STATUS_ICONS.get(m.status, '?')} {m.id}: {m.title} ({m.status})")


@project_group.command("update")
@click.argument("project_id", type=int)
@click.option("--name", default=None, help="New name")
@click.option("--description", "-d", default=None, help="New description")
def project_update(project_id, name, description):
    """Update a project's name or description."""
    with _get_db() as db:
        try:
            project = projects_mod.update_project(db, project_id, name, description)
        except TaskPilotError as e:
            _fail(e)
        click.echo(f"Project {project.id}: {project.name}")


@project_group.command("status")
@click.argument("project_id", type=int)
@click.argument("status")
def project_status(project_id, status):
    """Set a project's status (Active, OnHold, Completed, Cancelled)."""
    with _get_db() as db:
        try:
            project = projects_mod.update_project_status(db, project_id, status)
        except TaskPilotError as e:
            _fail(e)
        click.echo(f"Project {project.id} is now {project.status}")


@project_group.command("archive")
@click.argument("project_id", type=int)
def project_archive(project_id):
    """Mark a project Completed."""
    with _get_db() as db:
        try:
            project = projects_mod.archive_project(db, project_id)
        except TaskPilotError as e:
            _fail(e)
        click.echo(f"Project {project.id} archived")


@project_group.command("delete")
@click.argument("project_id", type=int)
@click.confirmation_option(prompt="Delete the project with all milestones and tasks?")
def project_delete(project_id):
    """Delete a project and everything in it."""
    with _get_db() as db:
        if not projects_mod.delete_project(db, project_id):
            _fail(f"Project not found: {project_id}")
        click.echo(f"Deleted project {project_id}")


@project_group.command("history")
@click.argument("project_id", type=int)
def project_history(project_id):
    """Show a project's message log."""
    with _get_db() as db:
        for m in projects_mod.get_project_history(db, project_id):
            click.echo(f"  [{m.created_at}] {m.type}: {m.content}")


# ── Milestone Commands ────────────────────────────────────────────────────────


@main.group("milestone")
def milestone_group():
    """Manage milestones."""
    pass


@milestone_group.command("add")
@click.argument("project_id", type=int)
@click.argument("title")
@click.option("--description", "-d", default="", help="Milestone description")
@click.option("--criteria", default="", help="Success criteria")
def milestone_add(project_id, title, description, criteria):
    """Create a milestone in a project."""
    with _get_db() as db:
        try:
            milestone = milestones_mod.create_milestone(db, project_id, title, description, criteria)
        except TaskPilotError as e:
            _fail(e)
        click.echo(f"Created milestone: {milestone.id} ({milestone.title})")


@milestone_group.command("list")
@click.argument("project_id", type=int)
def milestone_list(project_id):
    """List a project's milestones."""
    with _get_db() as db:
        milestones = milestones_mod.list_milestones(db, project_id)
        if not milestones:
            click.echo("No milestones found.")
            return
        for m in milestones:
            m = milestones_mod.get_milestone(db, m.id)
            icon = STATUS_ICONS.get(m.status, "?")
            click.echo(
                f"  {icon} {m.id}: {m.title} ({m.status}) {milestones_mod.milestone_progress(m):.0f}%"
            )


@milestone_group.command("show")
@click.argument("milestone_id", type=int)
def milestone_show(milestone_id):
    """Show a milestone with its tasks and blocking issues."""
    with _get_db() as db:
        milestone = milestones_mod.get_milestone(db, milestone_id)
        if not milestone:
            _fail(f"Milestone not found: {milestone_id}")
        data = milestones_mod.milestone_to_dict(db, milestone)
        click.echo(f"Milestone: {milestone.id}")
        click.echo(f"  Title: {milestone.title}")
        click.echo(f"  Status: {milestone.status}")
        if milestone.success_criteria:
            click.echo(f"  Success criteria: {milestone.success_criteria}")
        click.echo(f"  Progress: {data['progress']:.0f}%")
        for t in milestone.tasks:
            click.echo(f"    {STATUS_ICONS.get(t.status, '?')} {t.id}: {t.title} ({t.status})")
        for issue in data["blocking_issues"]:
            click.echo(f"  Blocking: {issue}")


@milestone_group.command("delete")
@click.argument("milestone_id", type=int)
def milestone_delete(milestone_id):
    """Delete a milestone and its tasks."""
    with _get_db() as db:
        if not milestones_mod.delete_milestone(db, milestone_id):
            _fail(f"Milestone not found: {milestone_id}")
        click.echo(f"Deleted milestone {milestone_id}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("milestone_id", type=int)
@click.argument("title")
@click.option("--description", "-d", default="", help="Task description")
@click.option(
    "--priority",
    "-p",
    default="Medium",
    type=click.Choice(["Low", "Medium", "High", "Critical"]),
    help="Task priority",
)
@click.option("--parent", type=int, default=None, help="Parent task ID")
@click.option("--depends-on", default=None, help="Comma-separated task IDs this depends on")
def task_add(milestone_id, title, description, priority, parent, depends_on):
    """Create a new task."""
    deps = _ids(depends_on)
    with _get_db() as db:
        try:
            task = tasks_mod.create_task(
                db, milestone_id, title, description, priority,
                parent_task_id=parent, depends_on=deps,
            )
        except TaskPilotError as e:
            _fail(e)
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: {task.priority}")
        click.echo(f"  Status: {task.status}")
        if task.depends_on:
            click.echo(f"  Depends on: {', '.join(str(d) for d in task.depends_on)}")


@task_group.command("list")
@click.argument("milestone_id", type=int)
@click.option("--status", default=None, help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(milestone_id, status, json_output):
    """List a milestone's tasks."""
    with _get_db() as db:
        try:
            tasks = tasks_mod.list_tasks(db, milestone_id, status=status)
        except TaskPilotError as e:
            _fail(e)

        if json_output:
            full = [tasks_mod.get_task(db, t.id) for t in tasks]
            click.echo(json.dumps([tasks_mod.task_to_dict(t) for t in full], indent=2))
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        for task in tasks:
            icon = STATUS_ICONS.get(task.status, "?")
            deps = (
                f" [depends: {', '.join(str(d) for d in task.depends_on)}]"
                if task.depends_on else ""
            )
            click.echo(f"  {icon} {task.priority} {task.id}: {task.title} ({task.status}){deps}")
            for sub in tasks_mod.list_tasks(db, milestone_id, parent_task_id=task.id):
                sub_icon = STATUS_ICONS.get(sub.status, "?")
                click.echo(f"    {sub_icon} {sub.priority} {sub.id}: {sub.title} ({sub.status})")


@task_group.command("show")
@click.argument("task_id", type=int)
def task_show(task_id):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            _fail(f"Task not found: {task_id}")

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: {task.priority}")
        click.echo(f"  Status: {task.status}")
        click.echo(f"  Milestone: {task.milestone_id}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.assigned_agent_id:
            click.echo(f"  Agent: {task.assigned_agent_id}")
        if task.blocked_reason:
            click.echo(f"  Blocked: {task.blocked_reason}")
        click.echo(f"  Progress: {tasks_mod.calculate_progress(task):.2f}%")
        for dep in task.dependencies:
            click.echo(f"  Depends on: {dep.depends_on_task_id} {dep.depends_on_title} ({dep.depends_on_status})")
        for sub in task.subtasks:
            click.echo(f"    {STATUS_ICONS.get(sub.status, '?')} {sub.id}: {sub.title} ({sub.status})")
        if task.metrics:
            summary = metrics_mod.task_metrics_summary(task.metrics)
            click.echo(
                f"  Attempts: {summary['total_attempts']} "
                f"({summary['successful_attempts']} successful)"
            )


@task_group.command("status")
@click.argument("task_id", type=int)
@click.argument("status")
@click.option("--reason", default=None, help="Reason, e.g. what a task is blocked on")
def task_status(task_id, status, reason):
    """Change a task's status."""
    with _get_db() as db:
        try:
            task = tasks_mod.update_task_status(db, task_id, status, reason)
        except TaskPilotError as e:
            _fail(e)
        click.echo(f"Task {task.id} is now {task.status}")


@task_group.command("add-dep")
@click.argument("task_id", type=int)
@click.argument("depends_on_id", type=int)
def task_add_dep(task_id, depends_on_id):
    """Add a dependency to a task."""
    with _get_db() as db:
        try:
            task = tasks_mod.add_dependency(db, task_id, depends_on_id)
        except TaskPilotError as e:
            _fail(e)
        click.echo(f"Added dependency: {task_id} now depends on {depends_on_id}")
        click.echo(f"  Depends on: {', '.join(str(d) for d in task.depends_on)}")


@task_group.command("remove-dep")
@click.argument("task_id", type=int)
@click.argument("depends_on_id", type=int)
def task_remove_dep(task_id, depends_on_id):
    """Remove a dependency from a task."""
    with _get_db() as db:
        try:
            task = tasks_mod.remove_dependency(db, task_id, depends_on_id)
        except TaskPilotError as e:
            _fail(e)
        click.echo(f"Removed dependency: {task_id} no longer depends on {depends_on_id}")
        if task.depends_on:
            click.echo(f"  Remaining deps: {', '.join(str(d) for d in task.depends_on)}")
        else:
            click.echo("  No remaining dependencies")


@task_group.command("subtask")
@click.argument("parent_id", type=int)
@click.argument("title")
@click.option("--description", "-d", default="", help="Subtask description")
@click.option(
    "--priority",
    "-p",
    default="Medium",
    type=click.Choice(["Low", "Medium", "High", "Critical"]),
)
def task_subtask(parent_id, title, description, priority):
    """Add a subtask under a task."""
    with _get_db() as db:
        try:
            task = tasks_mod.add_subtask(db, parent_id, title, description, priority)
        except TaskPilotError as e:
            _fail(e)
        click.echo(f"Created subtask: {task.id} under {parent_id}")


@task_group.command("assign")
@click.argument("task_id", type=int)
@click.argument("agent_id")
def task_assign(task_id, agent_id):
    """Record the agent a task is assigned to."""
    with _get_db() as db:
        try:
            task = tasks_mod.assign_task(db, task_id, agent_id)
        except TaskPilotError as e:
            _fail(e)
        click.echo(f"Task {task.id} assigned to {task.assigned_agent_id}")


@task_group.command("delete")
@click.argument("task_id", type=int)
def task_delete(task_id):
    """Delete a task and its subtasks."""
    with _get_db() as db:
        if not tasks_mod.delete_task(db, task_id):
            _fail(f"Task not found: {task_id}")
        click.echo(f"Deleted task {task_id}")


@task_group.command("history")
@click.argument("task_id", type=int)
def task_history(task_id):
    """Show a task's message log."""
    with _get_db() as db:
        try:
            history = tasks_mod.get_task_history(db, task_id)
        except TaskPilotError as e:
            _fail(e)
        for m in history:
            click.echo(f"  [{m.created_at}] {m.role}/{m.type}: {m.content}")


@task_group.command("ready")
@click.argument("milestone_id", type=int)
def task_ready(milestone_id):
    """List pending tasks whose dependencies are complete."""
    with _get_db() as db:
        ready = tasks_mod.get_ready_tasks(db, milestone_id)
        if not ready:
            click.echo("No ready tasks.")
            return
        for task in ready:
            click.echo(f"  {task.priority} {task.id}: {task.title}")


@task_group.command("run")
@click.argument("task_ids", nargs=-1, type=int, required=True)
def task_run(task_ids):
    """Execute tasks through the generation service."""
    config = get_config()
    service = _service(config)
    notifier = None
    if config.slack_bot_token and config.slack_channel:
        notifier = slack_mod.SlackNotifier(config.slack_bot_token, config.slack_channel)

    async def run(db):
        async with service:
            executor = TaskExecutor(
                db,
                service,
                max_attempts=config.max_attempts,
                history_window=config.history_window,
                request_timeout=config.request_timeout,
                notifier=notifier,
            )
            return await executor.execute_many(list(task_ids))

    with _get_db() as db:
        results = asyncio.run(run(db))

    failed = False
    for task_id, result in zip(task_ids, results):
        if isinstance(result, ExecutionResult):
            outcome = "completed" if result.success else "failed"
            click.echo(f"Task {task_id} {outcome} after {result.attempts} attempt(s)")
            failed = failed or not result.success
        else:
            click.echo(f"Task {task_id} error: {result}", err=True)
            failed = True
    if failed:
        sys.exit(1)


# ── Agent Commands ───────────────────────────────────────────────────────────


@main.group("agent")
def agent_group():
    """Agent metrics."""
    pass


@agent_group.command("metrics")
@click.argument("agent_id")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def agent_metrics(agent_id, json_output):
    """Show recorded metrics for an agent."""
    with _get_db() as db:
        history = metrics_mod.list_agent_metrics(db, agent_id)
        if json_output:
            click.echo(json.dumps([metrics_mod.metric_to_dict(m) for m in history], indent=2))
            return
        if not history:
            click.echo(f"No metrics for agent {agent_id}")
            return
        for m in history:
            level = metrics_mod.performance_level(m.success_rate)
            click.echo(f"  task {m.task_id}: {m.status} rate={m.success_rate} ({level})")
            for err in m.errors:
                click.echo(f"    error: {err}")


# ── Report & Chat ─────────────────────────────────────────────────────────────


@main.command("report")
@click.argument("project_id", type=int)
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def report(project_id, json_output):
    """Show a project progress report."""
    with _get_db() as db:
        try:
            data = ProgressTracker(db).project_report(project_id).to_dict()
        except TaskPilotError as e:
            _fail(e)
    if json_output:
        click.echo(json.dumps(data, indent=2))
        return
    click.echo(f"{data['name']} ({data['status']}): {data['progress']:.2f}%")
    click.echo(
        f"  Tasks: {data['completed_tasks']}/{data['total_tasks']} completed, "
        f"{data['in_progress_tasks']} in progress, {data['blocked_tasks']} blocked"
    )
    for m in data["milestones"]:
        click.echo(f"  {STATUS_ICONS.get(m['status'], '?')} {m['title']}: {m['progress']:.2f}%")
        for t in m["tasks"]:
            click.echo(f"      {STATUS_ICONS.get(t['status'], '?')} {t['title']}: {t['progress']:.2f}%")


@main.command("chat")
@click.argument("message")
@click.option("--project", type=int, default=None, help="Project scope")
@click.option("--milestone", type=int, default=None, help="Milestone scope")
@click.option("--task", type=int, default=None, help="Task scope")
def chat(message, project, milestone, task):
    """Send a chat message and print the reply and outline."""
    config = get_config()
    service = _service(config)

    async def run(db):
        async with service:
            return await chat_mod.chat_turn(
                db, service, message,
                project_id=project, milestone_id=milestone, task_id=task,
                history_window=config.history_window,
            )

    with _get_db() as db:
        try:
            turn = asyncio.run(run(db))
        except TaskPilotError as e:
            _fail(e)
    click.echo(turn.reply.content)
    if turn.outline:
        click.echo("\nOutline:")
        for item in turn.outline:
            mark = "x" if item["checked"] else " "
            click.echo(f"  [{mark}] {item['id']}. {item['text']}")


# ── Slack Commands ───────────────────────────────────────────────────────────


@main.group("slack")
def slack_group():
    """Slack integration commands."""
    pass


@slack_group.command("status")
@click.argument("project_id", type=int)
@click.option("--channel", default=None, help="Slack channel (defaults to TP_SLACK_CHANNEL)")
def slack_status(project_id, channel):
    """Post a project progress update to Slack."""
    config = get_config()
    channel = channel or config.slack_channel
    if not channel:
        _fail("No channel specified and TP_SLACK_CHANNEL not set.")
    with _get_db() as db:
        try:
            data = ProgressTracker(db).project_report(project_id).to_dict()
        except TaskPilotError as e:
            _fail(e)
    blocks = slack_mod.format_progress_update(data)
    try:
        result = slack_mod.send_message(
            config.slack_bot_token, channel, f"Status: {data['name']}", blocks
        )
    except slack_mod.SlackError as e:
        _fail(e)
    click.echo(f"Status posted to {result.channel}")


# ── API & MCP Server Commands ────────────────────────────────────────────────


@main.command("ui")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def ui_command(host, port):
    """Serve the JSON API."""
    from taskpilot.web.app import run_server

    click.echo(f"Serving API at http://{host}:{port}/api/projects")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from taskpilot.mcp.server import mcp
    from taskpilot.mcp import prompts  # noqa: F401 - registers prompts

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
