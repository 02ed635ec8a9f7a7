"""MCP prompt templates for common workflows."""

from taskpilot.mcp.server import mcp


@mcp.prompt()
def plan_work(goal: str, project_id: int) -> str:
    """Generate a prompt to break a goal into milestones and tasks."""
    return (
        f"I need to accomplish the following goal in project {project_id}:\n\n"
        f"{goal}\n\n"
        f"Please break this down into milestones, each with concrete, actionable tasks. For each task:\n"
        f"1. Give it a clear, concise title\n"
        f"2. Add a brief description of what needs to be done\n"
        f"3. Pick a priority: Low, Medium, High or Critical\n"
        f"4. Identify dependencies between tasks (which tasks must be done first)\n\n"
        f"Then use create_milestone, create_task, add_subtask and add_dependency to record the plan."
    )


@mcp.prompt()
def status_report(project_id: int) -> str:
    """Generate a prompt for a project status report."""
    return (
        f"Please generate a status report for project {project_id}.\n\n"
        f"Use the project_progress tool to get milestones and tasks, then provide:\n"
        f"1. Overall progress summary\n"
        f"2. Tasks currently in progress\n"
        f"3. Tasks that are blocked and why\n"
        f"4. Recommended next tasks to work on (see get_ready_tasks)\n"
        f"5. Any concerns or risks"
    )


@mcp.prompt()
def review_task(task_id: int) -> str:
    """Generate a prompt to review an executed task."""
    return (
        f"Please review the work recorded for task {task_id}.\n\n"
        f"Use get_task for the task details and agent metrics, and get_task_history for the responses.\n"
        f"Then provide:\n"
        f"1. Summary of what the agent produced\n"
        f"2. Whether the task goals appear to be met\n"
        f"3. Any errors or issues across attempts\n"
        f"4. Whether the task should be reopened"
    )


@mcp.prompt()
def dispatch_tasks(milestone_id: int) -> str:
    """Generate a prompt to execute every ready task in a milestone."""
    return (
        f"I want to work through the ready tasks in milestone {milestone_id}.\n\n"
        f"Please:\n"
        f"1. Use get_ready_tasks to find tasks whose dependencies are complete\n"
        f"2. Use execute_task on each ready task\n"
        f"3. After each run, check get_ready_tasks again since new tasks may have been unblocked\n"
        f"4. Summarize which tasks completed, which failed and how many attempts each took"
    )
