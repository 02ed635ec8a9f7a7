"""Prompt assembly for the generation service."""

import logging

from taskpilot.db.models import AgentMetric, Message, Milestone, Project, Task
from taskpilot.errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_WINDOW = 10

TASK_SYSTEM_PROMPT = (
    "You are a task execution agent. Your goal is to complete the assigned task "
    "according to the specifications."
)
TASK_INSTRUCTIONS = (
    "Please complete this task according to the following guidelines:\n"
    "1. Analyze the task requirements\n"
    "2. Provide a step-by-step solution\n"
    "3. Include any relevant output or results\n"
    "4. Indicate clearly if the task is completed or needs further action"
)
TASK_CONSTRAINTS = [
    "Maintain data consistency",
    "Follow security guidelines",
    "Provide clear documentation",
    "Report any errors or issues",
]
RETRY_SYSTEM_PROMPT = (
    "Previous attempts to complete this task were unsuccessful. Please review the "
    "history and try a different approach."
)
RETRY_INSTRUCTIONS = (
    "Please review the previous attempts and:\n"
    "1. Identify why previous attempts failed\n"
    "2. Propose a different approach\n"
    "3. Execute the new solution\n"
    "4. Verify the results"
)


class PromptBuilder:
    """Accumulates titled text sections and joins them in call order.

    Every ``with_*`` method returns the builder. ``clear()`` drops both the
    text and the recorded context, so one builder can be reused safely.
    """

    def __init__(self):
        self._sections: list[str] = []
        self._context: dict[str, object] = {}

    def _add(self, title: str, lines: list[str]) -> "PromptBuilder":
        self._sections.append("\n".join([f"{title}:", *lines]))
        return self

    def with_system_prompt(self, text: str) -> "PromptBuilder":
        if not text:
            raise ValidationError("System prompt cannot be empty")
        return self._add("System", [text])

    def with_project_context(self, project: Project) -> "PromptBuilder":
        if project is None:
            raise ValidationError("Project is required")
        self._context["project_id"] = project.id
        self._context["project_name"] = project.name
        return self._add(
            "Project Context",
            [
                f"Project: {project.name}",
                f"Description: {project.description}",
                f"Status: {project.status}",
            ],
        )

    def with_milestone_context(self, milestone: Milestone) -> "PromptBuilder":
        if milestone is None:
            raise ValidationError("Milestone is required")
        self._context["milestone_id"] = milestone.id
        self._context["milestone_title"] = milestone.title
        return self._add(
            "Milestone Context",
            [
                f"Title: {milestone.title}",
                f"Description: {milestone.description}",
                f"Success Criteria: {milestone.success_criteria}",
                f"Status: {milestone.status}",
            ],
        )

    def with_task_context(self, task: Task) -> "PromptBuilder":
        if task is None:
            raise ValidationError("Task is required")
        self._context["task_id"] = task.id
        self._context["task_title"] = task.title
        lines = [
            f"Title: {task.title}",
            f"Description: {task.description}",
            f"Priority: {task.priority}",
            f"Status: {task.status}",
        ]
        titles = [d.depends_on_title for d in task.dependencies if d.depends_on_title]
        if titles:
            lines.append("Dependencies:")
            lines.extend(f"- {t}" for t in titles)
        return self._add("Task Context", lines)

    def with_conversation_history(
        self,
        messages: list[Message],
        max_messages: int = DEFAULT_HISTORY_WINDOW,
    ) -> "PromptBuilder":
        """The most recent ``max_messages`` entries, oldest first."""
        if messages is None:
            raise ValidationError("Messages are required")
        window = messages[-max_messages:] if max_messages > 0 else []
        return self._add(
            "Conversation History",
            [f"{m.role}: {m.tokenized_content or m.content}" for m in window],
        )

    def with_agent_context(
        self,
        agent_id: str,
        metrics: AgentMetric | None = None,
    ) -> "PromptBuilder":
        if not agent_id:
            raise ValidationError("Agent id cannot be empty")
        self._context["agent_id"] = agent_id
        lines = [f"Agent ID: {agent_id}"]
        if metrics is not None:
            rate = f"{metrics.success_rate:.2f}" if metrics.success_rate is not None else "N/A"
            lines.append(f"Success Rate: {rate}%")
            if metrics.performance_metrics:
                lines.append("Performance Metrics:")
                lines.extend(f"- {k}: {v}" for k, v in metrics.performance_metrics.items())
        return self._add("Agent Context", lines)

    def with_instructions(self, text: str) -> "PromptBuilder":
        if not text:
            raise ValidationError("Instructions cannot be empty")
        return self._add("Instructions", [text])

    def with_constraints(self, constraints: list[str]) -> "PromptBuilder":
        if not constraints:
            raise ValidationError("Constraints list cannot be empty")
        return self._add("Constraints", [f"- {c}" for c in constraints])

    def with_expected_output(self, output_format: str) -> "PromptBuilder":
        if not output_format:
            raise ValidationError("Output format cannot be empty")
        return self._add("Expected Output Format", [output_format])

    def with_examples(self, examples: list[tuple[str, str]]) -> "PromptBuilder":
        if not examples:
            raise ValidationError("Examples list cannot be empty")
        lines = []
        for given, expected in examples:
            lines.extend(["Input:", given, "Output:", expected, ""])
        return self._add("Examples", lines[:-1])

    def with_custom_section(self, title: str, content: str) -> "PromptBuilder":
        if not title:
            raise ValidationError("Section title cannot be empty")
        if not content:
            raise ValidationError("Section content cannot be empty")
        return self._add(title, [content])

    def build(self) -> str:
        prompt = "\n\n".join(self._sections).strip()
        logger.debug(
            "Generated prompt with context: project=%s milestone=%s task=%s",
            self._context.get("project_name", "None"),
            self._context.get("milestone_title", "None"),
            self._context.get("task_title", "None"),
        )
        return prompt

    def get_context(self) -> dict[str, object]:
        return dict(self._context)

    def clear(self) -> "PromptBuilder":
        self._sections.clear()
        self._context.clear()
        return self


def build_task_prompt(
    task: Task,
    milestone: Milestone | None = None,
    project: Project | None = None,
) -> str:
    """First-attempt prompt: role, context and the fixed task guidelines."""
    builder = PromptBuilder().with_system_prompt(TASK_SYSTEM_PROMPT)
    if project is not None:
        builder.with_project_context(project)
    if milestone is not None:
        builder.with_milestone_context(milestone)
    return (
        builder.with_task_context(task)
        .with_instructions(TASK_INSTRUCTIONS)
        .with_constraints(TASK_CONSTRAINTS)
        .build()
    )


def build_retry_prompt(
    task: Task,
    history: list[Message],
    max_messages: int = DEFAULT_HISTORY_WINDOW,
) -> str:
    """Prompt for a later attempt, framed around what went wrong before."""
    return (
        PromptBuilder()
        .with_system_prompt(RETRY_SYSTEM_PROMPT)
        .with_task_context(task)
        .with_conversation_history(history, max_messages)
        .with_instructions(RETRY_INSTRUCTIONS)
        .build()
    )
