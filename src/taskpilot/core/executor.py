"""Task execution: a bounded retry loop that drives a task through the generation service."""

import asyncio
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass

from taskpilot.core import tasks as task_ops
from taskpilot.core.agents import AgentManager
from taskpilot.core.messages import get_message_thread, save_message
from taskpilot.core.milestones import get_milestone
from taskpilot.core.projects import get_project
from taskpilot.core.prompts import DEFAULT_HISTORY_WINDOW, build_retry_prompt, build_task_prompt
from taskpilot.db.engine import utcnow
from taskpilot.db.models import AgentMetric, AgentState, MessageType, ProcessingState
from taskpilot.errors import InvalidTransitionError
from taskpilot.integrations.generation import GenerationService

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
COMPLETION_PHRASES = ("task completed", "successfully completed", "finished successfully")
SUCCESS_REASON = "Task completed successfully"
FAILURE_REASON = "Task failed after maximum attempts"

PROCESSING_TRANSITIONS: dict[ProcessingState, frozenset[ProcessingState]] = {
    ProcessingState.NOT_STARTED: frozenset({ProcessingState.INITIALIZING}),
    ProcessingState.INITIALIZING: frozenset({ProcessingState.PROCESSING, ProcessingState.FAILED}),
    ProcessingState.PROCESSING: frozenset(
        {ProcessingState.COMPLETED, ProcessingState.FAILED, ProcessingState.WAITING}
    ),
    ProcessingState.WAITING: frozenset({ProcessingState.PROCESSING, ProcessingState.FAILED}),
    ProcessingState.FAILED: frozenset({ProcessingState.INITIALIZING}),
    ProcessingState.CANCELLED: frozenset({ProcessingState.INITIALIZING}),
    ProcessingState.COMPLETED: frozenset(),
}

CompletionClassifier = Callable[[str], bool]
Notifier = Callable[["ExecutionResult"], None]


def phrase_classifier(response: str) -> bool:
    """Heuristic: the response mentions one of a few completion phrases."""
    text = (response or "").lower()
    return any(phrase in text for phrase in COMPLETION_PHRASES)


@dataclass
class Execution:
    """State of one task's execution, validated against PROCESSING_TRANSITIONS."""

    task_id: int
    title: str = ""
    agent_id: str | None = None
    state: ProcessingState = ProcessingState.NOT_STARTED
    attempts: int = 0
    last_response: str | None = None

    def advance(self, new_state: ProcessingState):
        if new_state not in PROCESSING_TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.state, new_state)
        logger.debug("Execution of task %s: %s -> %s", self.task_id, self.state, new_state)
        self.state = new_state


@dataclass
class ExecutionResult:
    task_id: int
    agent_id: str
    success: bool
    attempts: int
    state: ProcessingState
    last_response: str | None = None
    title: str = ""


class TaskExecutor:
    """Runs tasks against a generation service, one attempt at a time per task.

    Different tasks may run concurrently on one event loop; each claims its
    own agent. Database work happens between awaits, so transactions from
    different tasks never interleave on the shared connection.
    """

    def __init__(
        self,
        db: sqlite3.Connection,
        service: GenerationService,
        agents: AgentManager | None = None,
        classifier: CompletionClassifier = phrase_classifier,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        history_window: int = DEFAULT_HISTORY_WINDOW,
        request_timeout: float | None = None,
        notifier: Notifier | None = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.db = db
        self.service = service
        self.agents = agents if agents is not None else AgentManager(db)
        self.classifier = classifier
        self.max_attempts = max_attempts
        self.history_window = history_window
        self.request_timeout = request_timeout
        self.notifier = notifier

    async def execute(self, task_id: int) -> ExecutionResult:
        task = task_ops.require_task(self.db, task_id)
        execution = Execution(task_id=task_id, title=task.title)
        execution.advance(ProcessingState.INITIALIZING)

        agent_id = self.agents.initialize_agent("TaskExecutor")
        execution.agent_id = agent_id
        try:
            result = await self._run(execution, task)
        finally:
            if agent_id in self.agents.registry:
                self.agents.shutdown_agent(agent_id)
        await self._notify(result)
        return result

    async def _run(self, execution: Execution, task) -> ExecutionResult:
        task_id, agent_id = execution.task_id, execution.agent_id
        try:
            self.agents.assign_task_to_agent(agent_id, task_id)
        except Exception:
            logger.exception("Error handling task %s", task_id)
            execution.advance(ProcessingState.FAILED)
            raise

        milestone = get_milestone(self.db, task.milestone_id)
        project = get_project(self.db, milestone.project_id) if milestone else None
        prompt = build_task_prompt(task_ops.get_task(self.db, task_id), milestone, project)
        execution.advance(ProcessingState.PROCESSING)

        complete = False
        while not complete and execution.attempts < self.max_attempts:
            execution.attempts += 1
            try:
                response = await self._attempt(execution, prompt)
                execution.advance(ProcessingState.PROCESSING)
                complete = self._process_response(execution, response)
                if not complete:
                    prompt = self._retry_prompt(task_id)
            except sqlite3.Error:
                logger.exception(
                    "Storage error during attempt %d for task %s", execution.attempts, task_id
                )
                raise
            except Exception as exc:
                logger.warning(
                    "Attempt %d for task %s failed: %s", execution.attempts, task_id, exc
                )
                self.agents.record_error(
                    agent_id, task_id, f"Attempt {execution.attempts} failed: {exc}"
                )
                if execution.attempts >= self.max_attempts:
                    self._finalize(execution, success=False)
                    raise
                self.agents.update_agent_status(
                    agent_id, AgentState.PROCESSING, f"Retrying after attempt {execution.attempts}"
                )
                if execution.state == ProcessingState.WAITING:
                    execution.advance(ProcessingState.PROCESSING)
                prompt = self._retry_prompt(task_id)

        return self._finalize(execution, success=complete)

    async def execute_many(self, task_ids: list[int]) -> list:
        """Run several tasks concurrently.

        Returns one entry per task id, in order: an ExecutionResult, or the
        exception that task raised.
        """
        return await asyncio.gather(
            *(self.execute(task_id) for task_id in task_ids), return_exceptions=True
        )

    async def _attempt(self, execution: Execution, prompt: str) -> str:
        execution.advance(ProcessingState.WAITING)
        self.agents.set_waiting(execution.agent_id, True)
        try:
            if self.request_timeout is None:
                return await self.service.complete(prompt)
            return await asyncio.wait_for(self.service.complete(prompt), self.request_timeout)
        finally:
            self.agents.set_waiting(execution.agent_id, False)

    def _process_response(self, execution: Execution, response: str) -> bool:
        execution.last_response = response
        save_message(
            self.db,
            response or "(empty response)",
            role="assistant",
            type=MessageType.AGENT_RESPONSE,
            task_id=execution.task_id,
            metadata={"agent_id": execution.agent_id, "attempt": execution.attempts},
        )
        complete = bool(self.classifier(response or ""))
        self.agents.record_agent_metrics(
            execution.agent_id,
            execution.task_id,
            AgentMetric(
                agent_id=execution.agent_id,
                task_id=execution.task_id,
                status="Completed" if complete else "Failed",
                completion_time=utcnow(),
                notes="Response: " + (response or "")[:100] + "...",
            ),
        )
        logger.info(
            "Task %s attempt %d classified %s",
            execution.task_id,
            execution.attempts,
            "complete" if complete else "incomplete",
        )
        return complete

    def _retry_prompt(self, task_id: int) -> str:
        history = get_message_thread(self.db, task_id=task_id)
        return build_retry_prompt(task_ops.get_task(self.db, task_id), history, self.history_window)

    def _finalize(self, execution: Execution, success: bool) -> ExecutionResult:
        reason = SUCCESS_REASON if success else FAILURE_REASON
        if execution.state == ProcessingState.WAITING:
            execution.advance(ProcessingState.PROCESSING)
        self.agents.complete_task(execution.agent_id, execution.task_id, success, notes=reason)
        execution.advance(ProcessingState.COMPLETED if success else ProcessingState.FAILED)
        self.agents.shutdown_agent(execution.agent_id)
        logger.info(
            "Task %s finished after %d attempts: %s", execution.task_id, execution.attempts, reason
        )
        return ExecutionResult(
            task_id=execution.task_id,
            agent_id=execution.agent_id,
            success=success,
            attempts=execution.attempts,
            state=execution.state,
            last_response=execution.last_response,
            title=execution.title,
        )

    async def _notify(self, result: ExecutionResult):
        if self.notifier is None:
            return
        try:
            await asyncio.to_thread(self.notifier, result)
        except Exception:
            logger.exception("Notification for task %s failed", result.task_id)
