"""Agent lifecycle: in-memory worker states, task assignment and per-attempt metrics."""

import logging
import sqlite3
import threading
import uuid
from datetime import datetime

from taskpilot.core import tasks as task_ops
from taskpilot.core.messages import log_message
from taskpilot.core.metrics import (
    add_error,
    calculate_success_rate,
    get_latest_metrics,
    get_open_metric,
    insert_metric,
    list_agent_metrics,
    update_metric,
)
from taskpilot.db.engine import utcnow
from taskpilot.db.models import AgentMetric, AgentState, MessageType, TaskStatus
from taskpilot.errors import (
    AgentUnavailableError,
    NotFoundError,
    TaskNotAssignedError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# ── Registry ─────────────────────────────────────────────────────────────────


class AgentRegistry:
    """Process-local map of agent id to state, with one lock per agent.

    Nothing here is persisted: a restart loses live states but not the
    task and metric history in the database.
    """

    def __init__(self):
        self._states: dict[str, AgentState] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def register(self, agent_id: str, state: AgentState = AgentState.AVAILABLE):
        with self._guard:
            self._states[agent_id] = state
            self._locks.setdefault(agent_id, threading.Lock())

    def remove(self, agent_id: str):
        with self._guard:
            self._states.pop(agent_id, None)
            self._locks.pop(agent_id, None)

    def lock(self, agent_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(agent_id)
        if lock is None:
            raise NotFoundError("Agent", agent_id)
        return lock

    def get(self, agent_id: str) -> AgentState:
        with self._guard:
            if agent_id not in self._states:
                raise NotFoundError("Agent", agent_id)
            return self._states[agent_id]

    def set(self, agent_id: str, state: AgentState):
        with self._guard:
            if agent_id not in self._states:
                raise NotFoundError("Agent", agent_id)
            self._states[agent_id] = AgentState(state)

    def snapshot(self) -> dict[str, AgentState]:
        with self._guard:
            return dict(self._states)

    def __contains__(self, agent_id: str) -> bool:
        with self._guard:
            return agent_id in self._states

    def __len__(self) -> int:
        with self._guard:
            return len(self._states)


# ── Manager ──────────────────────────────────────────────────────────────────


class AgentManager:
    """Claims and releases agents for tasks.

    Every state change for one agent happens under that agent's lock, so two
    callers can never both assign the same agent. Each mutating call writes
    exactly one audit message.
    """

    def __init__(self, db: sqlite3.Connection, registry: AgentRegistry | None = None):
        self.db = db
        self.registry = registry if registry is not None else AgentRegistry()

    def initialize_agent(self, role: str) -> str:
        if not role or not role.strip():
            raise ValidationError("Agent role cannot be empty")
        agent_id = f"{role}_{uuid.uuid4().hex[:8]}"
        with self.db:
            log_message(
                self.db,
                f"Agent {agent_id} initialized with role: {role}",
                type=MessageType.SYSTEM_PROMPT,
                metadata={"agent_id": agent_id, "role": role},
            )
        self.registry.register(agent_id, AgentState.AVAILABLE)
        logger.info("Initialized agent %s", agent_id)
        return agent_id

    def get_agent_state(self, agent_id: str) -> AgentState:
        return self.registry.get(agent_id)

    def list_agents(self) -> dict[str, AgentState]:
        return self.registry.snapshot()

    def assign_task_to_agent(self, agent_id: str, task_id: int):
        """Claim an available agent for a task and move the task to InProgress."""
        with self.registry.lock(agent_id):
            state = self.registry.get(agent_id)
            if state != AgentState.AVAILABLE:
                logger.warning(
                    "Cannot assign task %s: agent %s is %s", task_id, agent_id, state
                )
                raise AgentUnavailableError(agent_id, state)
            task = task_ops.require_task(self.db, task_id)

            try:
                with self.db:
                    task_ops.apply_status_change(
                        self.db, task_id, TaskStatus.IN_PROGRESS, audit=False
                    )
                    self.db.execute(
                        "UPDATE tasks SET assigned_agent_id = ? WHERE id = ?",
                        (agent_id, task_id),
                    )
                    insert_metric(
                        self.db,
                        AgentMetric(
                            agent_id=agent_id,
                            task_id=task_id,
                            status=TaskStatus.IN_PROGRESS.value,
                            start_time=utcnow(),
                        ),
                    )
                    log_message(
                        self.db,
                        f"Agent {agent_id} assigned to task: {task.title}",
                        type=MessageType.STATUS_UPDATE,
                        task_id=task_id,
                        metadata={"agent_id": agent_id},
                    )
            except Exception:
                logger.exception("Error assigning task %s to agent %s", task_id, agent_id)
                raise
            self.registry.set(agent_id, AgentState.PROCESSING)
        return task_ops.get_task(self.db, task_id)

    def complete_task(
        self,
        agent_id: str,
        task_id: int,
        success: bool,
        notes: str | None = None,
    ):
        """Finish an assignment: close the open metric and release the agent."""
        with self.registry.lock(agent_id):
            task = task_ops.require_task(self.db, task_id)
            if task.assigned_agent_id != agent_id:
                logger.warning(
                    "Task %s is assigned to %s, not %s", task_id, task.assigned_agent_id, agent_id
                )
                raise TaskNotAssignedError(task_id, agent_id)

            new_status = TaskStatus.COMPLETED if success else TaskStatus.FAILED
            try:
                with self.db:
                    task_ops.apply_status_change(
                        self.db, task_id, new_status, reason=notes, audit=False
                    )
                    metric = get_open_metric(self.db, agent_id, task_id)
                    if metric is None:
                        metric = AgentMetric(agent_id=agent_id, task_id=task_id)
                    metric.status = new_status.value
                    metric.completion_time = utcnow()
                    if notes:
                        metric.notes = notes
                    metric.success_rate = calculate_success_rate(metric)
                    if metric.id is None:
                        insert_metric(self.db, metric)
                    else:
                        update_metric(self.db, metric)

                    content = (
                        f"Agent {agent_id} {'completed' if success else 'failed'} "
                        f"task: {task.title}"
                    )
                    if notes:
                        content += f" Notes: {notes}"
                    log_message(
                        self.db,
                        content,
                        type=MessageType.STATUS_UPDATE,
                        task_id=task_id,
                        metadata={"agent_id": agent_id, "success": success},
                    )
            except Exception:
                logger.exception("Error completing task %s for agent %s", task_id, agent_id)
                raise
            self.registry.set(agent_id, AgentState.AVAILABLE)
        return task_ops.get_task(self.db, task_id)

    def record_error(self, agent_id: str, task_id: int, error: str) -> AgentMetric:
        """Store an error as its own metric and put the agent in the Error state."""
        with self.registry.lock(agent_id):
            task_ops.require_task(self.db, task_id)
            now = utcnow()
            metric = AgentMetric(
                agent_id=agent_id,
                task_id=task_id,
                status="Error",
                start_time=now,
                completion_time=now,
            )
            add_error(metric, error, now)
            metric.success_rate = calculate_success_rate(metric)
            with self.db:
                insert_metric(self.db, metric)
                log_message(
                    self.db,
                    f"Agent {agent_id} encountered error: {error}",
                    type=MessageType.ERROR_MESSAGE,
                    task_id=task_id,
                    metadata={"agent_id": agent_id},
                )
            self.registry.set(agent_id, AgentState.ERROR)
        logger.warning("Agent %s error on task %s: %s", agent_id, task_id, error)
        return metric

    def update_agent_status(
        self,
        agent_id: str,
        state: AgentState | str,
        reason: str | None = None,
    ) -> AgentState:
        try:
            new_state = AgentState(state)
        except ValueError:
            raise ValidationError(f"Invalid agent state: {state}") from None
        with self.registry.lock(agent_id):
            old_state = self.registry.get(agent_id)
            content = f"Agent {agent_id} state changed from {old_state} to {new_state}"
            if reason:
                content += f" Reason: {reason}"
            with self.db:
                log_message(
                    self.db,
                    content,
                    type=MessageType.STATUS_UPDATE,
                    metadata={"agent_id": agent_id},
                )
            self.registry.set(agent_id, new_state)
        return new_state

    def set_waiting(self, agent_id: str, waiting: bool):
        """Flip between Processing and WaitingForInput around an external call.

        Not audited; it happens on every generation attempt.
        """
        with self.registry.lock(agent_id):
            state = self.registry.get(agent_id)
            if waiting and state == AgentState.PROCESSING:
                self.registry.set(agent_id, AgentState.WAITING_FOR_INPUT)
            elif not waiting and state == AgentState.WAITING_FOR_INPUT:
                self.registry.set(agent_id, AgentState.PROCESSING)

    def shutdown_agent(self, agent_id: str):
        with self.registry.lock(agent_id):
            with self.db:
                log_message(
                    self.db,
                    f"Agent {agent_id} shutting down",
                    type=MessageType.SYSTEM_PROMPT,
                    metadata={"agent_id": agent_id},
                )
            self.registry.remove(agent_id)
        logger.info("Agent %s shut down", agent_id)

    def get_agent_history(
        self,
        agent_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[AgentMetric]:
        return list_agent_metrics(self.db, agent_id, start, end)

    def get_latest_metrics(self, agent_id: str) -> AgentMetric | None:
        return get_latest_metrics(self.db, agent_id)

    def record_agent_metrics(self, agent_id: str, task_id: int, metric: AgentMetric) -> AgentMetric:
        metric.agent_id = agent_id
        return task_ops.record_agent_metrics(self.db, task_id, metric)
