"""Data models for taskpilot."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class _StrEnum(str, Enum):
    def __str__(self) -> str:
        return self.value


class ProjectStatus(_StrEnum):
    ACTIVE = "Active"
    ON_HOLD = "OnHold"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class MilestoneStatus(_StrEnum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    BLOCKED = "Blocked"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class TaskStatus(_StrEnum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    BLOCKED = "Blocked"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    FAILED = "Failed"


class TaskPriority(_StrEnum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class AgentState(_StrEnum):
    AVAILABLE = "Available"
    PROCESSING = "Processing"
    WAITING_FOR_INPUT = "WaitingForInput"
    ERROR = "Error"
    PAUSED = "Paused"
    OFFLINE = "Offline"


class ProcessingState(_StrEnum):
    NOT_STARTED = "NotStarted"
    INITIALIZING = "Initializing"
    PROCESSING = "Processing"
    WAITING = "Waiting"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class MessageType(_StrEnum):
    STANDARD = "Standard"
    SYSTEM_PROMPT = "SystemPrompt"
    USER_QUERY = "UserQuery"
    AGENT_RESPONSE = "AgentResponse"
    ERROR_MESSAGE = "ErrorMessage"
    STATUS_UPDATE = "StatusUpdate"
    NOTIFICATION = "Notification"
    DEBUG_INFO = "DebugInfo"
    METRIC_UPDATE = "MetricUpdate"
    OUTLINE = "Outline"


ROLES = ("system", "user", "assistant")


@dataclass
class Project:
    id: int
    name: str
    description: str = ""
    status: ProjectStatus = ProjectStatus.ACTIVE
    created_at: datetime | None = None
    milestones: list["Milestone"] = field(default_factory=list)


@dataclass
class Milestone:
    id: int
    project_id: int
    title: str
    description: str = ""
    success_criteria: str = ""
    status: MilestoneStatus = MilestoneStatus.PENDING
    created_at: datetime | None = None
    completed_at: datetime | None = None
    tasks: list["Task"] = field(default_factory=list)


@dataclass
class TaskDependency:
    task_id: int
    depends_on_task_id: int
    id: int | None = None
    created_at: datetime | None = None
    depends_on_title: str | None = None
    depends_on_status: TaskStatus | None = None


@dataclass
class Task:
    id: int
    milestone_id: int
    title: str
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    parent_task_id: int | None = None
    assigned_agent_id: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    blocked_reason: str | None = None
    dependencies: list[TaskDependency] = field(default_factory=list)
    subtasks: list["Task"] = field(default_factory=list)
    metrics: list["AgentMetric"] = field(default_factory=list)

    @property
    def depends_on(self) -> list[int]:
        return [d.depends_on_task_id for d in self.dependencies]


@dataclass
class Message:
    content: str
    role: str = "system"
    type: MessageType = MessageType.STANDARD
    id: int | None = None
    project_id: int | None = None
    milestone_id: int | None = None
    task_id: int | None = None
    tokenized_content: str | None = None
    metadata: dict = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass
class AgentMetric:
    agent_id: str
    task_id: int
    id: int | None = None
    status: str | None = None
    start_time: datetime | None = None
    completion_time: datetime | None = None
    success_rate: float | None = None
    notes: str | None = None
    errors: list[str] = field(default_factory=list)
    performance_metrics: dict[str, float] = field(default_factory=dict)
