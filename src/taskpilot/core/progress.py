"""Read-only progress reports: project -> milestones -> tasks -> subtasks."""

import logging
import sqlite3
from dataclasses import asdict, dataclass, field

from taskpilot.core.metrics import metric_to_dict
from taskpilot.core.milestones import list_milestones, milestone_progress
from taskpilot.core.projects import project_progress, require_project
from taskpilot.core.tasks import calculate_progress, get_task, list_tasks
from taskpilot.db.models import Milestone, MilestoneStatus, Task, TaskStatus

logger = logging.getLogger(__name__)


@dataclass
class TaskReport:
    task_id: int
    title: str
    status: str
    priority: str
    progress: float
    assigned_agent_id: str | None = None
    blocked_reason: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    latest_metric: dict | None = None
    subtasks: list["TaskReport"] = field(default_factory=list)


@dataclass
class MilestoneReport:
    milestone_id: int
    title: str
    status: str
    progress: float
    total_tasks: int = 0
    completed_tasks: int = 0
    blocked_tasks: int = 0
    in_progress_tasks: int = 0
    completed_at: str | None = None
    tasks: list[TaskReport] = field(default_factory=list)


@dataclass
class ProjectReport:
    project_id: int
    name: str
    status: str
    progress: float
    total_milestones: int = 0
    completed_milestones: int = 0
    total_tasks: int = 0
    completed_tasks: int = 0
    blocked_tasks: int = 0
    in_progress_tasks: int = 0
    milestones: list[MilestoneReport] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class ProgressTracker:
    def __init__(self, db: sqlite3.Connection):
        self.db = db

    def project_report(self, project_id: int) -> ProjectReport:
        project = require_project(self.db, project_id)
        report = ProjectReport(
            project_id=project.id,
            name=project.name,
            status=str(project.status),
            progress=project_progress(project),
        )
        for milestone in list_milestones(self.db, project_id):
            m_report = self.milestone_report(milestone)
            report.milestones.append(m_report)
            report.total_tasks += m_report.total_tasks
            report.completed_tasks += m_report.completed_tasks
            report.blocked_tasks += m_report.blocked_tasks
            report.in_progress_tasks += m_report.in_progress_tasks
        report.total_milestones = len(report.milestones)
        report.completed_milestones = sum(
            1 for m in report.milestones if m.status == MilestoneStatus.COMPLETED
        )
        logger.debug(
            "Project %s report: %d milestones, %d tasks",
            project_id,
            report.total_milestones,
            report.total_tasks,
        )
        return report

    def milestone_report(self, milestone: Milestone) -> MilestoneReport:
        milestone.tasks = list_tasks(self.db, milestone.id)
        every_task = list_tasks(self.db, milestone.id, all_levels=True)
        return MilestoneReport(
            milestone_id=milestone.id,
            title=milestone.title,
            status=str(milestone.status),
            progress=milestone_progress(milestone),
            total_tasks=len(every_task),
            completed_tasks=_count(every_task, TaskStatus.COMPLETED),
            blocked_tasks=_count(every_task, TaskStatus.BLOCKED),
            in_progress_tasks=_count(every_task, TaskStatus.IN_PROGRESS),
            completed_at=milestone.completed_at.isoformat() if milestone.completed_at else None,
            tasks=[self.task_report(t.id) for t in milestone.tasks],
        )

    def task_report(self, task_id: int) -> TaskReport:
        task = get_task(self.db, task_id)
        latest = task.metrics[-1] if task.metrics else None
        return TaskReport(
            task_id=task.id,
            title=task.title,
            status=str(task.status),
            priority=str(task.priority),
            progress=calculate_progress(task),
            assigned_agent_id=task.assigned_agent_id,
            blocked_reason=task.blocked_reason,
            started_at=task.started_at.isoformat() if task.started_at else None,
            completed_at=task.completed_at.isoformat() if task.completed_at else None,
            latest_metric=metric_to_dict(latest, task.title) if latest else None,
            subtasks=[self.task_report(s.id) for s in task.subtasks],
        )


def _count(tasks: list[Task], status: TaskStatus) -> int:
    return sum(1 for t in tasks if t.status == status)
