"""Per-attempt agent metrics: storage, success rate and performance summaries."""

import json
import sqlite3
from datetime import datetime, timedelta

from taskpilot.db.engine import format_dt, parse_dt, utcnow
from taskpilot.db.models import AgentMetric

COMPLETED = "Completed"
SLOW_COMPLETION = timedelta(minutes=30)


def calculate_success_rate(metric: AgentMetric) -> float:
    """Success rate in [0, 100]; zero unless the attempt completed."""
    if metric.status != COMPLETED:
        return 0.0
    values = list(metric.performance_metrics.values())
    base = sum(values) / len(values) if values else 1.0
    rate = base - 0.1 * len(metric.errors)
    return max(0.0, min(1.0, rate)) * 100


def add_error(metric: AgentMetric, error: str, now: datetime | None = None) -> None:
    stamp = (now or utcnow()).strftime("%Y-%m-%d %H:%M:%S")
    metric.errors.append(f"{stamp}: {error}")


def insert_metric(db: sqlite3.Connection, metric: AgentMetric) -> AgentMetric:
    """Insert a metric row without committing."""
    cur = db.execute(
        """INSERT INTO agent_metrics
           (agent_id, task_id, status, start_time, completion_time, success_rate,
            notes, errors, performance_metrics)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            metric.agent_id,
            metric.task_id,
            metric.status,
            format_dt(metric.start_time),
            format_dt(metric.completion_time),
            metric.success_rate,
            metric.notes,
            json.dumps(metric.errors),
            json.dumps(metric.performance_metrics),
        ),
    )
    metric.id = cur.lastrowid
    return metric


def update_metric(db: sqlite3.Connection, metric: AgentMetric) -> AgentMetric:
    """Write back a metric row without committing."""
    db.execute(
        """UPDATE agent_metrics
           SET status = ?, start_time = ?, completion_time = ?, success_rate = ?,
               notes = ?, errors = ?, performance_metrics = ?
           WHERE id = ?""",
        (
            metric.status,
            format_dt(metric.start_time),
            format_dt(metric.completion_time),
            metric.success_rate,
            metric.notes,
            json.dumps(metric.errors),
            json.dumps(metric.performance_metrics),
            metric.id,
        ),
    )
    return metric


def get_metric(db: sqlite3.Connection, metric_id: int) -> AgentMetric | None:
    row = db.execute("SELECT * FROM agent_metrics WHERE id = ?", (metric_id,)).fetchone()
    if not row:
        return None
    return _row_to_metric(row)


def list_task_metrics(db: sqlite3.Connection, task_id: int) -> list[AgentMetric]:
    rows = db.execute(
        "SELECT * FROM agent_metrics WHERE task_id = ? ORDER BY id", (task_id,)
    ).fetchall()
    return [_row_to_metric(r) for r in rows]


def list_agent_metrics(
    db: sqlite3.Connection,
    agent_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[AgentMetric]:
    """An agent's metrics oldest-first, optionally bounded by start time."""
    query = "SELECT * FROM agent_metrics WHERE agent_id = ?"
    params: list = [agent_id]
    if start is not None:
        query += " AND start_time >= ?"
        params.append(format_dt(start))
    if end is not None:
        query += " AND start_time <= ?"
        params.append(format_dt(end))
    query += " ORDER BY id"
    return [_row_to_metric(r) for r in db.execute(query, params).fetchall()]


def get_latest_metrics(db: sqlite3.Connection, agent_id: str) -> AgentMetric | None:
    row = db.execute(
        "SELECT * FROM agent_metrics WHERE agent_id = ? ORDER BY id DESC LIMIT 1",
        (agent_id,),
    ).fetchone()
    if not row:
        return None
    return _row_to_metric(row)


def get_open_metric(db: sqlite3.Connection, agent_id: str, task_id: int) -> AgentMetric | None:
    """Most recent metric for this assignment that has not been closed."""
    row = db.execute(
        """SELECT * FROM agent_metrics
           WHERE agent_id = ? AND task_id = ? AND completion_time IS NULL
           ORDER BY id DESC LIMIT 1""",
        (agent_id, task_id),
    ).fetchone()
    if not row:
        return None
    return _row_to_metric(row)


# ── Summaries ─────────────────────────────────────────────────────────────────


def metric_duration(metric: AgentMetric) -> timedelta | None:
    if metric.start_time and metric.completion_time:
        return metric.completion_time - metric.start_time
    return None


def performance_level(success_rate: float | None) -> str:
    if success_rate is None:
        return "Unknown"
    if success_rate >= 90:
        return "Excellent"
    if success_rate >= 75:
        return "Good"
    if success_rate >= 60:
        return "Fair"
    return "Poor"


def analyze_metric(name: str, value: float) -> str:
    if value >= 0.9:
        return f"{name} performance is excellent"
    if value >= 0.7:
        return f"{name} performance is good"
    if value >= 0.5:
        return f"{name} performance needs improvement"
    return f"{name} performance is below expected levels"


def performance_summary(metric: AgentMetric) -> dict:
    recommendations = []
    if metric.errors:
        recommendations.append(
            f"Review {len(metric.errors)} errors for improvement opportunities"
        )
    duration = metric_duration(metric)
    if duration is not None and duration > SLOW_COMPLETION:
        recommendations.append("Consider optimizing for faster completion time")

    return {
        "is_completed": (metric.status or "").lower() == COMPLETED.lower(),
        "performance_level": performance_level(metric.success_rate),
        "error_count": len(metric.errors),
        "recommendations": recommendations,
        "metric_analysis": {
            name: analyze_metric(name, value)
            for name, value in metric.performance_metrics.items()
        },
    }


def task_metrics_summary(metrics: list[AgentMetric]) -> dict:
    """Attempt counts and timing across all metrics recorded for one task."""
    if not metrics:
        return {
            "total_attempts": 0,
            "successful_attempts": 0,
            "success_rate": 0.0,
            "average_completion_seconds": 0.0,
        }
    successful = sum(1 for m in metrics if (m.status or "").lower() == COMPLETED.lower())
    durations = [d for d in (metric_duration(m) for m in metrics) if d is not None]
    average = (
        sum(d.total_seconds() for d in durations) / len(durations) if durations else 0.0
    )
    return {
        "total_attempts": len(metrics),
        "successful_attempts": successful,
        "success_rate": round(successful / len(metrics) * 100, 2),
        "average_completion_seconds": average,
    }


def metric_to_dict(metric: AgentMetric, task_title: str | None = None) -> dict:
    duration = metric_duration(metric)
    return {
        "id": metric.id,
        "agent_id": metric.agent_id,
        "task_id": metric.task_id,
        "task_title": task_title,
        "status": metric.status,
        "start_time": metric.start_time.isoformat() if metric.start_time else None,
        "completion_time": metric.completion_time.isoformat() if metric.completion_time else None,
        "duration_seconds": duration.total_seconds() if duration is not None else None,
        "success_rate": metric.success_rate,
        "notes": metric.notes,
        "errors": list(metric.errors),
        "performance_metrics": dict(metric.performance_metrics),
        "performance_summary": performance_summary(metric),
    }


def _row_to_metric(row: sqlite3.Row) -> AgentMetric:
    return AgentMetric(
        id=row["id"],
        agent_id=row["agent_id"],
        task_id=row["task_id"],
        status=row["status"],
        start_time=parse_dt(row["start_time"]),
        completion_time=parse_dt(row["completion_time"]),
        success_rate=row["success_rate"],
        notes=row["notes"],
        errors=json.loads(row["errors"] or "[]"),
        performance_metrics=json.loads(row["performance_metrics"] or "{}"),
    )
