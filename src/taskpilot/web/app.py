"""JSON API over projects, milestones, tasks, messages and agent metrics."""

import json
import logging

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from taskpilot.config import get_config
from taskpilot.core import messages as messages_mod
from taskpilot.core import metrics as metrics_mod
from taskpilot.core import milestones as milestones_mod
from taskpilot.core import projects as projects_mod
from taskpilot.core import tasks as tasks_mod
from taskpilot.core.progress import ProgressTracker
from taskpilot.db.engine import init_db
from taskpilot.errors import InvalidStateError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def _get_db():
    config = get_config()
    return init_db(config.db_path)


async def _body(request: Request) -> dict:
    try:
        data = await request.json()
    except json.JSONDecodeError:
        raise ValidationError("Request body must be JSON") from None
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _required_int(data: dict, key: str) -> int:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"'{key}' must be an integer")
    return value


# ── Projects ──────────────────────────────────────────────────────────────────


async def api_list_projects(request: Request):
    db = _get_db()
    try:
        projects = [projects_mod.get_project(db, p.id) for p in projects_mod.list_projects(db)]
        return JSONResponse([projects_mod.project_to_dict(p) for p in projects])
    finally:
        db.close()


async def api_create_project(request: Request):
    data = await _body(request)
    db = _get_db()
    try:
        project = projects_mod.create_project(
            db, data.get("name", ""), data.get("description", "")
        )
        return JSONResponse(projects_mod.project_to_dict(project), status_code=201)
    finally:
        db.close()


async def api_get_project(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        project = projects_mod.require_project(db, project_id)
        return JSONResponse(projects_mod.project_to_dict(project))
    finally:
        db.close()


async def api_delete_project(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        if not projects_mod.delete_project(db, project_id):
            raise NotFoundError("Project", project_id)
        return JSONResponse({"deleted": project_id})
    finally:
        db.close()


async def api_project_status(request: Request):
    project_id = request.path_params["project_id"]
    data = await _body(request)
    db = _get_db()
    try:
        project = projects_mod.update_project_status(db, project_id, data.get("status"))
        return JSONResponse(projects_mod.project_to_dict(project))
    finally:
        db.close()


async def api_project_progress(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        return JSONResponse(ProgressTracker(db).project_report(project_id).to_dict())
    finally:
        db.close()


async def api_project_messages(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        projects_mod.require_project(db, project_id)
        history = projects_mod.get_project_history(db, project_id)
        return JSONResponse([messages_mod.message_to_dict(db, m) for m in history])
    finally:
        db.close()


# ── Milestones ────────────────────────────────────────────────────────────────


async def api_project_milestones(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        projects_mod.require_project(db, project_id)
        milestones = [
            milestones_mod.get_milestone(db, m.id)
            for m in milestones_mod.list_milestones(db, project_id)
        ]
        return JSONResponse([milestones_mod.milestone_to_dict(db, m) for m in milestones])
    finally:
        db.close()


async def api_create_milestone(request: Request):
    project_id = request.path_params["project_id"]
    data = await _body(request)
    db = _get_db()
    try:
        milestone = milestones_mod.create_milestone(
            db,
            project_id,
            data.get("title", ""),
            data.get("description", ""),
            data.get("success_criteria", ""),
        )
        return JSONResponse(milestones_mod.milestone_to_dict(db, milestone), status_code=201)
    finally:
        db.close()


async def api_get_milestone(request: Request):
    milestone_id = request.path_params["milestone_id"]
    db = _get_db()
    try:
        milestone = milestones_mod.require_milestone(db, milestone_id)
        return JSONResponse(milestones_mod.milestone_to_dict(db, milestone))
    finally:
        db.close()


async def api_milestone_tasks(request: Request):
    milestone_id = request.path_params["milestone_id"]
    status_filter = request.query_params.get("status")
    db = _get_db()
    try:
        milestones_mod.require_milestone(db, milestone_id)
        tasks = [
            tasks_mod.get_task(db, t.id)
            for t in tasks_mod.list_tasks(db, milestone_id, status=status_filter)
        ]
        return JSONResponse([tasks_mod.task_to_dict(t) for t in tasks])
    finally:
        db.close()


async def api_create_task(request: Request):
    milestone_id = request.path_params["milestone_id"]
    data = await _body(request)
    db = _get_db()
    try:
        task = tasks_mod.create_task(
            db,
            milestone_id,
            data.get("title", ""),
            description=data.get("description", ""),
            priority=data.get("priority"),
            parent_task_id=data.get("parent_task_id"),
            depends_on=data.get("depends_on"),
        )
        return JSONResponse(tasks_mod.task_to_dict(task), status_code=201)
    finally:
        db.close()


# ── Tasks ─────────────────────────────────────────────────────────────────────


async def api_get_task(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db()
    try:
        task = tasks_mod.require_task(db, task_id)
        return JSONResponse(tasks_mod.task_to_dict(task))
    finally:
        db.close()


async def api_task_status(request: Request):
    task_id = request.path_params["task_id"]
    data = await _body(request)
    db = _get_db()
    try:
        task = tasks_mod.update_task_status(db, task_id, data.get("status"), data.get("reason"))
        return JSONResponse(tasks_mod.task_to_dict(task))
    finally:
        db.close()


async def api_add_dependency(request: Request):
    task_id = request.path_params["task_id"]
    data = await _body(request)
    db = _get_db()
    try:
        task = tasks_mod.add_dependency(db, task_id, _required_int(data, "depends_on"))
        return JSONResponse(tasks_mod.task_to_dict(task))
    finally:
        db.close()


async def api_add_subtask(request: Request):
    task_id = request.path_params["task_id"]
    data = await _body(request)
    db = _get_db()
    try:
        subtask = tasks_mod.add_subtask(
            db,
            task_id,
            data.get("title", ""),
            description=data.get("description", ""),
            priority=data.get("priority"),
        )
        return JSONResponse(tasks_mod.task_to_dict(subtask), status_code=201)
    finally:
        db.close()


async def api_assign_task(request: Request):
    task_id = request.path_params["task_id"]
    data = await _body(request)
    db = _get_db()
    try:
        task = tasks_mod.assign_task(db, task_id, data.get("agent_id", ""))
        return JSONResponse(tasks_mod.task_to_dict(task))
    finally:
        db.close()


async def api_task_messages(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db()
    try:
        history = tasks_mod.get_task_history(db, task_id)
        return JSONResponse([messages_mod.message_to_dict(db, m) for m in history])
    finally:
        db.close()


async def api_task_metrics(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db()
    try:
        task = tasks_mod.require_task(db, task_id)
        return JSONResponse({
            "summary": metrics_mod.task_metrics_summary(task.metrics),
            "metrics": [metrics_mod.metric_to_dict(m, task.title) for m in task.metrics],
        })
    finally:
        db.close()


async def api_agent_metrics(request: Request):
    agent_id = request.path_params["agent_id"]
    db = _get_db()
    try:
        history = metrics_mod.list_agent_metrics(db, agent_id)
        return JSONResponse([metrics_mod.metric_to_dict(m) for m in history])
    finally:
        db.close()


# ── Errors ────────────────────────────────────────────────────────────────────


async def _validation_error(request: Request, exc: Exception):
    return JSONResponse({"error": str(exc)}, status_code=400)


async def _not_found(request: Request, exc: Exception):
    return JSONResponse({"error": str(exc)}, status_code=404)


async def _invalid_state(request: Request, exc: Exception):
    logger.info("Rejected %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse({"error": str(exc)}, status_code=409)


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/api/projects", api_list_projects, methods=["GET"]),
        Route("/api/projects", api_create_project, methods=["POST"]),
        Route("/api/projects/{project_id:int}", api_get_project, methods=["GET"]),
        Route("/api/projects/{project_id:int}", api_delete_project, methods=["DELETE"]),
        Route("/api/projects/{project_id:int}/status", api_project_status, methods=["POST"]),
        Route("/api/projects/{project_id:int}/progress", api_project_progress),
        Route("/api/projects/{project_id:int}/messages", api_project_messages),
        Route("/api/projects/{project_id:int}/milestones", api_project_milestones, methods=["GET"]),
        Route("/api/projects/{project_id:int}/milestones", api_create_milestone, methods=["POST"]),
        Route("/api/milestones/{milestone_id:int}", api_get_milestone),
        Route("/api/milestones/{milestone_id:int}/tasks", api_milestone_tasks, methods=["GET"]),
        Route("/api/milestones/{milestone_id:int}/tasks", api_create_task, methods=["POST"]),
        Route("/api/tasks/{task_id:int}", api_get_task),
        Route("/api/tasks/{task_id:int}/status", api_task_status, methods=["POST"]),
        Route("/api/tasks/{task_id:int}/dependencies", api_add_dependency, methods=["POST"]),
        Route("/api/tasks/{task_id:int}/subtasks", api_add_subtask, methods=["POST"]),
        Route("/api/tasks/{task_id:int}/assign", api_assign_task, methods=["POST"]),
        Route("/api/tasks/{task_id:int}/messages", api_task_messages),
        Route("/api/tasks/{task_id:int}/metrics", api_task_metrics),
        Route("/api/agents/{agent_id}/metrics", api_agent_metrics),
    ]
    exception_handlers = {
        ValidationError: _validation_error,
        NotFoundError: _not_found,
        InvalidStateError: _invalid_state,
    }
    return Starlette(routes=routes, exception_handlers=exception_handlers)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
