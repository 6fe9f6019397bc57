"""JSON API over the task store and the orchestration engine."""

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from build_orchestrator.config import get_config
from build_orchestrator.core import notifications as notifications_mod
from build_orchestrator.core import projects as projects_mod
from build_orchestrator.core import tasks as tasks_mod
from build_orchestrator.core.orchestrator import Orchestrator
from build_orchestrator.core.sessions import list_sessions
from build_orchestrator.db.engine import init_db


def _get_db():
    config = get_config()
    return init_db(config.db_path)


def _engine(request: Request) -> Orchestrator:
    """The engine this app drives; created on first use when none was passed in."""
    state = request.app.state
    if state.orchestrator is None:
        state.orchestrator = Orchestrator(get_config())
    return state.orchestrator


def _not_found(what: str, ident) -> JSONResponse:
    return JSONResponse({"error": f"{what} not found: {ident}"}, status_code=404)


# ── Store handlers ────────────────────────────────────────────────────────────


async def api_list_projects(request: Request):
    db = _get_db()
    try:
        projects = projects_mod.list_projects(db)
        return JSONResponse([_project_dict(p) for p in projects])
    finally:
        db.close()


async def api_get_project(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        project = projects_mod.get_project(db, project_id)
        if not project:
            return _not_found("Project", project_id)
        return JSONResponse(_project_dict(project))
    finally:
        db.close()


async def api_update_project(request: Request):
    project_id = request.path_params["project_id"]
    body = await request.json()
    db = _get_db()
    try:
        project = projects_mod.update_project(db, project_id, **body)
        if not project:
            return _not_found("Project", project_id)
        return JSONResponse(_project_dict(project))
    finally:
        db.close()


async def api_project_tasks(request: Request):
    project_id = request.path_params["project_id"]
    status_filter = request.query_params.get("status")
    db = _get_db()
    try:
        tasks = tasks_mod.list_tasks(db, project_id, status=status_filter)
        return JSONResponse([_task_dict(t) for t in tasks])
    finally:
        db.close()


async def api_get_task(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db()
    try:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            return _not_found("Task", task_id)
        td = _task_dict(task)
        td["events"] = [_event_dict(e) for e in tasks_mod.get_task_events(db, task_id)]
        td["sessions"] = [_session_dict(s) for s in list_sessions(db, task_id)]
        return JSONResponse(td)
    finally:
        db.close()


async def api_notifications(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        notes = notifications_mod.list_notifications(db, project_id)
        return JSONResponse(
            [{"id": n.id, "task_id": n.source_id, "source": n.source, "questions": n.questions} for n in notes]
        )
    finally:
        db.close()


async def api_resolve_notification(request: Request):
    notification_id = int(request.path_params["notification_id"])
    db = _get_db()
    try:
        note = notifications_mod.resolve_notification(db, notification_id)
    except ValueError:
        return _not_found("Notification", notification_id)
    finally:
        db.close()
    return JSONResponse({"id": note.id, "status": note.status})


# ── Engine handlers ───────────────────────────────────────────────────────────


async def api_engine_status(request: Request):
    project_id = request.path_params["project_id"]
    return JSONResponse(_engine(request).get_status(project_id))


async def api_engine_start(request: Request):
    project_id = request.path_params["project_id"]
    engine = _engine(request)
    try:
        engine.ensure_running(project_id)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=404)
    return JSONResponse(engine.get_status(project_id))


async def api_engine_stop(request: Request):
    project_id = request.path_params["project_id"]
    engine = _engine(request)
    if not engine.stop_project(project_id):
        return JSONResponse({"error": f"Engine not running for project: {project_id}"}, status_code=409)
    return JSONResponse(engine.get_status(project_id))


async def api_engine_nudge(request: Request):
    project_id = request.path_params["project_id"]
    _engine(request).nudge(project_id, "api")
    return JSONResponse({"nudged": project_id})


async def api_ready(request: Request):
    project_id = request.path_params["project_id"]
    return JSONResponse([_task_dict(t) for t in _engine(request).ready_tasks(project_id)])


async def api_agents(request: Request):
    project_id = request.path_params["project_id"]
    return JSONResponse(_engine(request).get_active_agents(project_id))


async def api_kill_agent(request: Request):
    project_id = request.path_params["project_id"]
    agent_id = request.path_params["agent_id"]
    if not _engine(request).kill_agent(project_id, agent_id):
        return _not_found("Running agent", agent_id)
    return JSONResponse({"killed": agent_id})


async def api_stop_task(request: Request):
    project_id = request.path_params["project_id"]
    task_id = request.path_params["task_id"]
    if not _engine(request).stop_task_and_free_slot(project_id, task_id):
        return _not_found("Running task", task_id)
    return JSONResponse({"stopped": task_id})


async def api_enqueue(request: Request):
    project_id = request.path_params["project_id"]
    task_id = request.path_params["task_id"]
    kind = request.path_params["kind"]
    try:
        item = _engine(request).enqueue_work(project_id, kind, task_id)
    except ValueError as e:
        status = 404 if "not found" in str(e) else 400
        return JSONResponse({"error": str(e)}, status_code=status)
    return JSONResponse({"id": item.id, "kind": item.kind, "task_id": item.task_id}, status_code=202)


async def api_events(request: Request):
    project_id = request.path_params["project_id"]
    event_type = request.query_params.get("type")
    events = _engine(request).bus.recent(project_id, event_type)
    return JSONResponse([e.to_dict() for e in events])


# ── Serialization ─────────────────────────────────────────────────────────────


def _project_dict(p) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "repo_path": p.repo_path,
        "default_branch": p.default_branch,
        "slack_channel": p.slack_channel,
        "max_concurrent_agents": p.max_concurrent_agents,
        "review_enabled": p.review_enabled,
        "git_working_mode": p.git_working_mode,
        "test_command": p.test_command,
        "created_at": p.created_at.isoformat() if p.created_at else None,
    }


def _task_dict(t) -> dict:
    return {
        "id": t.id,
        "title": t.title,
        "status": t.status,
        "issue_type": t.issue_type,
        "priority": t.priority,
        "description": t.description,
        "project_id": t.project_id,
        "parent_task_id": t.parent_task_id,
        "assignee": t.assignee,
        "block_reason": t.block_reason,
        "close_reason": t.close_reason,
        "attempts": t.attempts,
        "depends_on": t.depends_on,
        "created_at": t.created_at.isoformat() if t.created_at else None,
        "updated_at": t.updated_at.isoformat() if t.updated_at else None,
        "closed_at": t.closed_at.isoformat() if t.closed_at else None,
    }


def _event_dict(e) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "old_value": e.old_value,
        "new_value": e.new_value,
        "created_at": e.created_at.isoformat() if e.created_at else None,
    }


def _session_dict(s) -> dict:
    return {
        "id": s.id,
        "attempt": s.attempt,
        "phase": s.phase,
        "agent": s.agent,
        "status": s.status,
        "failure_type": s.failure_type,
        "summary": s.summary,
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(orchestrator: Orchestrator | None = None) -> Starlette:
    routes = [
        Route("/api/projects", api_list_projects),
        Route("/api/projects/{project_id}", api_get_project),
        Route("/api/projects/{project_id}", api_update_project, methods=["PATCH"]),
        Route("/api/projects/{project_id}/tasks", api_project_tasks),
        Route("/api/projects/{project_id}/notifications", api_notifications),
        Route("/api/notifications/{notification_id:int}/resolve", api_resolve_notification, methods=["POST"]),
        Route("/api/projects/{project_id}/status", api_engine_status),
        Route("/api/projects/{project_id}/start", api_engine_start, methods=["POST"]),
        Route("/api/projects/{project_id}/stop", api_engine_stop, methods=["POST"]),
        Route("/api/projects/{project_id}/nudge", api_engine_nudge, methods=["POST"]),
        Route("/api/projects/{project_id}/ready", api_ready),
        Route("/api/projects/{project_id}/agents", api_agents),
        Route("/api/projects/{project_id}/agents/{agent_id}/kill", api_kill_agent, methods=["POST"]),
        Route("/api/projects/{project_id}/tasks/{task_id}/stop", api_stop_task, methods=["POST"]),
        Route("/api/projects/{project_id}/tasks/{task_id}/{kind}", api_enqueue, methods=["POST"]),
        Route("/api/projects/{project_id}/events", api_events),
        Route("/api/tasks/{task_id}", api_get_task),
    ]
    app = Starlette(routes=routes)
    app.state.orchestrator = orchestrator
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787, orchestrator: Orchestrator | None = None):
    app = create_app(orchestrator)
    uvicorn.run(app, host=host, port=port)
