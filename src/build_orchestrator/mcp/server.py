"""MCP server exposing the build orchestrator's tasks and engine controls."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from build_orchestrator.config import get_config
from build_orchestrator.core import notifications as notifications_mod
from build_orchestrator.core import projects as projects_mod
from build_orchestrator.core import tasks as tasks_mod
from build_orchestrator.core.orchestrator import Orchestrator
from build_orchestrator.core.sessions import list_sessions
from build_orchestrator.db.engine import init_db


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: object
    orchestrator: Orchestrator


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Open the database and an engine on startup; stop every project on shutdown."""
    config = get_config()
    db = init_db(config.db_path)
    orchestrator = Orchestrator(config)

    try:
        yield AppContext(db=db, config=config, orchestrator=orchestrator)
    finally:
        orchestrator.shutdown()
        db.close()


mcp = FastMCP("build-orchestrator", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _cfg(ctx: Context):
    return _ctx(ctx).config


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def create_task(
    ctx: Context,
    title: str,
    project: str = "default",
    description: str = "",
    depends_on: list[str] | None = None,
    priority: int = 2,
    issue_type: str = "task",
    parent_task_id: str | None = None,
) -> dict:
    """Create a new task. Priority: P0 (highest) to P4 (lowest), default P2.

    issue_type is 'task', 'epic' or 'chore'; only tasks are picked up by the engine.
    """
    app = _ctx(ctx)
    projects_mod.ensure_default_project(app.db, str(_cfg(ctx).repo_path))
    try:
        task = tasks_mod.create_task(
            app.db,
            title,
            project,
            description,
            depends_on=depends_on,
            priority=priority,
            issue_type=issue_type,
            parent_task_id=parent_task_id,
        )
    except ValueError as e:
        return {"error": str(e)}
    return _task_to_dict(task)


@mcp.tool()
def list_tasks(
    ctx: Context,
    project: str = "default",
    status: str | None = None,
) -> list[dict]:
    """List tasks, optionally filtered by status (open, in_progress, blocked, closed)."""
    app = _ctx(ctx)
    tasks = tasks_mod.list_tasks(app.db, project, status=status)
    return [_task_to_dict(t) for t in tasks]


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get a task with its history and archived agent sessions."""
    app = _ctx(ctx)
    task = tasks_mod.get_task(app.db, task_id)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    result = _task_to_dict(task)
    result["events"] = [
        {"type": e.event_type, "old": e.old_value, "new": e.new_value} for e in tasks_mod.get_task_events(app.db, task_id)
    ]
    result["sessions"] = [
        {
            "id": s.id,
            "attempt": s.attempt,
            "phase": s.phase,
            "status": s.status,
            "failure_type": s.failure_type,
            "summary": s.summary,
        }
        for s in list_sessions(app.db, task_id)
    ]
    return result


@mcp.tool()
def get_ready_tasks(ctx: Context, project: str = "default") -> list[dict]:
    """Tasks the engine would start next, in pick order."""
    app = _ctx(ctx)
    return [_task_to_dict(t) for t in app.orchestrator.ready_tasks(project)]


@mcp.tool()
def update_task_priority(ctx: Context, task_id: str, priority: int) -> dict:
    """Update a task's priority. P0 (highest urgency) to P4 (lowest)."""
    app = _ctx(ctx)
    try:
        task = tasks_mod.update_task(app.db, task_id, priority=priority)
    except ValueError as e:
        return {"error": str(e)}
    return _task_to_dict(task)


@mcp.tool()
def add_dependency(ctx: Context, task_id: str, depends_on_id: str, dep_type: str = "blocks") -> dict:
    """Add a dependency. Only 'blocks' dependencies keep a task out of the ready queue."""
    app = _ctx(ctx)
    try:
        task = tasks_mod.add_dependency(app.db, task_id, depends_on_id, dep_type)
    except ValueError as e:
        return {"error": str(e)}
    return _task_to_dict(task)


@mcp.tool()
def remove_dependency(ctx: Context, task_id: str, depends_on_id: str) -> dict:
    """Remove a dependency from a task."""
    app = _ctx(ctx)
    try:
        task = tasks_mod.remove_dependency(app.db, task_id, depends_on_id)
    except ValueError as e:
        return {"error": str(e)}
    return _task_to_dict(task)


@mcp.tool()
def list_open_questions(ctx: Context, project: str = "default") -> list[dict]:
    """Questions agents raised that are blocking tasks."""
    app = _ctx(ctx)
    return [
        {"id": n.id, "task_id": n.source_id, "questions": n.questions}
        for n in notifications_mod.list_notifications(app.db, project)
    ]


@mcp.tool()
def unblock_task(ctx: Context, task_id: str, project: str = "default", answer: str | None = None) -> dict:
    """Reopen a blocked task. An answer is recorded as a comment the next agent will see in history."""
    app = _ctx(ctx)
    try:
        if answer:
            tasks_mod.add_comment(app.db, task_id, f"Answer: {answer}")
        item = app.orchestrator.enqueue_work(project, "unblock", task_id)
    except ValueError as e:
        return {"error": str(e)}
    return {"queued": item.kind, "task_id": item.task_id}


# ── Engine Tools ──────────────────────────────────────────────────────────────


@mcp.tool()
def start_engine(ctx: Context, project: str = "default") -> dict:
    """Start the orchestration engine for a project (no-op if already running)."""
    app = _ctx(ctx)
    try:
        app.orchestrator.ensure_running(project)
    except ValueError as e:
        return {"error": str(e)}
    return app.orchestrator.get_status(project)


@mcp.tool()
def stop_engine(ctx: Context, project: str = "default") -> dict:
    """Stop the engine: kill running agents and return their tasks to open."""
    app = _ctx(ctx)
    if not app.orchestrator.stop_project(project):
        return {"error": f"Engine not running for project: {project}"}
    return app.orchestrator.get_status(project)


@mcp.tool()
def engine_status(ctx: Context, project: str = "default") -> dict:
    """Active tasks, queue depth, done/failed counters and pending requests."""
    return _ctx(ctx).orchestrator.get_status(project)


@mcp.tool()
def nudge_engine(ctx: Context, project: str = "default") -> dict:
    """Ask the engine to look for ready work now."""
    _ctx(ctx).orchestrator.nudge(project, "mcp")
    return {"nudged": project}


@mcp.tool()
def run_task_next(ctx: Context, task_id: str, project: str = "default") -> dict:
    """Start a task ahead of the ready queue on the engine's next pass."""
    app = _ctx(ctx)
    try:
        item = app.orchestrator.enqueue_work(project, "run", task_id)
    except ValueError as e:
        return {"error": str(e)}
    return {"queued": item.kind, "task_id": item.task_id}


@mcp.tool()
def list_agents(ctx: Context, project: str | None = None) -> list[dict]:
    """Agents currently running, with the tail of their output."""
    return _ctx(ctx).orchestrator.get_active_agents(project)


@mcp.tool()
def kill_agent(ctx: Context, agent_id: str, project: str = "default") -> dict:
    """Kill an agent by task id or agent name. The attempt then fails as a crash and is retried."""
    if not _ctx(ctx).orchestrator.kill_agent(project, agent_id):
        return {"error": f"No running agent: {agent_id}"}
    return {"killed": agent_id}


@mcp.tool()
def stop_task(ctx: Context, task_id: str, project: str = "default") -> dict:
    """Stop a task's agent, return the task to open and free its slot."""
    if not _ctx(ctx).orchestrator.stop_task_and_free_slot(project, task_id):
        return {"error": f"Task has no running agent: {task_id}"}
    return {"stopped": task_id}


# ── Project Tools ─────────────────────────────────────────────────────────────


@mcp.tool()
def init_project(
    ctx: Context,
    name: str,
    repo_path: str,
    default_branch: str = "main",
    slack_channel: str | None = None,
    max_concurrent_agents: int = 1,
    review_enabled: bool = True,
    git_working_mode: str = "worktree",
    test_command: str | None = None,
) -> dict:
    """Initialize a new project."""
    app = _ctx(ctx)
    project_id = tasks_mod.slugify(name)
    project = projects_mod.create_project(
        app.db,
        project_id,
        name,
        repo_path,
        default_branch,
        slack_channel,
        max_concurrent_agents=max_concurrent_agents,
        review_enabled=review_enabled,
        git_working_mode=git_working_mode,
        test_command=test_command,
    )
    return {
        "id": project.id,
        "name": project.name,
        "repo_path": project.repo_path,
        "default_branch": project.default_branch,
        "git_working_mode": project.git_working_mode,
        "max_concurrent_agents": project.max_concurrent_agents,
        "review_enabled": project.review_enabled,
    }


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_to_dict(task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "status": task.status,
        "issue_type": task.issue_type,
        "priority": f"P{task.priority}",
        "project": task.project_id,
        "description": task.description,
        "assignee": task.assignee,
        "block_reason": task.block_reason,
        "close_reason": task.close_reason,
        "attempts": task.attempts,
        "parent_task_id": task.parent_task_id,
        "depends_on": task.depends_on,
    }
