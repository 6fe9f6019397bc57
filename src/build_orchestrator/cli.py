"""CLI entry point for the build orchestrator."""

import json
import logging
import os
import sys
import time

import click

from build_orchestrator.config import get_config
from build_orchestrator.core import notifications as notifications_mod
from build_orchestrator.core import projects as projects_mod
from build_orchestrator.core import tasks as tasks_mod
from build_orchestrator.core.agents import is_pid_alive, terminate_pid
from build_orchestrator.core.orchestrator import Orchestrator
from build_orchestrator.core.ready import resolve_ready_tasks
from build_orchestrator.core.sessions import list_assignments, list_sessions, read_heartbeat
from build_orchestrator.db.engine import get_db


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _require_project(db, project_id):
    project = projects_mod.get_project(db, project_id)
    if not project:
        click.echo(f"Project not found: {project_id}", err=True)
        sys.exit(1)
    return project


@click.group()
@click.option("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, WARNING, ...)")
def main(log_level):
    """bo - Build Orchestrator CLI"""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Project Commands ──────────────────────────────────────────────────────────


@main.command("init")
@click.argument("project_name")
@click.option("--repo-path", default=".", help="Path to the git repository")
@click.option("--branch", default="main", help="Default branch name")
@click.option("--slack-channel", default=None, help="Default Slack channel")
@click.option("--max-agents", default=1, type=int, help="Maximum concurrent agents")
@click.option("--review/--no-review", default=True, help="Run a review agent before merging")
@click.option("--mode", type=click.Choice(["worktree", "branches"]), default="worktree", help="Git working mode")
@click.option("--test-command", default=None, help="Test command; {files} expands to changed test files")
def init_project(project_name, repo_path, branch, slack_channel, max_agents, review, mode, test_command):
    """Initialize a new project."""
    repo_path = os.path.abspath(repo_path)
    project_id = tasks_mod.slugify(project_name)

    with _get_db() as db:
        project = projects_mod.create_project(
            db,
            project_id,
            project_name,
            repo_path,
            branch,
            slack_channel,
            max_concurrent_agents=max_agents,
            review_enabled=review,
            git_working_mode=mode,
            test_command=test_command,
        )
        click.echo(f"Project created: {project.id} ({project.name})")
        click.echo(f"  Repo: {project.repo_path}")
        click.echo(f"  Branch: {project.default_branch}")
        click.echo(f"  Mode: {project.git_working_mode}, max agents: {project.max_concurrent_agents}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--project", default="default", help="Project ID")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--depends-on", default=None, help="Comma-separated task IDs this depends on")
@click.option("--priority", "-p", default=2, type=int, help="Priority P0 (highest) to P4 (lowest)")
@click.option("--type", "issue_type", type=click.Choice(["task", "epic", "chore"]), default="task")
@click.option("--parent", default=None, help="Parent task ID")
def task_add(title, project, description, depends_on, priority, issue_type, parent):
    """Create a new task."""
    deps = [d.strip() for d in depends_on.split(",")] if depends_on else None

    config = get_config()
    with _get_db() as db:
        projects_mod.ensure_default_project(db, str(config.repo_path))
        try:
            task = tasks_mod.create_task(
                db,
                title,
                project,
                description,
                depends_on=deps,
                priority=priority,
                issue_type=issue_type,
                parent_task_id=parent,
            )
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: P{task.priority}")
        click.echo(f"  Status: {task.status}")
        if task.depends_on:
            click.echo(f"  Depends on: {', '.join(task.depends_on)}")


@task_group.command("list")
@click.option("--project", default="default", help="Project ID")
@click.option("--status", default=None, help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(project, status, json_output):
    """List tasks."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, project, status=status)

        if json_output:
            click.echo(json.dumps([_task_dict(t) for t in tasks], indent=2))
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        status_icons = {
            "open": "○",
            "in_progress": "●",
            "closed": "✓",
            "blocked": "✗",
        }

        for task in tasks:
            icon = status_icons.get(task.status, "?")
            deps = f" [depends: {', '.join(task.depends_on)}]" if task.depends_on else ""
            who = f" [{task.assignee}]" if task.assignee else ""
            click.echo(f"  {icon} P{task.priority} {task.id}: {task.title} ({task.status}){who}{deps}")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Type: {task.issue_type}")
        click.echo(f"  Priority: P{task.priority}")
        click.echo(f"  Status: {task.status}")
        click.echo(f"  Project: {task.project_id}")
        click.echo(f"  Attempts: {task.attempts}")
        if task.assignee:
            click.echo(f"  Assignee: {task.assignee}")
        if task.block_reason:
            click.echo(f"  Blocked: {task.block_reason}")
        if task.close_reason:
            click.echo(f"  Closed: {task.close_reason}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.depends_on:
            click.echo(f"  Depends on: {', '.join(task.depends_on)}")

        sessions = list_sessions(db, task_id)
        if sessions:
            click.echo("  Sessions:")
            for s in sessions:
                failure = f" [{s.failure_type}]" if s.failure_type else ""
                click.echo(f"    #{s.id} attempt {s.attempt} {s.phase}: {s.status}{failure}")

        events = tasks_mod.get_task_events(db, task_id)
        if events:
            click.echo("  History:")
            for e in events:
                if e.event_type == "comment":
                    click.echo(f"    [{e.created_at}] comment: {e.new_value}")
                else:
                    click.echo(f"    [{e.created_at}] {e.event_type}: {e.old_value} -> {e.new_value}")


@task_group.command("add-dep")
@click.argument("task_id")
@click.argument("depends_on_id")
@click.option("--type", "dep_type", default="blocks", help="Dependency type; only 'blocks' gates readiness")
def task_add_dep(task_id, depends_on_id, dep_type):
    """Add a dependency: TASK_ID depends on DEPENDS_ON_ID."""
    with _get_db() as db:
        try:
            tasks_mod.add_dependency(db, task_id, depends_on_id, dep_type)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"{task_id} now depends on {depends_on_id} ({dep_type})")


@task_group.command("remove-dep")
@click.argument("task_id")
@click.argument("depends_on_id")
def task_remove_dep(task_id, depends_on_id):
    """Remove a dependency."""
    with _get_db() as db:
        try:
            tasks_mod.remove_dependency(db, task_id, depends_on_id)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Removed dependency: {task_id} no longer depends on {depends_on_id}")


@task_group.command("ready")
@click.option("--project", default="default", help="Project ID")
def task_ready(project):
    """List tasks the engine would start next, in pick order."""
    with _get_db() as db:
        ready = resolve_ready_tasks(tasks_mod.list_tasks(db, project), ())
        if not ready:
            click.echo("No ready tasks.")
            return
        for task in ready:
            click.echo(f"  P{task.priority} {task.id}: {task.title}")


@task_group.command("unblock")
@click.argument("task_id")
@click.option("--project", default="default", help="Project ID")
def task_unblock(task_id, project):
    """Ask the engine to reopen a blocked task."""
    _enqueue(project, "unblock", task_id)


@task_group.command("run")
@click.argument("task_id")
@click.option("--project", default="default", help="Project ID")
def task_run(task_id, project):
    """Ask the engine to start a task ahead of the queue."""
    _enqueue(project, "run", task_id)


def _enqueue(project, kind, task_id):
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        tasks_mod.enqueue_work(db, project, kind, task_id)
        click.echo(f"Queued '{kind}' for {task_id}; the engine picks it up on its next pass")


# ── Engine Commands ───────────────────────────────────────────────────────────


@main.command("run")
@click.option("--project", default="default", help="Project ID")
@click.option("--once", is_flag=True, help="Work until nothing is ready or running, then exit")
@click.option("--port", default=None, type=int, help="Also serve the web API on this port")
@click.option("--host", default="127.0.0.1", help="Host for the web API")
def run_engine(project, once, port, host):
    """Run the orchestration engine for a project."""
    config = get_config()
    with _get_db() as db:
        _require_project(db, project)

    if once:
        engine = Orchestrator(config, threaded=False)
        state = engine.ensure_running(project)
        try:
            while True:
                engine.run_pending(project)
                if not state.slots and not engine.run_pending(project):
                    break
                time.sleep(1)
        except KeyboardInterrupt:
            click.echo("Interrupted")
        engine.stop_project(project)
        _print_status(engine.get_status(project))
        return

    engine = Orchestrator(config)
    engine.ensure_running(project)
    click.echo(f"Engine running for '{project}'. Ctrl-C to stop.")
    try:
        if port:
            from build_orchestrator.web.app import run_server

            run_server(host=host, port=port, orchestrator=engine)
        else:
            while True:
                time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        engine.shutdown()
        click.echo("Engine stopped")


@main.command("status")
@click.option("--project", default="default", help="Project ID")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def status(project, json_output):
    """Show persisted engine counters for a project."""
    config = get_config()
    with _get_db() as db:
        _require_project(db, project)
    engine = Orchestrator(config, threaded=False)
    info = engine.get_status(project)
    if json_output:
        click.echo(json.dumps(info, indent=2))
        return
    _print_status(info)


@main.command("agents")
@click.option("--project", default="default", help="Project ID")
def agents(project):
    """List agents recorded as working on the project's tasks."""
    with _get_db() as db:
        proj = _require_project(db, project)
    assignments = list_assignments(proj.repo_path)
    if not assignments:
        click.echo("No active agents.")
        return
    for a in assignments:
        heartbeat = read_heartbeat(a.worktree_path, a.task_id)
        pid = heartbeat.pid if heartbeat else None
        state = "alive" if is_pid_alive(pid) else "dead"
        click.echo(f"  [{state}] {a.task_id} {a.phase} attempt {a.attempt} pid={pid} ({a.branch_name})")


@main.command("kill")
@click.argument("task_id")
@click.option("--project", default="default", help="Project ID")
def kill(task_id, project):
    """Kill the agent working on a task; the engine treats it as a crash."""
    with _get_db() as db:
        proj = _require_project(db, project)
    assignment = next((a for a in list_assignments(proj.repo_path) if a.task_id == task_id), None)
    heartbeat = read_heartbeat(assignment.worktree_path, task_id) if assignment else None
    if not heartbeat or not is_pid_alive(heartbeat.pid):
        click.echo(f"No running agent found for task: {task_id}", err=True)
        sys.exit(1)
    terminate_pid(heartbeat.pid)
    click.echo(f"Killed agent for '{task_id}' (PID {heartbeat.pid})")


@main.command("stop-task")
@click.argument("task_id")
@click.option("--project", default="default", help="Project ID")
def stop_task(task_id, project):
    """Stop a task's agent, return the task to open and free its slot."""
    _enqueue(project, "stop", task_id)


@main.command("recover")
@click.option("--project", default="default", help="Project ID")
def recover(project):
    """Requeue tasks whose agents died and clean up leftovers, without starting new work."""
    config = get_config()
    engine = Orchestrator(config, threaded=False)
    proj = engine.get_project(project)
    engine.registry.get_or_create(project, projects_mod.load_counters(engine.db, project))
    result = engine.recovery.run_full_recovery(proj, include_assignments=True)
    for task_id in result.requeued:
        click.echo(f"  Requeued: {task_id}")
    for task_id in result.cleaned:
        click.echo(f"  Cleaned: {task_id}")
    for task_id in result.reattached:
        # Nothing watches it once this command exits; the next `bo run` reattaches again
        click.echo(f"  Still running: {task_id}")
    if not (result.requeued or result.cleaned or result.reattached):
        click.echo("Nothing to recover.")


@main.command("questions")
@click.option("--project", default="default", help="Project ID")
def questions(project):
    """List open questions raised by agents."""
    with _get_db() as db:
        notes = notifications_mod.list_notifications(db, project)
        if not notes:
            click.echo("No open questions.")
            return
        for n in notes:
            click.echo(f"  #{n.id} {n.source_id}:")
            for q in n.questions:
                click.echo(f"    - {q.get('text')}")


# ── Dashboard Command ────────────────────────────────────────────────────────


@main.command("ui")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def ui_command(host, port):
    """Serve the JSON API without starting any engine."""
    from build_orchestrator.web.app import run_server

    click.echo(f"Serving API at http://{host}:{port}")
    run_server(host=host, port=port)


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from build_orchestrator.mcp.server import mcp

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _print_status(info: dict):
    click.echo(f"Project: {info['project_id']}")
    click.echo(f"  Running: {'yes' if info['loop_active'] else 'no'}")
    click.echo(f"  Active: {', '.join(info['active_tasks']) or '-'}")
    click.echo(f"  Queue depth: {info['queue_depth']}")
    click.echo(f"  Done: {info['total_done']}  Failed: {info['total_failed']}")
    click.echo(f"  Pending requests: {info['pending_work']}")


def _task_dict(task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "status": task.status,
        "type": task.issue_type,
        "priority": f"P{task.priority}",
        "project": task.project_id,
        "description": task.description,
        "assignee": task.assignee,
        "block_reason": task.block_reason,
        "attempts": task.attempts,
        "depends_on": task.depends_on,
    }


if __name__ == "__main__":
    main()
