"""Task store: tasks, dependency edges, audit events and the work inbox."""

import re
import sqlite3
from collections.abc import Callable
from datetime import datetime

from build_orchestrator.db.models import Task, TaskEvent, WorkItem

STATUSES = ("open", "in_progress", "blocked", "closed")
ISSUE_TYPES = ("epic", "task", "chore")
WORK_KINDS = ("run", "unblock", "stop")

# Sentinel so update_task can tell "leave alone" from "set to NULL"
_UNSET = object()


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60]


def _unique_id(db: sqlite3.Connection, base_slug: str) -> str:
    """Generate a unique task ID from a slug, appending a number if needed."""
    base_slug = base_slug or "task"
    candidate = base_slug
    i = 2
    while db.execute("SELECT 1 FROM tasks WHERE id = ?", (candidate,)).fetchone():
        candidate = f"{base_slug}-{i}"
        i += 1
    return candidate


def create_task(
    db: sqlite3.Connection,
    title: str,
    project_id: str = "default",
    description: str = "",
    depends_on: list[str] | None = None,
    priority: int = 2,
    issue_type: str = "task",
    parent_task_id: str | None = None,
) -> Task:
    """Create a new task in status 'open'."""
    if issue_type not in ISSUE_TYPES:
        raise ValueError(f"Unknown issue type: {issue_type}")
    for dep_id in depends_on or []:
        if not get_task(db, dep_id):
            raise ValueError(f"Dependency task not found: {dep_id}")
    task_id = _unique_id(db, slugify(title))
    priority = max(0, min(4, priority))

    db.execute(
        """INSERT INTO tasks (id, project_id, title, description, priority, issue_type, parent_task_id)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (task_id, project_id, title, description, priority, issue_type, parent_task_id),
    )

    for dep_id in depends_on or []:
        db.execute(
            "INSERT INTO task_dependencies (task_id, depends_on_task_id) VALUES (?, ?)",
            (task_id, dep_id),
        )

    _log_event(db, task_id, "created", None, "open")
    db.commit()
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID with its blocking dependencies."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    task = _row_to_task(row)
    task.depends_on = _blocking_deps(db, task_id)
    return task


def list_tasks(
    db: sqlite3.Connection,
    project_id: str = "default",
    status: str | None = None,
) -> list[Task]:
    """List tasks in store order: priority first, then creation time."""
    query = "SELECT * FROM tasks WHERE project_id = ?"
    params: list = [project_id]
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY priority ASC, created_at ASC, rowid ASC"

    deps: dict[str, list[str]] = {}
    for d in db.execute(
        """SELECT d.task_id, d.depends_on_task_id FROM task_dependencies d
           JOIN tasks t ON t.id = d.task_id
           WHERE t.project_id = ? AND d.dep_type = 'blocks'""",
        (project_id,),
    ).fetchall():
        deps.setdefault(d["task_id"], []).append(d["depends_on_task_id"])

    tasks = []
    for row in db.execute(query, params).fetchall():
        task = _row_to_task(row)
        task.depends_on = deps.get(task.id, [])
        tasks.append(task)
    return tasks


def update_task(
    db: sqlite3.Connection,
    task_id: str,
    status=_UNSET,
    assignee=_UNSET,
    block_reason=_UNSET,
    priority=_UNSET,
) -> Task:
    """Update mutable task fields. Fields left unset are not touched."""
    task = get_task(db, task_id)
    if not task:
        raise ValueError(f"Task not found: {task_id}")

    updates = {}
    if status is not _UNSET:
        if status not in STATUSES:
            raise ValueError(f"Unknown status: {status}")
        updates["status"] = status
        if status != "blocked" and block_reason is _UNSET:
            updates["block_reason"] = None
    if assignee is not _UNSET:
        updates["assignee"] = assignee
    if block_reason is not _UNSET:
        updates["block_reason"] = block_reason
    if priority is not _UNSET:
        updates["priority"] = max(0, min(4, priority))
    if not updates:
        return task

    set_parts = [f"{k} = ?" for k in updates]
    set_parts.append("updated_at = datetime('now')")
    db.execute(
        f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ?",
        list(updates.values()) + [task_id],
    )
    if "status" in updates and updates["status"] != task.status:
        _log_event(db, task_id, "status_changed", task.status, updates["status"])
    if "assignee" in updates and updates["assignee"] != task.assignee:
        _log_event(db, task_id, "assignee_changed", task.assignee, updates["assignee"])
    if "priority" in updates and updates["priority"] != task.priority:
        _log_event(db, task_id, "priority_changed", str(task.priority), str(updates["priority"]))
    db.commit()
    return get_task(db, task_id)


def close_task(db: sqlite3.Connection, task_id: str, reason: str = "") -> Task:
    """Close a task, clearing its assignee."""
    task = get_task(db, task_id)
    if not task:
        raise ValueError(f"Task not found: {task_id}")
    db.execute(
        """UPDATE tasks
           SET status = 'closed', assignee = NULL, block_reason = NULL, close_reason = ?,
               closed_at = ?, updated_at = datetime('now')
           WHERE id = ?""",
        (reason, datetime.now().isoformat(), task_id),
    )
    _log_event(db, task_id, "status_changed", task.status, "closed")
    db.commit()
    return get_task(db, task_id)


def set_attempts(db: sqlite3.Connection, task_id: str, attempts: int):
    db.execute(
        "UPDATE tasks SET attempts = ?, updated_at = datetime('now') WHERE id = ?",
        (attempts, task_id),
    )
    db.commit()


def add_comment(db: sqlite3.Connection, task_id: str, text: str):
    """Attach a free-text comment to the task's history."""
    _log_event(db, task_id, "comment", None, text)
    db.commit()


def record_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    _log_event(db, task_id, event_type, old_value, new_value)
    db.commit()


def get_task_events(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str | None = None,
) -> list[TaskEvent]:
    """Get the event history for a task, oldest first."""
    query = "SELECT * FROM task_events WHERE task_id = ?"
    params: list = [task_id]
    if event_type:
        query += " AND event_type = ?"
        params.append(event_type)
    rows = db.execute(query + " ORDER BY id", params).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def list_in_progress_with_agent_assignee(
    db: sqlite3.Connection,
    project_id: str,
    is_agent: Callable[[str], bool],
) -> list[Task]:
    return [
        t for t in list_tasks(db, project_id, status="in_progress")
        if t.assignee and is_agent(t.assignee)
    ]


def add_dependency(
    db: sqlite3.Connection,
    task_id: str,
    depends_on_id: str,
    dep_type: str = "blocks",
) -> Task:
    """Add a dependency edge to an existing task."""
    task = get_task(db, task_id)
    if not task:
        raise ValueError(f"Task not found: {task_id}")
    if not get_task(db, depends_on_id):
        raise ValueError(f"Dependency task not found: {depends_on_id}")
    if task_id == depends_on_id:
        raise ValueError("A task cannot depend on itself")
    db.execute(
        """INSERT OR REPLACE INTO task_dependencies (task_id, depends_on_task_id, dep_type)
           VALUES (?, ?, ?)""",
        (task_id, depends_on_id, dep_type),
    )
    _log_event(db, task_id, "dependency_added", None, f"{dep_type}:{depends_on_id}")
    db.commit()
    return get_task(db, task_id)


def remove_dependency(db: sqlite3.Connection, task_id: str, depends_on_id: str) -> Task:
    """Remove a dependency edge from a task."""
    task = get_task(db, task_id)
    if not task:
        raise ValueError(f"Task not found: {task_id}")
    db.execute(
        "DELETE FROM task_dependencies WHERE task_id = ? AND depends_on_task_id = ?",
        (task_id, depends_on_id),
    )
    _log_event(db, task_id, "dependency_removed", depends_on_id, None)
    db.commit()
    return get_task(db, task_id)


# ── Work inbox ──────────────────────────────────────────────────────────────


def enqueue_work(db: sqlite3.Connection, project_id: str, kind: str, task_id: str) -> WorkItem:
    """Queue a request for the scheduler.

    - run: start the task ahead of the ready queue
    - unblock: reopen a blocked task
    - stop: kill its agent and free the slot
    """
    if kind not in WORK_KINDS:
        raise ValueError(f"Unknown work kind: {kind}")
    if not get_task(db, task_id):
        raise ValueError(f"Task not found: {task_id}")
    cur = db.execute(
        "INSERT INTO work_inbox (project_id, kind, task_id) VALUES (?, ?, ?)",
        (project_id, kind, task_id),
    )
    db.commit()
    row = db.execute("SELECT * FROM work_inbox WHERE id = ?", (cur.lastrowid,)).fetchone()
    return _row_to_work_item(row)


def claim_work(db: sqlite3.Connection, project_id: str) -> list[WorkItem]:
    """Claim every pending inbox item for a project, oldest first."""
    rows = db.execute(
        "SELECT * FROM work_inbox WHERE project_id = ? AND status = 'pending' ORDER BY id",
        (project_id,),
    ).fetchall()
    if rows:
        db.executemany(
            "UPDATE work_inbox SET status = 'claimed', claimed_at = datetime('now') WHERE id = ?",
            [(r["id"],) for r in rows],
        )
        db.commit()
    return [_row_to_work_item(r) for r in rows]


def count_pending_work(db: sqlite3.Connection, project_id: str) -> int:
    row = db.execute(
        "SELECT COUNT(*) FROM work_inbox WHERE project_id = ? AND status = 'pending'",
        (project_id,),
    ).fetchone()
    return row[0]


# ── Helpers ─────────────────────────────────────────────────────────────────


def _blocking_deps(db: sqlite3.Connection, task_id: str) -> list[str]:
    rows = db.execute(
        """SELECT depends_on_task_id FROM task_dependencies
           WHERE task_id = ? AND dep_type = 'blocks' ORDER BY rowid""",
        (task_id,),
    ).fetchall()
    return [r["depends_on_task_id"] for r in rows]


def _log_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        "INSERT INTO task_events (task_id, event_type, old_value, new_value) VALUES (?, ?, ?, ?)",
        (task_id, event_type, old_value, new_value),
    )


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        project_id=row["project_id"],
        title=row["title"],
        description=row["description"] or "",
        status=row["status"],
        issue_type=row["issue_type"],
        priority=row["priority"] if row["priority"] is not None else 2,
        assignee=row["assignee"],
        block_reason=row["block_reason"],
        close_reason=row["close_reason"],
        attempts=row["attempts"] or 0,
        parent_task_id=row["parent_task_id"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        closed_at=_parse_dt(row["closed_at"]),
    )


def _row_to_work_item(row: sqlite3.Row) -> WorkItem:
    return WorkItem(
        id=row["id"],
        project_id=row["project_id"],
        kind=row["kind"],
        task_id=row["task_id"],
        status=row["status"],
        created_at=_parse_dt(row["created_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
