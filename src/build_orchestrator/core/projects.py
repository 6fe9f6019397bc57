"""Project management operations and persisted scheduler counters."""

import sqlite3
from datetime import datetime

from build_orchestrator.db.models import Counters, Project

_SETTINGS = {
    "name",
    "repo_path",
    "default_branch",
    "slack_channel",
    "max_concurrent_agents",
    "review_enabled",
    "git_working_mode",
    "test_command",
}


def create_project(
    db: sqlite3.Connection,
    project_id: str,
    name: str,
    repo_path: str,
    default_branch: str = "main",
    slack_channel: str | None = None,
    max_concurrent_agents: int = 1,
    review_enabled: bool = True,
    git_working_mode: str = "worktree",
    test_command: str | None = None,
) -> Project:
    """Create a new project."""
    db.execute(
        """INSERT INTO projects (id, name, repo_path, default_branch, slack_channel,
                                 max_concurrent_agents, review_enabled, git_working_mode, test_command)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            project_id, name, repo_path, default_branch, slack_channel,
            max_concurrent_agents, int(review_enabled), git_working_mode, test_command,
        ),
    )
    db.commit()
    return get_project(db, project_id)


def get_project(db: sqlite3.Connection, project_id: str) -> Project | None:
    """Get a project by ID."""
    row = db.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not row:
        return None
    return _row_to_project(row)


def list_projects(db: sqlite3.Connection) -> list[Project]:
    """List all projects."""
    rows = db.execute("SELECT * FROM projects ORDER BY created_at DESC").fetchall()
    return [_row_to_project(r) for r in rows]


def update_project(
    db: sqlite3.Connection,
    project_id: str,
    **kwargs,
) -> Project | None:
    """Update project settings."""
    updates = {k: v for k, v in kwargs.items() if k in _SETTINGS and v is not None}
    if "review_enabled" in updates:
        updates["review_enabled"] = int(updates["review_enabled"])
    if not updates:
        return get_project(db, project_id)

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    values = list(updates.values()) + [project_id]
    db.execute(
        f"UPDATE projects SET {set_clause}, updated_at = datetime('now') WHERE id = ?",
        values,
    )
    db.commit()
    return get_project(db, project_id)


def ensure_default_project(db: sqlite3.Connection, repo_path: str) -> Project:
    """Ensure a 'default' project exists, creating it if needed."""
    project = get_project(db, "default")
    if not project:
        project = create_project(db, "default", "Default Project", repo_path)
    return project


def load_counters(db: sqlite3.Connection, project_id: str) -> Counters:
    row = db.execute(
        "SELECT * FROM orchestrator_counters WHERE project_id = ?", (project_id,)
    ).fetchone()
    if not row:
        return Counters(project_id=project_id)
    return Counters(
        project_id=project_id,
        total_done=row["total_done"],
        total_failed=row["total_failed"],
        queue_depth=row["queue_depth"],
    )


def save_counters(db: sqlite3.Connection, counters: Counters):
    db.execute(
        """INSERT INTO orchestrator_counters (project_id, total_done, total_failed, queue_depth)
           VALUES (?, ?, ?, ?)
           ON CONFLICT(project_id) DO UPDATE SET
               total_done = excluded.total_done,
               total_failed = excluded.total_failed,
               queue_depth = excluded.queue_depth,
               updated_at = datetime('now')""",
        (counters.project_id, counters.total_done, counters.total_failed, counters.queue_depth),
    )
    db.commit()


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        repo_path=row["repo_path"],
        default_branch=row["default_branch"],
        slack_channel=row["slack_channel"],
        max_concurrent_agents=row["max_concurrent_agents"] or 1,
        review_enabled=bool(row["review_enabled"]),
        git_working_mode=row["git_working_mode"] or "worktree",
        test_command=row["test_command"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
