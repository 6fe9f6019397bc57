"""On-disk agent state (assignments, heartbeats, results) and the session archive.

Every running task owns an active directory ``.orchestrator/active/<task_id>/``
inside its working tree. The assignment record is also mirrored into the main
repository's active directory so recovery can find it without knowing where
worktrees live.
"""

import json
import logging
import os
import sqlite3
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from build_orchestrator.db.models import AgentSession

logger = logging.getLogger(__name__)

ACTIVE_DIR = Path(".orchestrator") / "active"
ASSIGNMENT_FILE = "assignment.json"
HEARTBEAT_FILE = "heartbeat.json"
RESULT_FILE = "result.json"
PROMPT_FILE = "prompt.md"
CONFIG_FILE = "config.json"
OUTPUT_FILE = "agent-output.log"


def active_dir(base: str | Path, task_id: str) -> Path:
    return Path(base) / ACTIVE_DIR / task_id


def write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    payload = json.dumps(data, indent=2) + "\n"
    with tmp.open("w", encoding="utf-8") as handle:
        handle.write(payload)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp, path)


def _read_json(path: Path) -> Any | None:
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
        logger.warning("Unreadable JSON at %s: %s", path, e)
        return None


def _unlink(path: Path):
    try:
        path.unlink()
    except FileNotFoundError:
        pass


# ── Assignment records ──────────────────────────────────────────────────────


@dataclass
class RetryContext:
    previous_failure: str | None = None
    review_feedback: str | None = None
    use_existing_branch: bool = False
    failure_type: str | None = None
    previous_test_output: str | None = None
    previous_diff: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "RetryContext":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class TaskAssignment:
    task_id: str
    project_id: str
    phase: str
    branch_name: str
    worktree_path: str
    prompt_path: str
    attempt: int
    agent_config: dict = field(default_factory=dict)
    retry_context: RetryContext | None = None
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TaskAssignment":
        retry = data.get("retry_context")
        return cls(
            task_id=data["task_id"],
            project_id=data["project_id"],
            phase=data["phase"],
            branch_name=data["branch_name"],
            worktree_path=data["worktree_path"],
            prompt_path=data.get("prompt_path", ""),
            attempt=int(data.get("attempt", 1)),
            agent_config=data.get("agent_config") or {},
            retry_context=RetryContext.from_dict(retry) if retry else None,
            created_at=data.get("created_at", ""),
        )


def write_assignment(repo_path: str | Path, assignment: TaskAssignment):
    """Persist the assignment in the worktree and mirror it into the main repo."""
    data = assignment.to_dict()
    targets = {Path(assignment.worktree_path).resolve(), Path(repo_path).resolve()}
    for base in targets:
        write_json_atomic(active_dir(base, assignment.task_id) / ASSIGNMENT_FILE, data)


def read_assignment(base: str | Path, task_id: str) -> TaskAssignment | None:
    data = _read_json(active_dir(base, task_id) / ASSIGNMENT_FILE)
    if not isinstance(data, dict):
        return None
    try:
        return TaskAssignment.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("Malformed assignment for %s: %s", task_id, e)
        return None


def list_assignments(repo_path: str | Path) -> list[TaskAssignment]:
    """Assignment records mirrored into the main repository."""
    root = Path(repo_path) / ACTIVE_DIR
    if not root.is_dir():
        return []
    assignments = []
    for entry in sorted(root.iterdir()):
        if entry.is_dir() and (assignment := read_assignment(repo_path, entry.name)):
            assignments.append(assignment)
    return assignments


def delete_assignment(repo_path: str | Path, task_id: str, worktree_path: str | Path | None = None):
    bases = [Path(repo_path)]
    if worktree_path:
        bases.append(Path(worktree_path))
    for base in bases:
        _unlink(active_dir(base, task_id) / ASSIGNMENT_FILE)


# ── Heartbeats ──────────────────────────────────────────────────────────────


@dataclass
class Heartbeat:
    pid: int
    last_output_at: float
    heartbeat_at: float

    def is_stale(self, threshold: float, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now - self.heartbeat_at > threshold


def write_heartbeat(base: str | Path, task_id: str, heartbeat: Heartbeat):
    write_json_atomic(active_dir(base, task_id) / HEARTBEAT_FILE, asdict(heartbeat))


def read_heartbeat(base: str | Path, task_id: str) -> Heartbeat | None:
    data = _read_json(active_dir(base, task_id) / HEARTBEAT_FILE)
    if not isinstance(data, dict):
        return None
    try:
        return Heartbeat(
            pid=int(data["pid"]),
            last_output_at=float(data.get("last_output_at") or 0),
            heartbeat_at=float(data.get("heartbeat_at") or 0),
        )
    except (KeyError, TypeError, ValueError):
        return None


def delete_heartbeat(base: str | Path, task_id: str):
    _unlink(active_dir(base, task_id) / HEARTBEAT_FILE)


# ── Agent results ───────────────────────────────────────────────────────────


def result_path(base: str | Path, task_id: str) -> Path:
    return active_dir(base, task_id) / RESULT_FILE


def read_result(base: str | Path, task_id: str) -> Any | None:
    """Raw decoded result.json, or None when missing or not JSON."""
    return _read_json(result_path(base, task_id))


def clear_result(base: str | Path, task_id: str):
    _unlink(result_path(base, task_id))


# ── Session archive ─────────────────────────────────────────────────────────


def create_session(
    db: sqlite3.Connection,
    project_id: str,
    task_id: str,
    attempt: int,
    phase: str,
    agent: str | None = None,
) -> int:
    cur = db.execute(
        """INSERT INTO agent_sessions (project_id, task_id, attempt, phase, agent)
           VALUES (?, ?, ?, ?, ?)""",
        (project_id, task_id, attempt, phase, agent),
    )
    db.commit()
    return cur.lastrowid


def archive_session(
    db: sqlite3.Connection,
    session_id: int,
    status: str,
    summary: str | None = None,
    failure_type: str | None = None,
    output_log: str | None = None,
    git_diff: str | None = None,
    test_output: str | None = None,
):
    """Finalize a session row with its outcome and captured artifacts."""
    db.execute(
        """UPDATE agent_sessions
           SET status = ?, summary = ?, failure_type = ?, output_log = ?, git_diff = ?,
               test_output = ?, completed_at = datetime('now')
           WHERE id = ?""",
        (status, summary, failure_type, output_log, git_diff, test_output, session_id),
    )
    db.commit()


def list_sessions(db: sqlite3.Connection, task_id: str) -> list[AgentSession]:
    rows = db.execute(
        "SELECT * FROM agent_sessions WHERE task_id = ? ORDER BY id", (task_id,)
    ).fetchall()
    return [
        AgentSession(
            id=r["id"],
            project_id=r["project_id"],
            task_id=r["task_id"],
            attempt=r["attempt"],
            phase=r["phase"],
            agent=r["agent"],
            status=r["status"],
            failure_type=r["failure_type"],
            summary=r["summary"],
            output_log=r["output_log"],
            git_diff=r["git_diff"],
            test_output=r["test_output"],
            started_at=_parse_dt(r["started_at"]),
            completed_at=_parse_dt(r["completed_at"]),
        )
        for r in rows
    ]


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
