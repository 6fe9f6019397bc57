"""Data models for the build orchestrator."""

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class Project:
    id: str
    name: str
    repo_path: str
    default_branch: str = "main"
    slack_channel: str | None = None
    max_concurrent_agents: int = 1
    review_enabled: bool = True
    git_working_mode: str = "worktree"
    test_command: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Task:
    id: str
    project_id: str
    title: str
    description: str = ""
    status: str = "open"
    issue_type: str = "task"
    priority: int = 2
    assignee: str | None = None
    block_reason: str | None = None
    close_reason: str | None = None
    attempts: int = 0
    parent_task_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    closed_at: datetime | None = None
    # Only 'blocks' edges; other dependency kinds never gate readiness
    depends_on: list[str] = field(default_factory=list)


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


@dataclass
class AgentSession:
    id: int | None = None
    project_id: str = ""
    task_id: str = ""
    attempt: int = 1
    phase: str = "coding"
    agent: str | None = None
    status: str = "running"
    failure_type: str | None = None
    summary: str | None = None
    output_log: str | None = None
    git_diff: str | None = None
    test_output: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class Notification:
    id: int | None = None
    project_id: str = ""
    source: str = ""
    source_id: str = ""
    questions: list[dict] = field(default_factory=list)
    status: str = "open"
    created_at: datetime | None = None
    resolved_at: datetime | None = None


@dataclass
class Counters:
    project_id: str
    total_done: int = 0
    total_failed: int = 0
    queue_depth: int = 0


@dataclass
class WorkItem:
    id: int
    project_id: str
    kind: str
    task_id: str
    status: str = "pending"
    created_at: datetime | None = None
