"""Shared fixtures: a throwaway git repository, a database pointing at it, and an inline engine."""

import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path

import pytest

from build_orchestrator.config import Config
from build_orchestrator.core import projects as projects_mod
from build_orchestrator.core.agents import AgentProcess
from build_orchestrator.core.messages import AgentExit
from build_orchestrator.core.orchestrator import Orchestrator
from build_orchestrator.core.sessions import result_path, write_json_atomic
from build_orchestrator.core.testing import TestResults
from build_orchestrator.db.engine import init_db

PROJECT = "test"


def git(cwd, *args) -> str:
    result = subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True, check=True)
    return result.stdout.strip()


@pytest.fixture
def git_repo():
    """Create a temporary git repo on ``main`` with an initial commit."""
    with tempfile.TemporaryDirectory() as tmp:
        git(tmp, "init")
        git(tmp, "checkout", "-b", "main")
        git(tmp, "config", "user.name", "Test")
        git(tmp, "config", "user.email", "test@test.com")
        git(tmp, "config", "commit.gpgsign", "false")
        (Path(tmp) / "README.md").write_text("# Test\n")
        git(tmp, "add", ".")
        git(tmp, "commit", "-m", "init")
        yield tmp


@pytest.fixture
def repo_db(git_repo):
    """A database (kept outside the repo) with project ``test`` linked to ``git_repo``."""
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        projects_mod.create_project(conn, PROJECT, "Test", git_repo)
        yield conn
        conn.close()


# ── Engine doubles ──────────────────────────────────────────────────────────


@dataclass
class SpawnCall:
    task_id: str
    phase: str
    attempt: int
    prompt_path: Path
    cwd: str


class FakeSpawner:
    """Records agent launches instead of starting processes; exits are posted by the test."""

    def __init__(self):
        self.spawned: list[SpawnCall] = []
        self.reattached: list[str] = []
        self.killed: list[int] = []
        self.merge_ok = False
        self.on_merge = None
        self._next_pid = 4_000_000

    def spawn(self, task_id, phase, attempt, config, prompt_path, cwd, output_path, post):
        self._next_pid += 1
        self.spawned.append(SpawnCall(task_id, phase, attempt, Path(prompt_path), str(cwd)))
        return AgentProcess(pid=self._next_pid, output_path=Path(output_path))

    def reattach(self, task_id, phase, attempt, pid, cwd, output_path, post):
        self.reattached.append(task_id)
        return AgentProcess(pid=pid, output_path=Path(output_path))

    def kill(self, handle):
        if handle is not None:
            self.killed.append(handle.pid)

    def run_merger_agent_and_wait(self, config, prompt, cwd, work_dir, timeout):
        if self.on_merge is not None:
            self.on_merge(cwd)
        return self.merge_ok


class FakeTestRunner:
    def __init__(self):
        self.results = TestResults(passed=1, raw_output="1 passed")
        self.calls: list[list[str]] = []

    def run_scoped_tests(self, cwd, changed_files, command):
        self.calls.append(list(changed_files))
        return self.results


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def runner():
    return FakeTestRunner()


@pytest.fixture
def engine(git_repo, spawner, runner):
    """An engine that runs everything on the test thread; drive it with ``run_pending``."""
    with tempfile.TemporaryDirectory() as tmp:
        config = Config(
            db_path=Path(tmp) / "bo.db",
            repo_path=Path(git_repo),
            inactivity_check_interval=3600.0,
        )
        orchestrator = Orchestrator(config, spawner=spawner, test_runner=runner, threaded=False)
        projects_mod.create_project(orchestrator.db, PROJECT, "Test", git_repo, review_enabled=False)
        yield orchestrator
        orchestrator.shutdown()
        orchestrator.database.close()


def start(engine):
    engine.ensure_running(PROJECT)
    engine.run_pending(PROJECT)
    return engine.registry.get(PROJECT)


def finish(engine, task_id, result, exit_code=0, files=None):
    """Play the part of the agent currently in ``task_id``'s slot, then let the engine react."""
    slot = engine.registry.get(PROJECT).slots[task_id]
    worktree = Path(slot.worktree_path)
    for name, content in (files or {}).items():
        (worktree / name).write_text(content)
    if result is not None:
        write_json_atomic(result_path(worktree, task_id), result)
    engine.post(PROJECT, AgentExit(task_id=task_id, phase=slot.phase, attempt=slot.attempt, exit_code=exit_code))
    engine.run_pending(PROJECT)
