"""Merging approved branches, including conflicts handed to a merger agent."""

import threading
import time
from pathlib import Path

import pytest

from build_orchestrator.core import tasks as tasks_mod
from build_orchestrator.core.branches import BranchManager
from build_orchestrator.core.messages import MergerFinished

from conftest import PROJECT, finish, git, start

SUCCESS = {"status": "success", "summary": "Reworded the readme"}


@pytest.fixture
def conflicting(engine, git_repo):
    """A running task whose branch and main both rewrite README.md."""
    tasks_mod.create_task(engine.db, "Reword readme", PROJECT)
    state = start(engine)
    (Path(git_repo) / "README.md").write_text("# Main\n")
    git(git_repo, "commit", "-am", "main edit")
    return state


def _comments(engine, task_id):
    return [e.new_value for e in tasks_mod.get_task_events(engine.db, task_id, "comment")]


def _drain_until(engine, condition, timeout=10.0):
    deadline = time.monotonic() + timeout
    while not condition():
        assert time.monotonic() < deadline, "condition not reached"
        engine.run_pending(PROJECT)
        time.sleep(0.01)


class TestMergeConflicts:
    def test_unresolved_conflict_is_aborted_and_retried(self, engine, spawner, git_repo, conflicting):
        finish(engine, "reword-readme", SUCCESS, files={"README.md": "# Branch\n"})

        assert not BranchManager(git_repo).is_merge_in_progress()
        assert (Path(git_repo) / "README.md").read_text() == "# Main\n"
        slot = conflicting.slots["reword-readme"]
        assert slot.attempt == 2
        assert len(spawner.spawned) == 2
        assert (
            "Attempt 1 failed [coding_failure]: Merge conflict could not be resolved: README.md"
            in _comments(engine, "reword-readme")
        )

    def test_merger_agent_resolves_conflict(self, engine, spawner, git_repo, conflicting):
        def resolve(cwd):
            (Path(cwd) / "README.md").write_text("# Merged\n")
            git(cwd, "add", "README.md")

        spawner.merge_ok = True
        spawner.on_merge = resolve
        finish(engine, "reword-readme", SUCCESS, files={"README.md": "# Branch\n"})

        task = tasks_mod.get_task(engine.db, "reword-readme")
        assert task.status == "closed"
        assert (Path(git_repo) / "README.md").read_text() == "# Merged\n"
        assert not BranchManager(git_repo).is_merge_in_progress()
        assert conflicting.slots == {}
        assert engine.get_status(PROJECT)["total_done"] == 1

    def test_merger_leaving_conflicts_counts_as_failure(self, engine, spawner, git_repo, conflicting):
        spawner.merge_ok = True
        finish(engine, "reword-readme", SUCCESS, files={"README.md": "# Branch\n"})

        assert not BranchManager(git_repo).is_merge_in_progress()
        assert tasks_mod.get_task(engine.db, "reword-readme").status == "in_progress"
        assert conflicting.slots["reword-readme"].attempt == 2


class TestCleanMerge:
    def test_branch_and_worktree_removed_after_merge(self, engine, git_repo):
        tasks_mod.create_task(engine.db, "Add docs", PROJECT)
        start(engine)
        finish(engine, "add-docs", SUCCESS, files={"docs.md": "docs\n"})

        bm = BranchManager(git_repo)
        assert dict(bm.list_task_worktrees()) == {}
        assert "bo/add-docs" not in git(git_repo, "branch", "--list")
        assert git(git_repo, "log", "-1", "--format=%s").startswith("Merge bo/add-docs: Add docs")


class TestMergeOrdering:
    def test_merger_runs_off_the_scheduler_thread(self, engine, spawner, git_repo, conflicting):
        release = threading.Event()

        def resolve(cwd):
            release.wait(timeout=10)
            (Path(cwd) / "README.md").write_text("# Merged\n")
            git(cwd, "add", "README.md")

        spawner.merge_ok = True
        spawner.on_merge = resolve
        engine.threaded = True
        try:
            finish(engine, "reword-readme", SUCCESS, files={"README.md": "# Branch\n"})
            _drain_until(engine, lambda: conflicting.merging_task_id == "reword-readme")

            engine.nudge(PROJECT)
            engine.run_pending(PROJECT)
            assert "reword-readme" in conflicting.slots
            assert BranchManager(git_repo).is_merge_in_progress()

            release.set()
            _drain_until(engine, lambda: tasks_mod.get_task(engine.db, "reword-readme").status == "closed")
        finally:
            release.set()
            engine.threaded = False

        assert conflicting.merging_task_id is None
        assert (Path(git_repo) / "README.md").read_text() == "# Merged\n"
        assert not BranchManager(git_repo).is_merge_in_progress()

    def test_merge_waits_behind_a_paused_merge(self, engine, git_repo):
        tasks_mod.create_task(engine.db, "Add docs", PROJECT)
        state = start(engine)
        state.merging_task_id = "other"

        finish(engine, "add-docs", SUCCESS, files={"docs.md": "docs\n"})
        assert state.waiting_merges == ["add-docs"]
        assert tasks_mod.get_task(engine.db, "add-docs").status == "in_progress"
        assert not (Path(git_repo) / "docs.md").exists()

        engine.post(PROJECT, MergerFinished(task_id="other", attempt=1, resolved=False, files=[]))
        engine.run_pending(PROJECT)

        assert state.merging_task_id is None
        assert state.waiting_merges == []
        assert tasks_mod.get_task(engine.db, "add-docs").status == "closed"
        assert (Path(git_repo) / "docs.md").exists()

    def test_stopping_the_engine_aborts_a_paused_merge(self, engine, spawner, git_repo, conflicting):
        release = threading.Event()
        spawner.on_merge = lambda cwd: release.wait(timeout=10)
        engine.threaded = True
        try:
            finish(engine, "reword-readme", SUCCESS, files={"README.md": "# Branch\n"})
            _drain_until(engine, lambda: conflicting.merging_task_id == "reword-readme")
        finally:
            engine.threaded = False
        assert engine.stop_project(PROJECT) is True
        release.set()

        assert not BranchManager(git_repo).is_merge_in_progress()
        assert (Path(git_repo) / "README.md").read_text() == "# Main\n"
        assert tasks_mod.get_task(engine.db, "reword-readme").status == "open"
