"""End-to-end scheduler tests: real git repository, fake agents, inline message handling."""

import os
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from build_orchestrator.core import notifications as notifications_mod
from build_orchestrator.core import projects as projects_mod
from build_orchestrator.core import tasks as tasks_mod
from build_orchestrator.core.branches import BranchManager
from build_orchestrator.core.lifecycle import LifecycleState
from build_orchestrator.core.messages import AgentExit, AgentOutput, InactivityCheck
from build_orchestrator.core.orchestrator import LoopMonitor
from build_orchestrator.core.sessions import Heartbeat, list_sessions, read_assignment, write_heartbeat
from build_orchestrator.core.testing import TestResults
from build_orchestrator.integrations.git import GitError

from conftest import PROJECT, finish, start

SUCCESS = {"status": "success", "summary": "Implemented"}
FAILED = {"status": "failed", "summary": "Could not compile"}


def _task(engine, task_id):
    return tasks_mod.get_task(engine.db, task_id)


def _comments(engine, task_id):
    return [e.new_value for e in tasks_mod.get_task_events(engine.db, task_id, "comment")]


def _enable_review(engine):
    projects_mod.update_project(engine.db, PROJECT, review_enabled=True)


@pytest.fixture
def seen(engine):
    """Every event the engine broadcasts, in order."""
    received = []
    engine.bus.subscribe(received.append)
    yield received
    engine.bus.unsubscribe(received.append)


def _payloads(seen, event_type):
    return [e.payload for e in seen if e.type == event_type]


class TestHappyPath:
    def test_review_disabled_task_is_merged_and_closed(self, engine, spawner, runner, git_repo):
        tasks_mod.create_task(engine.db, "Add login", PROJECT)
        state = start(engine)

        assert list(state.slots) == ["add-login"]
        task = _task(engine, "add-login")
        assert task.status == "in_progress"
        assert task.assignee == "coder-ada"
        assert task.attempts == 1
        assert [(c.phase, c.attempt) for c in spawner.spawned] == [("coding", 1)]
        assert read_assignment(git_repo, "add-login").phase == "coding"

        finish(engine, "add-login", SUCCESS, files={"login.py": "x = 1\n"})

        task = _task(engine, "add-login")
        assert task.status == "closed"
        assert task.close_reason == "Implemented"
        assert (Path(git_repo) / "login.py").exists()
        assert state.slots == {}
        assert runner.calls == [["login.py"]]
        assert read_assignment(git_repo, "add-login") is None
        assert [s.status for s in list_sessions(engine.db, "add-login")] == ["approved"]

        lifecycle = [e.new_value for e in tasks_mod.get_task_events(engine.db, "add-login", "lifecycle")]
        assert lifecycle == ["coding (attempt 1)", "complete (attempt 1)"]

        status = engine.get_status(PROJECT)
        assert status["total_done"] == 1
        assert status["total_failed"] == 0
        assert status["active_tasks"] == []

    def test_review_approval_merges(self, engine, spawner, git_repo):
        _enable_review(engine)
        tasks_mod.create_task(engine.db, "Add login", PROJECT)
        state = start(engine)

        finish(engine, "add-login", SUCCESS, files={"login.py": "x = 1\n"})
        slot = state.slots["add-login"]
        assert slot.phase == "review"
        assert slot.lifecycle.state == LifecycleState.REVIEW
        assert spawner.spawned[-1].phase == "review"
        assert _task(engine, "add-login").assignee == "reviewer-ada"

        finish(engine, "add-login", {"status": "approved", "summary": "LGTM"})
        assert _task(engine, "add-login").status == "closed"
        assert (Path(git_repo) / "login.py").exists()
        assert [s.phase for s in list_sessions(engine.db, "add-login")] == ["coding", "review"]

    def test_capacity_one_runs_tasks_in_turn(self, engine, git_repo):
        tasks_mod.create_task(engine.db, "First", PROJECT)
        tasks_mod.create_task(engine.db, "Second", PROJECT)
        state = start(engine)
        assert list(state.slots) == ["first"]
        assert engine.get_status(PROJECT)["queue_depth"] == 1

        finish(engine, "first", SUCCESS, files={"first.py": "a = 1\n"})
        assert _task(engine, "first").status == "closed"
        assert list(state.slots) == ["second"]
        assert (Path(state.slots["second"].worktree_path) / "first.py").exists()

    def test_run_request_jumps_the_queue(self, engine):
        tasks_mod.create_task(engine.db, "First", PROJECT)
        tasks_mod.create_task(engine.db, "Second", PROJECT)
        tasks_mod.enqueue_work(engine.db, PROJECT, "run", "second")
        state = start(engine)
        assert list(state.slots) == ["second"]
        assert tasks_mod.count_pending_work(engine.db, PROJECT) == 0

    def test_blocked_dependency_waits(self, engine):
        tasks_mod.create_task(engine.db, "Schema", PROJECT)
        tasks_mod.create_task(engine.db, "API", PROJECT, depends_on=["schema"], priority=0)
        state = start(engine)
        assert list(state.slots) == ["schema"]
        finish(engine, "schema", SUCCESS, files={"schema.sql": "create table t (id int);\n"})
        assert list(state.slots) == ["api"]

    def test_transitions_are_broadcast(self, engine, seen):
        tasks_mod.create_task(engine.db, "First", PROJECT)
        tasks_mod.create_task(engine.db, "Second", PROJECT)
        start(engine)
        finish(engine, "first", SUCCESS, files={"first.py": "a = 1\n"})

        assert {e.project_id for e in seen} == {PROJECT}
        started = _payloads(seen, "agent.started")
        assert [(p["task_id"], p["phase"], p["attempt"]) for p in started] == [
            ("first", "coding", 1),
            ("second", "coding", 1),
        ]
        assert _payloads(seen, "agent.completed") == [
            {"task_id": "first", "phase": "coding", "attempt": 1, "exit_code": 0}
        ]
        updates = [(p["task_id"], p["status"]) for p in _payloads(seen, "task.updated")]
        assert updates == [("first", "in_progress"), ("first", "closed"), ("second", "in_progress")]

        lifecycle = [(p["task_id"], p["state"]) for p in _payloads(seen, "execute.status") if "state" in p]
        assert lifecycle == [("first", "coding"), ("first", "complete"), ("second", "coding")]
        statuses = [p for p in _payloads(seen, "execute.status") if "queue_depth" in p]
        assert (statuses[0]["active_tasks"], statuses[0]["queue_depth"]) == (["first"], 1)
        assert (statuses[-1]["active_tasks"], statuses[-1]["queue_depth"]) == (["second"], 0)
        assert statuses[-1]["total_done"] == 1


class TestFailures:
    def test_failing_tests_override_approval(self, engine, runner):
        _enable_review(engine)
        runner.results = TestResults(passed=1, failed=1, exit_code=1, raw_output="1 failed")
        tasks_mod.create_task(engine.db, "Add login", PROJECT)
        state = start(engine)

        finish(engine, "add-login", SUCCESS, files={"login.py": "x = 1\n"})
        finish(engine, "add-login", {"status": "approved"})

        slot = state.slots["add-login"]
        assert slot.attempt == 2
        assert _task(engine, "add-login").status == "in_progress"
        retry = read_assignment(engine.get_project(PROJECT).repo_path, "add-login").retry_context
        assert retry.failure_type == "test_failure"
        assert retry.previous_test_output == "1 failed"
        assert retry.use_existing_branch is False
        sessions = list_sessions(engine.db, "add-login")
        assert [(s.phase, s.status) for s in sessions[:2]] == [("coding", "completed"), ("review", "failed")]

    def test_review_rejection_retries_on_same_branch(self, engine, spawner, git_repo):
        _enable_review(engine)
        tasks_mod.create_task(engine.db, "Add login", PROJECT)
        state = start(engine)

        finish(engine, "add-login", SUCCESS, files={"login.py": "x = 1\n"})
        finish(engine, "add-login", {"status": "rejected", "issues": ["Missing tests"]})

        slot = state.slots["add-login"]
        assert slot.attempt == 2
        assert slot.phase == "coding"
        assert (Path(slot.worktree_path) / "login.py").exists()
        retry = read_assignment(git_repo, "add-login").retry_context
        assert retry.use_existing_branch is True
        assert retry.previous_failure is None
        assert "Missing tests" in retry.review_feedback
        assert "Missing tests" in spawner.spawned[-1].prompt_path.read_text()
        assert any(c.startswith("Review rejected (attempt 1)") for c in _comments(engine, "add-login"))
        assert engine.get_status(PROJECT)["total_failed"] == 0

    def test_retry_limit_escalates_and_defers(self, engine, spawner, seen):
        engine.config.retry_limit = 1
        tasks_mod.create_task(engine.db, "Add login", PROJECT)
        state = start(engine)

        finish(engine, "add-login", FAILED)
        assert state.slots["add-login"].attempt == 2
        finish(engine, "add-login", FAILED)

        task = _task(engine, "add-login")
        assert task.status == "open"
        assert task.assignee is None
        assert task.priority == 3
        assert state.slots == {}
        assert "add-login" in state.deferred_task_ids
        assert len(spawner.spawned) == 2
        assert engine.get_status(PROJECT)["total_failed"] == 1
        assert [p["attempt"] for p in _payloads(seen, "agent.started")] == [1, 2]
        assert [p["attempt"] for p in _payloads(seen, "agent.completed")] == [1, 2]
        updates = [(p["status"], p.get("attempt")) for p in _payloads(seen, "task.updated")]
        assert updates == [("in_progress", None), ("in_progress", 2), ("open", None)]
        assert [p["state"] for p in _payloads(seen, "execute.status") if "state" in p] == [
            "coding",
            "fail",
            "coding",
            "fail",
        ]

        engine.enqueue_work(PROJECT, "run", "add-login")
        engine.run_pending(PROJECT)
        assert state.slots["add-login"].attempt == 3

    def test_lowest_priority_task_is_blocked(self, engine):
        engine.config.retry_limit = 0
        tasks_mod.create_task(engine.db, "Backlog item", PROJECT, priority=4)
        start(engine)
        finish(engine, "backlog-item", FAILED)

        task = _task(engine, "backlog-item")
        assert task.status == "blocked"
        assert task.block_reason == "Repeated failures"

    def test_infra_failures_escalate_after_three(self, engine, spawner):
        engine.config.retry_limit = 10
        tasks_mod.create_task(engine.db, "Flaky", PROJECT)
        state = start(engine)

        for _ in range(3):
            finish(engine, "flaky", None, exit_code=1)

        assert len(spawner.spawned) == 3
        assert state.slots == {}
        assert _task(engine, "flaky").priority == 3
        failure_types = [s.failure_type for s in list_sessions(engine.db, "flaky")]
        assert failure_types == ["agent_crash"] * 3

    def test_clean_exit_without_result_is_no_result(self, engine):
        tasks_mod.create_task(engine.db, "Quiet", PROJECT)
        start(engine)
        finish(engine, "quiet", None, exit_code=0)
        assert list_sessions(engine.db, "quiet")[0].failure_type == "no_result"

    def test_silent_agent_is_killed_and_retried(self, engine, spawner):
        engine.config.inactivity_timeout = 0
        tasks_mod.create_task(engine.db, "Slow", PROJECT)
        state = start(engine)
        slot = state.slots["slow"]
        pid = slot.agent.process.pid

        engine.post(PROJECT, InactivityCheck(task_id="slow", attempt=1))
        engine.run_pending(PROJECT)
        assert spawner.killed == [pid]
        assert slot.agent.killed_due_to_timeout

        finish(engine, "slow", None, exit_code=None)
        assert list_sessions(engine.db, "slow")[0].failure_type == "timeout"
        assert state.slots["slow"].attempt == 2

    def test_open_question_blocks_until_unblocked(self, engine):
        tasks_mod.create_task(engine.db, "Pick DB", PROJECT)
        state = start(engine)
        finish(engine, "pick-db", {"status": "failed", "openQuestions": ["Postgres or SQLite?"]})

        task = _task(engine, "pick-db")
        assert task.status == "blocked"
        assert task.block_reason == "Open Question"
        assert state.slots == {}
        open_items = notifications_mod.list_notifications(engine.db, PROJECT)
        assert [n.questions for n in open_items] == [[{"id": "q1", "text": "Postgres or SQLite?"}]]
        assert engine.get_status(PROJECT)["total_failed"] == 0

        engine.enqueue_work(PROJECT, "unblock", "pick-db")
        engine.run_pending(PROJECT)
        assert _task(engine, "pick-db").status == "in_progress"
        assert state.slots["pick-db"].attempt == 2
        assert notifications_mod.list_notifications(engine.db, PROJECT) == []

    def test_branch_conflict_leaves_worktree_alone(self, engine, git_repo):
        tasks_mod.create_task(engine.db, "Contested", PROJECT)
        path = BranchManager(git_repo).create_task_worktree("contested", "bo/contested")
        now = time.time()
        write_heartbeat(path, "contested", Heartbeat(pid=os.getpid(), last_output_at=now, heartbeat_at=now))

        state = start(engine)
        assert state.slots == {}
        assert _task(engine, "contested").status == "open"
        assert path.exists()
        assert any("[branch_conflict]" in c for c in _comments(engine, "contested"))
        assert "contested" in state.deferred_task_ids

        engine.nudge(PROJECT)
        engine.run_pending(PROJECT)
        assert state.slots == {}
        assert engine.get_status(PROJECT)["total_failed"] == 1

    def test_git_error_while_routing_exit_retries_the_task(self, engine, spawner):
        tasks_mod.create_task(engine.db, "Add login", PROJECT)
        state = start(engine)

        with patch.object(BranchManager, "commit_wip", side_effect=GitError("index.lock exists")):
            finish(engine, "add-login", SUCCESS, files={"login.py": "x = 1\n"})

        slot = state.slots["add-login"]
        assert slot.attempt == 2
        assert not slot.agent.exited
        assert [(c.phase, c.attempt) for c in spawner.spawned] == [("coding", 1), ("coding", 2)]
        assert _task(engine, "add-login").status == "in_progress"
        assert list_sessions(engine.db, "add-login")[0].failure_type == "infra_error"
        assert any(c.startswith("Attempt 1 failed [infra_error]") for c in _comments(engine, "add-login"))

    def test_slot_freed_when_failure_handling_breaks_too(self, engine, spawner):
        tasks_mod.create_task(engine.db, "Add login", PROJECT)
        state = start(engine)

        with patch.object(BranchManager, "commit_wip", side_effect=GitError("index.lock exists")), patch.object(
            engine.failures, "retry", side_effect=RuntimeError("disk full")
        ):
            finish(engine, "add-login", SUCCESS, files={"login.py": "x = 1\n"})

        assert state.slots == {}
        task = _task(engine, "add-login")
        assert task.status == "open"
        assert task.assignee is None
        assert "add-login" in state.deferred_task_ids
        assert len(spawner.spawned) == 1
        assert engine.get_status(PROJECT)["total_failed"] == 1
        assert any("abandoned [infra_error]" in c for c in _comments(engine, "add-login"))


class TestMessages:
    def test_stale_exit_is_ignored(self, engine):
        tasks_mod.create_task(engine.db, "Add login", PROJECT)
        state = start(engine)
        engine.post(PROJECT, AgentExit(task_id="add-login", phase="coding", attempt=7, exit_code=0))
        engine.run_pending(PROJECT)
        assert "add-login" in state.slots
        assert not state.slots["add-login"].agent.exited

    def test_output_is_accumulated(self, engine):
        tasks_mod.create_task(engine.db, "Add login", PROJECT)
        state = start(engine)
        engine.post(PROJECT, AgentOutput(task_id="add-login", attempt=1, text="hello "))
        engine.post(PROJECT, AgentOutput(task_id="add-login", attempt=1, text="world"))
        engine.post(PROJECT, AgentOutput(task_id="add-login", attempt=9, text="stale"))
        engine.run_pending(PROJECT)
        assert state.slots["add-login"].agent.output == "hello world"
        assert engine.get_active_agents(PROJECT)[0]["output_tail"] == "hello world"

    def test_handler_error_backs_off(self, engine):
        tasks_mod.create_task(engine.db, "Add login", PROJECT)
        state = start(engine)
        with patch.object(engine.phases, "on_agent_output", side_effect=RuntimeError("boom")):
            engine.post(PROJECT, AgentOutput(task_id="add-login", attempt=1, text="x"))
            engine.run_pending(PROJECT)
        assert state.backoff_until > time.monotonic()


class TestOperatorActions:
    def test_kill_agent_by_label(self, engine, spawner):
        tasks_mod.create_task(engine.db, "Add login", PROJECT)
        state = start(engine)
        pid = state.slots["add-login"].agent.process.pid

        assert engine.kill_agent(PROJECT, "coder-ada") is True
        assert engine.kill_agent(PROJECT, "nobody") is False
        engine.run_pending(PROJECT)
        assert spawner.killed == [pid]

    def test_stop_task_frees_slot_without_restarting(self, engine, spawner, git_repo):
        tasks_mod.create_task(engine.db, "Add login", PROJECT)
        state = start(engine)

        assert engine.stop_task_and_free_slot(PROJECT, "add-login") is True
        engine.run_pending(PROJECT)

        assert state.slots == {}
        assert _task(engine, "add-login").status == "open"
        assert len(spawner.killed) == 1
        assert not (Path(git_repo) / ".worktrees" / "add-login").exists()
        assert [s.status for s in list_sessions(engine.db, "add-login")] == ["cancelled"]
        assert engine.stop_task_and_free_slot(PROJECT, "add-login") is False

    def test_stop_request_through_inbox(self, engine):
        tasks_mod.create_task(engine.db, "Add login", PROJECT)
        state = start(engine)
        engine.enqueue_work(PROJECT, "stop", "add-login")
        engine.run_pending(PROJECT)
        assert state.slots == {}
        assert "Stopped by user" in _comments(engine, "add-login")

    def test_stop_project_requeues_running_tasks(self, engine, spawner, seen):
        tasks_mod.create_task(engine.db, "Add login", PROJECT)
        start(engine)

        assert engine.stop_project(PROJECT) is True
        assert engine.registry.get(PROJECT) is None
        assert _task(engine, "add-login").status == "open"
        assert len(spawner.killed) == 1
        final = _payloads(seen, "execute.status")[-1]
        assert (final["loop_active"], final["active_tasks"]) == (False, [])
        status = engine.get_status(PROJECT)
        assert status["loop_active"] is False
        assert engine.stop_project(PROJECT) is False

    def test_status_and_agents(self, engine):
        tasks_mod.create_task(engine.db, "Add login", PROJECT)
        start(engine)
        status = engine.get_status(PROJECT)
        assert status["loop_active"] is True
        assert status["run_id"] == 1
        assert status["active_tasks"] == ["add-login"]
        assert status["pending_work"] == 0

        [agent] = engine.get_active_agents()
        assert agent["project_id"] == PROJECT
        assert agent["task_id"] == "add-login"
        assert agent["phase"] == "coding"
        assert agent["agent"] == "coder-ada"
        assert agent["state"] == "coding"

    def test_enqueue_unknown_task(self, engine):
        start(engine)
        with pytest.raises(ValueError, match="missing"):
            engine.enqueue_work(PROJECT, "run", "missing")

    def test_ensure_running_is_idempotent(self, engine):
        first = start(engine)
        second = engine.ensure_running(PROJECT)
        assert first is second
        assert second.run_id == 1


class TestLoopMonitor:
    def test_restarts_stuck_scheduler(self, engine):
        state = start(engine)
        monitor = LoopMonitor(engine, check_interval=1)
        assert monitor.check() == []

        state.iteration_started_at = time.monotonic() - engine.config.loop_stuck_guard - 1
        assert monitor.check() == [PROJECT]
        assert state.run_id == 2
        assert state.iteration_started_at is None

    def test_ignores_stopped_projects(self, engine):
        state = start(engine)
        state.loop_active = False
        state.iteration_started_at = 0.0
        assert LoopMonitor(engine).check(now=10_000.0) == []
