"""Tests for the ready-queue resolver."""

import tempfile
from pathlib import Path

import pytest

from build_orchestrator.core import projects as projects_mod
from build_orchestrator.core import tasks as tasks_mod
from build_orchestrator.core.ready import resolve_ready_tasks
from build_orchestrator.db.engine import init_db
from build_orchestrator.db.models import Task


def _task(task_id, status="open", issue_type="task", depends_on=None, priority=2):
    return Task(
        id=task_id,
        project_id="test",
        title=task_id,
        status=status,
        issue_type=issue_type,
        priority=priority,
        depends_on=depends_on or [],
    )


def _ids(tasks):
    return [t.id for t in tasks]


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        projects_mod.create_project(conn, "test", "Test Project", tmp)
        yield conn
        conn.close()


class TestResolveReadyTasks:
    def test_excludes_non_open_statuses(self):
        tasks = [
            _task("open"),
            _task("busy", status="in_progress"),
            _task("stuck", status="blocked"),
            _task("gone", status="closed"),
        ]
        assert _ids(resolve_ready_tasks(tasks, [])) == ["open"]

    def test_excludes_epics_and_chores(self):
        tasks = [_task("feature", issue_type="epic"), _task("cleanup", issue_type="chore"), _task("work")]
        assert _ids(resolve_ready_tasks(tasks, [])) == ["work"]

    def test_excludes_tasks_holding_a_slot(self):
        tasks = [_task("a"), _task("b")]
        assert _ids(resolve_ready_tasks(tasks, {"a"})) == ["b"]

    def test_requires_every_blocker_closed(self):
        tasks = [
            _task("done", status="closed"),
            _task("pending"),
            _task("half", depends_on=["done", "pending"]),
            _task("full", depends_on=["done"]),
        ]
        assert _ids(resolve_ready_tasks(tasks, [])) == ["pending", "full"]

    def test_blocked_blocker_is_not_satisfied(self):
        tasks = [_task("wall", status="blocked"), _task("behind", depends_on=["wall"])]
        assert resolve_ready_tasks(tasks, []) == []

    def test_unknown_blocker_is_not_satisfied(self):
        tasks = [_task("orphan", depends_on=["never-existed"])]
        assert resolve_ready_tasks(tasks, []) == []

    def test_keeps_store_order(self):
        # Deliberately not sorted by priority: the resolver must not re-sort
        tasks = [_task("z", priority=4), _task("a", priority=0), _task("m", priority=2)]
        assert _ids(resolve_ready_tasks(tasks, [])) == ["z", "a", "m"]

    def test_iff_property_over_small_graphs(self):
        statuses = ["open", "closed", "blocked", "in_progress"]
        for dep_status in statuses:
            for own_status in statuses:
                for active in (False, True):
                    tasks = [_task("dep", status=dep_status), _task("t", status=own_status, depends_on=["dep"])]
                    ready = "t" in _ids(resolve_ready_tasks(tasks, {"t"} if active else set()))
                    expected = dep_status == "closed" and own_status == "open" and not active
                    assert ready == expected, (dep_status, own_status, active)


class TestReadyFromStore:
    def test_closing_a_makes_b_ready(self, db):
        tasks_mod.create_task(db, "A", "test")
        tasks_mod.create_task(db, "B", "test", depends_on=["a"])

        ready = resolve_ready_tasks(tasks_mod.list_tasks(db, "test"), [])
        assert _ids(ready) == ["a"]

        tasks_mod.close_task(db, "a", reason="done")
        ready = resolve_ready_tasks(tasks_mod.list_tasks(db, "test"), [])
        assert _ids(ready) == ["b"]

    def test_non_blocking_dependency_does_not_gate(self, db):
        tasks_mod.create_task(db, "Context", "test")
        tasks_mod.create_task(db, "Consumer", "test")
        tasks_mod.add_dependency(db, "consumer", "context", dep_type="related")
        ready = resolve_ready_tasks(tasks_mod.list_tasks(db, "test"), [])
        assert _ids(ready) == ["context", "consumer"]
