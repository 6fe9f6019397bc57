"""Reconcile durable records with reality after a restart or a stuck loop."""

import logging
from dataclasses import dataclass, field
from pathlib import Path

from build_orchestrator.core import tasks as tasks_mod
from build_orchestrator.core.agents import is_pid_alive, terminate_pid
from build_orchestrator.core.sessions import (
    ACTIVE_DIR,
    OUTPUT_FILE,
    TaskAssignment,
    active_dir,
    create_session,
    delete_assignment,
    delete_heartbeat,
    list_assignments,
    read_heartbeat,
)
from build_orchestrator.core.slots import AgentSlot
from build_orchestrator.core.state import is_agent_assignee
from build_orchestrator.db.models import Project

logger = logging.getLogger(__name__)


@dataclass
class RecoveryResult:
    reattached: list[str] = field(default_factory=list)
    requeued: list[str] = field(default_factory=list)
    cleaned: list[str] = field(default_factory=list)


class RecoveryService:
    def __init__(self, engine):
        self.engine = engine

    def run_full_recovery(self, project: Project, include_assignments: bool = True) -> RecoveryResult:
        """Every step is independent; one failing step never stops the rest."""
        result = RecoveryResult()
        state = self.engine.registry.get(project.id)
        if state is None:
            return result

        steps = [
            ("stale heartbeats", self._recover_stale_heartbeats),
            ("orphaned tasks", self._recover_orphaned_tasks),
            ("git lock", self._remove_stale_git_lock),
            ("slot reconciliation", self._reconcile_slots),
            ("orphan worktrees", self._prune_orphan_worktrees),
        ]
        if include_assignments:
            steps.insert(0, ("assignments", self._recover_assignments))
        for name, step in steps:
            try:
                step(project, state, result)
            except Exception:
                logger.exception("Recovery step '%s' failed for project %s", name, project.id)

        if result.reattached or result.requeued or result.cleaned:
            logger.info(
                "Recovery for %s: reattached=%s requeued=%s cleaned=%s",
                project.id, result.reattached, result.requeued, result.cleaned,
            )
        return result

    # ── Steps ───────────────────────────────────────────────────────────────

    def _recover_assignments(self, project: Project, state, result: RecoveryResult):
        db = self.engine.db
        for assignment in list_assignments(project.repo_path):
            task_id = assignment.task_id
            if task_id in state.slots:
                continue
            try:
                task = tasks_mod.get_task(db, task_id)
                if task is None or task.status != "in_progress":
                    delete_assignment(project.repo_path, task_id, assignment.worktree_path)
                    delete_heartbeat(assignment.worktree_path, task_id)
                    result.cleaned.append(task_id)
                    continue

                heartbeat = read_heartbeat(assignment.worktree_path, task_id)
                alive = heartbeat is not None and is_pid_alive(heartbeat.pid)
                if alive and assignment.phase == "coding":
                    self._reattach(project, state, assignment, task.title, heartbeat.pid)
                    result.reattached.append(task_id)
                    continue

                if alive:
                    # A review cannot be resumed without its coordinator
                    terminate_pid(heartbeat.pid)
                self._requeue(project, task_id, assignment.worktree_path, "agent was not running after restart")
                result.requeued.append(task_id)
            except Exception:
                logger.exception("Could not recover assignment for %s", task_id)

    def _recover_stale_heartbeats(self, project: Project, state, result: RecoveryResult):
        engine = self.engine
        bases: dict[str, Path] = {}
        if project.git_working_mode == "worktree":
            bases.update(engine.branches(project).list_task_worktrees())
        root = Path(project.repo_path) / ACTIVE_DIR
        if root.is_dir():
            for entry in root.iterdir():
                if entry.is_dir():
                    bases.setdefault(entry.name, Path(project.repo_path))

        threshold = engine.config.heartbeat_stale
        for task_id, base in bases.items():
            if task_id in state.slots:
                continue
            try:
                heartbeat = read_heartbeat(base, task_id)
                if heartbeat is None or not heartbeat.is_stale(threshold):
                    continue
                logger.warning("Stale heartbeat for %s (PID %d)", task_id, heartbeat.pid)
                terminate_pid(heartbeat.pid)
                delete_heartbeat(base, task_id)
                task = tasks_mod.get_task(engine.db, task_id)
                if task is not None and task.status == "in_progress":
                    self._requeue(project, task_id, str(base), "agent heartbeat went stale")
                    result.requeued.append(task_id)
                else:
                    result.cleaned.append(task_id)
            except Exception:
                logger.exception("Could not check heartbeat for %s", task_id)

    def _recover_orphaned_tasks(self, project: Project, state, result: RecoveryResult):
        engine = self.engine
        orphans = tasks_mod.list_in_progress_with_agent_assignee(engine.db, project.id, is_agent_assignee)
        for task in orphans:
            if task.id in state.slots:
                continue
            try:
                worktree = None
                if project.git_working_mode == "worktree":
                    worktree = str(engine.branches(project).worktree_path_for(task.id))
                heartbeat = read_heartbeat(worktree or project.repo_path, task.id)
                if heartbeat is not None and is_pid_alive(heartbeat.pid):
                    continue
                self._requeue(project, task.id, worktree, "no agent was running it")
                result.requeued.append(task.id)
            except Exception:
                logger.exception("Could not requeue orphaned task %s", task.id)

    def _remove_stale_git_lock(self, project: Project, state, result: RecoveryResult):
        self.engine.branches(project).remove_stale_index_lock()

    def _reconcile_slots(self, project: Project, state, result: RecoveryResult):
        engine = self.engine
        all_tasks = tasks_mod.list_tasks(engine.db, project.id)
        if not all_tasks:
            # An empty listing is more likely a read problem than a wiped store
            return
        by_id = {t.id: t for t in all_tasks}
        for task_id in list(state.slots):
            task = by_id.get(task_id)
            if task is None or task.status != "in_progress":
                logger.warning("Dropping slot for %s: task is %s", task_id, task.status if task else "gone")
                engine.slot_manager.release(state, task_id)
                result.cleaned.append(task_id)

    def _prune_orphan_worktrees(self, project: Project, state, result: RecoveryResult):
        if project.git_working_mode != "worktree":
            return
        bm = self.engine.branches(project)
        keep = set(state.slots)
        for task_id, path in bm.list_task_worktrees().items():
            heartbeat = read_heartbeat(path, task_id)
            if heartbeat is not None and is_pid_alive(heartbeat.pid):
                keep.add(task_id)
            task = tasks_mod.get_task(self.engine.db, task_id)
            if task is not None and task.status == "in_progress":
                keep.add(task_id)
        result.cleaned.extend(bm.prune_orphan_worktrees(keep))

    # ── Helpers ─────────────────────────────────────────────────────────────

    def _reattach(self, project: Project, state, assignment: TaskAssignment, title: str, pid: int):
        """Rebuild the slot around an agent that outlived the previous engine."""
        engine = self.engine
        task_id = assignment.task_id
        # Reattachment may exceed capacity briefly; the agent is already running
        slot = AgentSlot(
            task_id=task_id,
            title=title,
            phase=assignment.phase,
            branch_name=assignment.branch_name,
            worktree_path=assignment.worktree_path,
            attempt=assignment.attempt,
            first_attempt=assignment.attempt,
        )
        state.slots[task_id] = slot
        task = tasks_mod.get_task(engine.db, task_id)
        slot.agent_label = task.assignee if task else None
        slot.lifecycle = engine.new_lifecycle(project.id, task_id, assignment.attempt)
        slot.lifecycle.start_task()

        process = engine.spawner.reattach(
            task_id,
            assignment.phase,
            assignment.attempt,
            pid,
            assignment.worktree_path,
            active_dir(assignment.worktree_path, task_id) / OUTPUT_FILE,
            post=lambda msg: engine.post(project.id, msg),
        )
        session_id = create_session(
            engine.db, project.id, task_id, assignment.attempt, assignment.phase, slot.agent_label
        )
        slot.agent.mark_started(process, session_id)
        engine.phases.arm_inactivity_timer(project, slot)
        tasks_mod.add_comment(engine.db, task_id, f"Reattached to running agent (PID {pid}) after restart")

    def _requeue(self, project: Project, task_id: str, worktree_path: str | None, why: str):
        engine = self.engine
        task = tasks_mod.get_task(engine.db, task_id)
        if task is not None and task.status == "in_progress":
            tasks_mod.update_task(engine.db, task_id, status="open", assignee=None)
        delete_assignment(project.repo_path, task_id, worktree_path)
        if worktree_path:
            delete_heartbeat(worktree_path, task_id)
        delete_heartbeat(project.repo_path, task_id)
        if project.git_working_mode == "worktree":
            engine.branches(project).remove_task_worktree(task_id)
        if task is not None:
            tasks_mod.add_comment(engine.db, task_id, f"Requeued by recovery: {why}")
        logger.info("Requeued %s: %s", task_id, why)
