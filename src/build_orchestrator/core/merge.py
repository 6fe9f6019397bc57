"""Land an approved task branch on the base branch and close the task."""

import logging
import threading

from build_orchestrator.core import events
from build_orchestrator.core import notifications as notifications_mod
from build_orchestrator.core import tasks as tasks_mod
from build_orchestrator.core.failures import FailureType
from build_orchestrator.core.messages import MergerFinished
from build_orchestrator.core.prompts import build_merge_prompt
from build_orchestrator.core.sessions import ACTIVE_DIR, archive_session, delete_assignment, delete_heartbeat
from build_orchestrator.core.slots import AgentSlot
from build_orchestrator.db.models import Project, Task
from build_orchestrator.integrations import slack as slack_mod
from build_orchestrator.integrations.git import GitError, MergeConflictError

logger = logging.getLogger(__name__)


def merge_message(branch: str, task: Task) -> str:
    return f"Merge {branch}: {task.title}"


def conflict_reason(files: list[str]) -> str:
    return f"Merge conflict could not be resolved: {', '.join(files)}"


class MergeCoordinator:
    def __init__(self, engine):
        self.engine = engine

    def perform_merge_and_done(self, project: Project, task: Task, slot: AgentSlot):
        engine = self.engine
        state = engine.registry.get(project.id)
        if state is not None and state.merging_task_id not in (None, task.id):
            if task.id not in state.waiting_merges:
                state.waiting_merges.append(task.id)
            logger.info("Merge of %s waits for %s", task.id, state.merging_task_id)
            return

        bm = engine.branches(project)
        branch = slot.branch_name
        bm.wait_for_git_ready()
        try:
            if slot.worktree_path:
                bm.commit_wip(slot.worktree_path, task.id)
            bm.merge_to_main(branch, merge_message(branch, task))
        except MergeConflictError as e:
            logger.warning("Merge of %s conflicted in %s", branch, ", ".join(e.files))
            self._start_merger(project, task, slot, e.files)
            return
        except GitError as e:
            logger.error("Merge of %s failed: %s", branch, e)
            if bm.is_merge_in_progress():
                bm.merge_abort()
            engine.failures.handle_failure(project, task, slot, f"Merge failed: {e}", FailureType.CODING_FAILURE)
            return
        self._close_merged(project, task, slot)

    def on_merger_finished(self, project: Project, state, msg: MergerFinished):
        """Conclude or abort the paused merge, then let queued merges through."""
        engine = self.engine
        if state.merging_task_id == msg.task_id:
            state.merging_task_id = None
        bm = engine.branches(project)
        slot = state.slots.get(msg.task_id)
        task = tasks_mod.get_task(engine.db, msg.task_id)
        if slot is None or slot.attempt != msg.attempt or task is None:
            logger.info("Merger for %s finished after its slot went away", msg.task_id)
            if bm.is_merge_in_progress():
                bm.merge_abort()
        else:
            try:
                self._conclude(project, task, slot, msg)
            except Exception as e:
                engine.phases.fail_after_error(project, task, slot, f"Error concluding merge: {e}")
        self._release_waiting(project, state)

    def _conclude(self, project: Project, task: Task, slot: AgentSlot, msg: MergerFinished):
        engine = self.engine
        bm = engine.branches(project)
        resolved = msg.resolved
        if resolved:
            try:
                remaining = bm.conflicted_files()
            except GitError:
                remaining = msg.files
            if remaining:
                logger.warning("Merger agent left conflicts in %s", ", ".join(remaining))
                resolved = False
        if resolved:
            try:
                bm.conclude_merge(merge_message(slot.branch_name, task))
            except GitError as e:
                logger.error("Could not commit resolved merge of %s: %s", slot.branch_name, e)
                resolved = False
        if not resolved:
            bm.merge_abort()
            engine.failures.handle_failure(
                project, task, slot, conflict_reason(msg.files), FailureType.CODING_FAILURE
            )
            return
        self._close_merged(project, task, slot)

    def _start_merger(self, project: Project, task: Task, slot: AgentSlot, files: list[str]):
        """One best-effort attempt by a merger agent, run off the scheduler thread."""
        engine = self.engine
        state = engine.registry.get(project.id)
        if state is not None:
            state.merging_task_id = task.id
        bm = engine.branches(project)
        prompt = build_merge_prompt(task, slot.branch_name, project.default_branch, files)
        work_dir = bm.repo_path / ACTIVE_DIR / task.id
        attempt = slot.attempt

        def run():
            try:
                ok = engine.spawner.run_merger_agent_and_wait(
                    engine.agent_config(), prompt, project.repo_path, work_dir, engine.config.merger_timeout
                )
            except Exception:
                logger.exception("Merger agent for %s crashed", task.id)
                ok = False
            engine.post(project.id, MergerFinished(task_id=task.id, attempt=attempt, resolved=ok, files=files))

        if not engine.threaded:
            run()
            return
        threading.Thread(target=run, name=f"merger-{task.id}", daemon=True).start()

    def _release_waiting(self, project: Project, state):
        waiting, state.waiting_merges = state.waiting_merges, []
        for task_id in waiting:
            slot = state.slots.get(task_id)
            task = tasks_mod.get_task(self.engine.db, task_id)
            if slot is None or task is None:
                continue
            try:
                self.perform_merge_and_done(project, task, slot)
            except Exception as e:
                self.engine.phases.fail_after_error(project, task, slot, f"Error merging: {e}")

    def _close_merged(self, project: Project, task: Task, slot: AgentSlot):
        engine = self.engine
        bm = engine.branches(project)
        branch = slot.branch_name
        summary = slot.phase_result.coding_summary
        task = tasks_mod.close_task(engine.db, task.id, reason=summary or "Merged")
        if slot.agent.session_id is not None:
            archive_session(
                engine.db,
                slot.agent.session_id,
                "approved",
                summary=summary,
                output_log=slot.agent.output,
                git_diff=slot.phase_result.coding_diff or None,
                test_output=slot.phase_result.test_output or None,
            )

        delete_assignment(project.repo_path, task.id, slot.worktree_path)
        if slot.worktree_path:
            delete_heartbeat(slot.worktree_path, task.id)
        if project.git_working_mode == "worktree":
            bm.remove_task_worktree(task.id)
        bm.delete_branch(branch)

        if slot.lifecycle is not None:
            slot.lifecycle.complete()
        state = engine.registry.get(project.id)
        if state is not None:
            engine.slot_manager.release(state, task.id)
        logger.info("Task %s merged and closed", task.id)

        engine.bus.broadcast(project.id, events.TASK_UPDATED, task_id=task.id, status="closed", assignee=None)
        notifications_mod.notify_slack(
            engine.config.slack_bot_token,
            project.slack_channel,
            f"Task {task.id} merged",
            blocks=slack_mod.format_task_done(task.id, task.title, branch),
        )
        engine.nudge(project.id, "merged")
