"""Coding and review phases: prepare the branch, spawn the agent, route its exit."""

import logging
import threading
import time
from pathlib import Path

from build_orchestrator.core import events
from build_orchestrator.core import tasks as tasks_mod
from build_orchestrator.core.branches import BranchConflictError, branch_name_for
from build_orchestrator.core.coordinator import PhaseCoordinator, Resolution, ReviewOutcome, TestOutcome
from build_orchestrator.core.failures import FailureType
from build_orchestrator.core.messages import AgentExit, AgentOutput, InactivityCheck, TestsFinished
from build_orchestrator.core.prompts import (
    build_coding_prompt,
    build_review_prompt,
    condensed_context,
    write_prompt_files,
)
from build_orchestrator.core.results import NoResult, parse_coding_result, parse_review_result
from build_orchestrator.core.sessions import (
    OUTPUT_FILE,
    RetryContext,
    TaskAssignment,
    active_dir,
    archive_session,
    clear_result,
    create_session,
    delete_heartbeat,
    read_result,
    result_path,
    write_assignment,
)
from build_orchestrator.core.slots import AgentSlot
from build_orchestrator.core.testing import TestRunnerError
from build_orchestrator.db.models import Project, Task

logger = logging.getLogger(__name__)


class PhaseExecutor:
    def __init__(self, engine):
        self.engine = engine

    # ── Starting phases ─────────────────────────────────────────────────────

    def start_coding(self, project: Project, task: Task, slot: AgentSlot, retry_context: RetryContext | None = None):
        """execute_coding, with start-up failures routed to the failure handler."""
        try:
            self.execute_coding(project, task, slot, retry_context)
        except BranchConflictError as e:
            logger.warning("Branch conflict for %s: %s", task.id, e)
            self.engine.failures.fail_immediately(project, task, slot, str(e))
        except Exception as e:
            logger.exception("Could not start coding agent for %s", task.id)
            self.engine.failures.handle_failure(
                project, task, slot, f"Could not start coding agent: {e}", FailureType.AGENT_CRASH
            )

    def execute_coding(
        self,
        project: Project,
        task: Task,
        slot: AgentSlot,
        retry_context: RetryContext | None = None,
    ):
        engine = self.engine
        bm = engine.branches(project)
        reuse = bool(retry_context and retry_context.use_existing_branch)
        branch = branch_name_for(task.id)

        slot.phase = "coding"
        slot.branch_name = branch
        slot.coordinator = None
        if project.git_working_mode == "branches":
            bm.create_or_checkout_branch(branch, fresh=not reuse)
            worktree = Path(project.repo_path)
        else:
            worktree = bm.create_task_worktree(task.id, branch, reuse=reuse)
        slot.worktree_path = str(worktree)
        clear_result(worktree, task.id)

        state = engine.registry.get(project.id)
        context = state.context_cache.get(task.id)
        if context is None:
            context = condensed_context(engine.db, task)
            state.context_cache[task.id] = context

        agent_config = engine.agent_config()
        prompt = build_coding_prompt(project, task, context, result_path(worktree, task.id), retry_context)
        prompt_path = write_prompt_files(
            active_dir(worktree, task.id), prompt, agent_config, phase="coding", attempt=slot.attempt
        )
        write_assignment(
            project.repo_path,
            TaskAssignment(
                task_id=task.id,
                project_id=project.id,
                phase="coding",
                branch_name=branch,
                worktree_path=str(worktree),
                prompt_path=str(prompt_path),
                attempt=slot.attempt,
                agent_config=agent_config.to_dict(),
                retry_context=retry_context,
            ),
        )
        self._spawn(project, task, slot, "coding", prompt_path)

    def execute_review(self, project: Project, task: Task, slot: AgentSlot):
        engine = self.engine
        state = engine.registry.get(project.id)
        worktree = Path(slot.worktree_path)

        slot.phase = "review"
        slot.agent_label = state.next_reviewer_label()
        tasks_mod.update_task(engine.db, task.id, assignee=slot.agent_label)
        clear_result(worktree, task.id)

        agent_config = engine.agent_config()
        prompt = build_review_prompt(
            project,
            task,
            slot.phase_result.coding_summary,
            slot.phase_result.coding_diff,
            result_path(worktree, task.id),
        )
        prompt_path = write_prompt_files(
            active_dir(worktree, task.id), prompt, agent_config, phase="review", attempt=slot.attempt
        )
        write_assignment(
            project.repo_path,
            TaskAssignment(
                task_id=task.id,
                project_id=project.id,
                phase="review",
                branch_name=slot.branch_name,
                worktree_path=str(worktree),
                prompt_path=str(prompt_path),
                attempt=slot.attempt,
                agent_config=agent_config.to_dict(),
            ),
        )
        self._spawn(project, task, slot, "review", prompt_path)

    def _spawn(self, project: Project, task: Task, slot: AgentSlot, phase: str, prompt_path: Path):
        engine = self.engine
        slot.start_new_run()
        session_id = create_session(engine.db, project.id, task.id, slot.attempt, phase, slot.agent_label)
        process = engine.spawner.spawn(
            task.id,
            phase,
            slot.attempt,
            engine.agent_config(),
            prompt_path,
            slot.worktree_path,
            active_dir(slot.worktree_path, task.id) / OUTPUT_FILE,
            post=lambda msg: engine.post(project.id, msg),
        )
        slot.agent.mark_started(process, session_id)
        self.arm_inactivity_timer(project, slot)
        engine.bus.broadcast(
            project.id,
            events.AGENT_STARTED,
            task_id=task.id,
            phase=phase,
            attempt=slot.attempt,
            agent=slot.agent_label,
            pid=process.pid,
        )

    def arm_inactivity_timer(self, project: Project, slot: AgentSlot):
        engine = self.engine
        check = InactivityCheck(task_id=slot.task_id, attempt=slot.attempt)
        slot.timers.start(
            "inactivity",
            engine.config.inactivity_check_interval,
            lambda: engine.post(project.id, check),
            repeat=True,
        )

    # ── Agent messages ──────────────────────────────────────────────────────

    def on_agent_output(self, project: Project, state, msg: AgentOutput):
        slot = state.slots.get(msg.task_id)
        if slot is None or slot.attempt != msg.attempt or slot.agent.exited:
            return
        slot.agent.append_output(msg.text)
        self.engine.bus.broadcast(project.id, events.AGENT_OUTPUT, task_id=msg.task_id, text=msg.text)

    def on_inactivity_check(self, project: Project, state, msg: InactivityCheck):
        slot = state.slots.get(msg.task_id)
        if slot is None or slot.attempt != msg.attempt:
            return
        run = slot.agent
        if run.process is None or run.exited or run.killed_due_to_timeout:
            return
        idle = time.monotonic() - run.last_output_at
        timeout = self.engine.config.inactivity_timeout
        if idle > timeout:
            logger.warning(
                "%s agent for %s silent for %.0fs; killing PID %s", slot.phase, slot.task_id, idle, run.process.pid
            )
            run.killed_due_to_timeout = True
            self.engine.spawner.kill(run.process)

    def on_agent_exit(self, project: Project, state, msg: AgentExit):
        slot = state.slots.get(msg.task_id)
        if slot is None or slot.attempt != msg.attempt or slot.phase != msg.phase or slot.agent.exited:
            logger.info("Ignoring stale %s exit for %s (attempt %d)", msg.phase, msg.task_id, msg.attempt)
            return
        engine = self.engine
        slot.agent.exited = True
        slot.timers.cancel("inactivity")
        delete_heartbeat(slot.worktree_path, slot.task_id)
        engine.bus.broadcast(
            project.id,
            events.AGENT_COMPLETED,
            task_id=msg.task_id,
            phase=msg.phase,
            attempt=msg.attempt,
            exit_code=msg.exit_code,
        )

        task = tasks_mod.get_task(engine.db, msg.task_id)
        if task is None:
            logger.warning("Task %s disappeared while its agent ran", msg.task_id)
            engine.slot_manager.release(state, msg.task_id)
            return

        try:
            if msg.phase == "coding":
                self._handle_coding_exit(project, task, slot, msg.exit_code)
            else:
                self._handle_review_exit(project, task, slot, msg.exit_code)
        except Exception as e:
            self.fail_after_error(project, task, slot, f"Error handling {msg.phase} exit: {e}")

    def on_tests_finished(self, project: Project, state, msg: TestsFinished):
        slot = state.slots.get(msg.task_id)
        if slot is None or slot.attempt != msg.attempt or slot.coordinator is None:
            return
        slot.phase_result.test_results = msg.results
        slot.phase_result.test_output = msg.results.raw_output if msg.results else (msg.error or "")
        slot.coordinator.set_test_outcome(TestOutcome(results=msg.results, error=msg.error))

    # ── Exit routing ────────────────────────────────────────────────────────

    def _handle_coding_exit(self, project: Project, task: Task, slot: AgentSlot, exit_code: int | None):
        engine = self.engine
        failures = engine.failures

        if slot.agent.killed_due_to_timeout:
            minutes = engine.config.inactivity_timeout / 60
            failures.handle_failure(
                project, task, slot, f"Agent produced no output for {minutes:.0f} minutes", FailureType.TIMEOUT
            )
            return

        result = parse_coding_result(read_result(slot.worktree_path, task.id))
        if isinstance(result, NoResult):
            if exit_code not in (0, None):
                failures.handle_failure(
                    project, task, slot, f"Agent exited with code {exit_code}: {result.reason}", FailureType.AGENT_CRASH
                )
            else:
                failures.handle_failure(project, task, slot, result.reason, FailureType.NO_RESULT)
            return

        if result.open_questions:
            failures.handle_open_question(project, task, slot, result.open_questions)
            return

        if not result.succeeded:
            reason = result.summary or f"Coding agent reported status '{result.status}'"
            failures.handle_failure(project, task, slot, reason, FailureType.CODING_FAILURE)
            return

        bm = engine.branches(project)
        bm.commit_wip(slot.worktree_path, task.id)
        slot.phase_result.coding_summary = result.summary
        slot.phase_result.coding_diff = bm.capture_branch_diff(slot.branch_name)
        slot.phase_result.changed_files = bm.get_changed_files(slot.branch_name, slot.worktree_path)
        archive_session(
            engine.db,
            slot.agent.session_id,
            "completed",
            summary=result.summary,
            output_log=slot.agent.output,
            git_diff=slot.phase_result.coding_diff,
        )

        attempt = slot.attempt
        slot.coordinator = PhaseCoordinator(
            task.id,
            on_resolve=lambda resolution: self._on_resolved(project.id, task.id, attempt, resolution),
            review_enabled=project.review_enabled,
        )
        if project.review_enabled:
            slot.lifecycle.enter_review(result)
        self._run_tests(project, slot)
        if project.review_enabled:
            try:
                self.execute_review(project, task, slot)
            except Exception as e:
                logger.exception("Could not start review agent for %s", task.id)
                slot.coordinator.set_review_outcome(
                    ReviewOutcome("no_result", reason=f"Could not start review agent: {e}", failure_type="agent_crash")
                )

    def _handle_review_exit(self, project: Project, task: Task, slot: AgentSlot, exit_code: int | None):
        if slot.coordinator is None:
            logger.warning("Review exit for %s without a coordinator", task.id)
            return
        if slot.agent.killed_due_to_timeout:
            minutes = self.engine.config.inactivity_timeout / 60
            outcome = ReviewOutcome(
                "no_result",
                reason=f"Reviewer produced no output for {minutes:.0f} minutes",
                failure_type=FailureType.TIMEOUT.value,
            )
        else:
            result = parse_review_result(read_result(slot.worktree_path, task.id))
            if isinstance(result, NoResult):
                crashed = exit_code not in (0, None)
                outcome = ReviewOutcome(
                    "no_result",
                    reason=result.reason,
                    failure_type=(FailureType.AGENT_CRASH if crashed else FailureType.NO_RESULT).value,
                )
            elif result.approved:
                outcome = ReviewOutcome("approved", feedback=result.summary)
            else:
                outcome = ReviewOutcome("rejected", feedback=result.feedback())
        slot.coordinator.set_review_outcome(outcome)

    def _run_tests(self, project: Project, slot: AgentSlot):
        engine = self.engine
        task_id, attempt = slot.task_id, slot.attempt
        cwd, changed = slot.worktree_path, list(slot.phase_result.changed_files)

        def run():
            try:
                results = engine.test_runner.run_scoped_tests(cwd, changed, project.test_command)
                msg = TestsFinished(task_id=task_id, attempt=attempt, results=results)
            except TestRunnerError as e:
                msg = TestsFinished(task_id=task_id, attempt=attempt, error=str(e))
            except Exception as e:
                logger.exception("Test run crashed for %s", task_id)
                msg = TestsFinished(task_id=task_id, attempt=attempt, error=str(e))
            engine.post(project.id, msg)

        if not engine.threaded:
            run()
            return
        threading.Thread(target=run, name=f"tests-{task_id}", daemon=True).start()

    def _on_resolved(self, project_id: str, task_id: str, attempt: int, resolution: Resolution):
        engine = self.engine
        state = engine.registry.get(project_id)
        slot = state.slots.get(task_id) if state else None
        if slot is None or slot.attempt != attempt:
            return
        project = engine.get_project(project_id)
        task = tasks_mod.get_task(engine.db, task_id)
        if task is None:
            engine.slot_manager.release(state, task_id)
            return
        try:
            if resolution.action == "merge":
                engine.merger.perform_merge_and_done(project, task, slot)
            else:
                engine.failures.handle_failure(
                    project,
                    task,
                    slot,
                    resolution.reason,
                    FailureType(resolution.failure_type),
                    test_results=resolution.test_results,
                    review_feedback=resolution.review_feedback,
                )
        except Exception as e:
            self.fail_after_error(project, task, slot, f"Error finishing attempt: {e}")

    def fail_after_error(self, project: Project, task: Task, slot: AgentSlot, reason: str):
        """Route an unexpected error to the failure handler so the slot is never stranded."""
        engine = self.engine
        logger.exception("Unexpected error on %s attempt %d", task.id, slot.attempt)
        state = engine.registry.get(project.id)
        if state is None or state.slots.get(task.id) is not slot:
            return
        current = tasks_mod.get_task(engine.db, task.id)
        if current is None or current.status == "closed":
            engine.slot_manager.release(state, task.id)
            engine.nudge(project.id, "released")
            return
        try:
            engine.failures.handle_failure(project, task, slot, reason, FailureType.INFRA_ERROR)
        except Exception:
            logger.exception("Failure handling for %s raised as well", task.id)
            engine.failures.abandon(project, task, slot, reason)
