"""Retry, escalate or block a task after an attempt goes wrong."""

import enum
import logging

from build_orchestrator.core import events
from build_orchestrator.core import notifications as notifications_mod
from build_orchestrator.core import tasks as tasks_mod
from build_orchestrator.core.lifecycle import IllegalTransitionError
from build_orchestrator.core.results import OpenQuestion
from build_orchestrator.core.sessions import (
    RetryContext,
    archive_session,
    delete_assignment,
    delete_heartbeat,
)
from build_orchestrator.core.slots import AgentSlot, PhaseResult
from build_orchestrator.core.testing import TestResults
from build_orchestrator.db.models import Project, Task
from build_orchestrator.integrations import slack as slack_mod

logger = logging.getLogger(__name__)

# Consecutive infrastructure failures tolerated before escalating regardless of retry budget
MAX_INFRA_RETRIES = 2
# Escalating a task already at the lowest priority blocks it instead
MAX_PRIORITY_BEFORE_BLOCK = 4

OPEN_QUESTION_REASON = "Open Question"
REPEATED_FAILURES_REASON = "Repeated failures"


class FailureType(str, enum.Enum):
    TIMEOUT = "timeout"
    AGENT_CRASH = "agent_crash"
    NO_RESULT = "no_result"
    TEST_FAILURE = "test_failure"
    CODING_FAILURE = "coding_failure"
    REVIEW_REJECTION = "review_rejection"
    OPEN_QUESTION = "open_question"
    INFRA_ERROR = "infra_error"
    BRANCH_CONFLICT = "branch_conflict"


INFRA_FAILURES = {FailureType.TIMEOUT, FailureType.AGENT_CRASH, FailureType.INFRA_ERROR}


class FailureHandler:
    def __init__(self, engine):
        self.engine = engine

    def handle_failure(
        self,
        project: Project,
        task: Task,
        slot: AgentSlot,
        reason: str,
        failure_type: FailureType,
        test_results: TestResults | None = None,
        review_feedback: str | None = None,
    ):
        """Archive the failed attempt, then retry it or escalate the task."""
        engine = self.engine
        failure_type = FailureType(failure_type)
        logger.warning("Task %s attempt %d failed [%s]: %s", task.id, slot.attempt, failure_type.value, reason)

        slot.timers.cancel_all()
        if slot.agent.process is not None and not slot.agent.exited:
            engine.spawner.kill(slot.agent.process)
            slot.agent.exited = True

        test_output = test_results.raw_output if test_results else slot.phase_result.test_output or None
        if slot.agent.session_id is not None:
            diff = slot.phase_result.coding_diff
            if not diff and slot.worktree_path:
                diff = engine.branches(project).capture_uncommitted_diff(slot.worktree_path)
            archive_session(
                engine.db,
                slot.agent.session_id,
                "failed",
                summary=reason,
                failure_type=failure_type.value,
                output_log=slot.agent.output,
                git_diff=diff or None,
                test_output=test_output,
            )

        if failure_type == FailureType.REVIEW_REJECTION:
            tasks_mod.add_comment(engine.db, task.id, f"Review rejected (attempt {slot.attempt}):\n\n{review_feedback or ''}")
        else:
            tasks_mod.add_comment(engine.db, task.id, f"Attempt {slot.attempt} failed [{failure_type.value}]: {reason}")
        delete_assignment(project.repo_path, task.id, slot.worktree_path)

        if failure_type in INFRA_FAILURES:
            slot.infra_retries += 1
        else:
            slot.infra_retries = 0

        retries_used = slot.attempt - slot.first_attempt
        if slot.infra_retries > MAX_INFRA_RETRIES:
            self.escalate(project, task, slot, f"{reason} ({slot.infra_retries} infrastructure failures in a row)")
        elif retries_used >= engine.config.retry_limit:
            self.escalate(project, task, slot, reason)
        else:
            self.retry(project, task, slot, reason, failure_type, test_output, review_feedback)

    def retry(
        self,
        project: Project,
        task: Task,
        slot: AgentSlot,
        reason: str,
        failure_type: FailureType,
        test_output: str | None = None,
        review_feedback: str | None = None,
    ):
        engine = self.engine
        # Only escalations count towards total_failed
        if slot.lifecycle is not None and not slot.lifecycle.terminal:
            slot.lifecycle.fail(count_failure=False)

        slot.attempt += 1
        tasks_mod.set_attempts(engine.db, task.id, slot.attempt)

        if review_feedback:
            if engine.config.review_feedback_retention == "all":
                slot.review_history.append(review_feedback)
            else:
                slot.review_history = [review_feedback]
        feedback = None
        if slot.review_history:
            feedback = "\n\n---\n\n".join(slot.review_history)

        reuse = failure_type == FailureType.REVIEW_REJECTION
        retry_context = RetryContext(
            previous_failure=None if reuse else reason,
            review_feedback=feedback,
            use_existing_branch=reuse,
            failure_type=failure_type.value,
            previous_test_output=test_output,
            previous_diff=slot.phase_result.coding_diff or None,
        )

        if project.git_working_mode == "branches" and not reuse:
            engine.branches(project).revert_and_return_to_main(slot.branch_name)

        logger.info("Retrying %s (attempt %d)", task.id, slot.attempt)
        slot.coordinator = None
        slot.phase_result = PhaseResult()
        slot.start_new_run()
        slot.lifecycle = engine.new_lifecycle(project.id, task.id, slot.attempt)
        slot.lifecycle.start_task()
        state = engine.registry.get(project.id)
        slot.agent_label = state.next_coder_label()
        task = tasks_mod.update_task(engine.db, task.id, status="in_progress", assignee=slot.agent_label)
        engine.bus.broadcast(
            project.id,
            events.TASK_UPDATED,
            task_id=task.id,
            status="in_progress",
            assignee=slot.agent_label,
            attempt=slot.attempt,
        )
        engine.phases.start_coding(project, task, slot, retry_context)

    def escalate(self, project: Project, task: Task, slot: AgentSlot, reason: str):
        """Give up on this run: return the task to the pool at a lower priority."""
        engine = self.engine
        state = engine.registry.get(project.id)
        if slot.lifecycle is not None and not slot.lifecycle.terminal:
            slot.lifecycle.fail()
        self._clean_up(project, task, slot)

        attempts = slot.attempt - slot.first_attempt + 1
        current = tasks_mod.get_task(engine.db, task.id) or task
        if current.priority >= MAX_PRIORITY_BEFORE_BLOCK:
            task = tasks_mod.update_task(
                engine.db, task.id, status="blocked", assignee=None, block_reason=REPEATED_FAILURES_REASON
            )
            tasks_mod.add_comment(engine.db, task.id, f"Blocked after {attempts} failed attempt(s): {reason}")
        else:
            task = tasks_mod.update_task(
                engine.db, task.id, status="open", assignee=None, priority=current.priority + 1
            )
            tasks_mod.add_comment(
                engine.db, task.id, f"Escalated after {attempts} failed attempt(s); requeued at P{task.priority}"
            )

        if state is not None:
            engine.slot_manager.release(state, task.id)
            state.deferred_task_ids.add(task.id)
        engine.bus.broadcast(
            project.id,
            events.TASK_BLOCKED if task.status == "blocked" else events.TASK_UPDATED,
            task_id=task.id,
            status=task.status,
            reason=reason,
        )
        notifications_mod.notify_slack(
            engine.config.slack_bot_token,
            project.slack_channel,
            f"Task {task.id} escalated",
            blocks=slack_mod.format_escalation(task.id, task.title, attempts, reason),
        )
        engine.nudge(project.id, "escalated")

    def handle_open_question(self, project: Project, task: Task, slot: AgentSlot, questions: list[OpenQuestion]):
        """Block the task until a human answers; this is not a failed attempt."""
        engine = self.engine
        state = engine.registry.get(project.id)
        payload = [{"id": q.id, "text": q.text} for q in questions]
        notifications_mod.create_notification(engine.db, project.id, "execute", task.id, payload)
        task = tasks_mod.update_task(
            engine.db, task.id, status="blocked", assignee=None, block_reason=OPEN_QUESTION_REASON
        )
        tasks_mod.add_comment(
            engine.db, task.id, "Blocked on open questions:\n" + "\n".join(f"- {q.text}" for q in questions)
        )
        if slot.agent.session_id is not None:
            archive_session(
                engine.db,
                slot.agent.session_id,
                "blocked",
                summary=f"{len(questions)} open question(s)",
                failure_type=FailureType.OPEN_QUESTION.value,
                output_log=slot.agent.output,
            )
        if slot.lifecycle is not None and not slot.lifecycle.terminal:
            slot.lifecycle.fail(count_failure=False)
        self._clean_up(project, task, slot)
        if state is not None:
            engine.slot_manager.release(state, task.id)
        engine.bus.broadcast(
            project.id, events.TASK_BLOCKED, task_id=task.id, status="blocked", questions=payload
        )
        notifications_mod.notify_slack(
            engine.config.slack_bot_token,
            project.slack_channel,
            f"Task {task.id} needs input",
            blocks=slack_mod.format_open_questions(task.id, task.title, payload),
        )
        engine.nudge(project.id, "blocked")

    def fail_immediately(self, project: Project, task: Task, slot: AgentSlot, reason: str):
        """Branch contention: fail this task's attempt without touching the contested branch."""
        engine = self.engine
        state = engine.registry.get(project.id)
        if slot.lifecycle is not None and not slot.lifecycle.terminal:
            slot.lifecycle.fail()
        tasks_mod.add_comment(engine.db, task.id, f"Attempt {slot.attempt} failed [{FailureType.BRANCH_CONFLICT.value}]: {reason}")
        task = tasks_mod.update_task(engine.db, task.id, status="open", assignee=None)
        if state is not None:
            engine.slot_manager.release(state, task.id)
            # Left alone until the other holder finishes or someone asks for it again
            state.deferred_task_ids.add(task.id)
        engine.bus.broadcast(project.id, events.TASK_UPDATED, task_id=task.id, status=task.status, reason=reason)

    def _clean_up(self, project: Project, task: Task, slot: AgentSlot):
        engine = self.engine
        delete_assignment(project.repo_path, task.id, slot.worktree_path)
        if slot.worktree_path:
            delete_heartbeat(slot.worktree_path, task.id)
        bm = engine.branches(project)
        if project.git_working_mode == "branches":
            if slot.branch_name:
                bm.revert_and_return_to_main(slot.branch_name)
        else:
            bm.remove_task_worktree(task.id)
            if slot.branch_name:
                bm.delete_branch(slot.branch_name)

    def abandon(self, project: Project, task: Task, slot: AgentSlot, reason: str):
        """Last resort when even the failure path raised: free the slot and park the task."""
        engine = self.engine
        state = engine.registry.get(project.id)
        logger.error("Abandoning %s attempt %d: %s", task.id, slot.attempt, reason)
        if slot.lifecycle is not None and not slot.lifecycle.terminal:
            try:
                slot.lifecycle.fail()
            except IllegalTransitionError as e:
                logger.warning("%s", e)
        if state is not None:
            engine.slot_manager.release(state, task.id)
            state.deferred_task_ids.add(task.id)
        try:
            tasks_mod.update_task(engine.db, task.id, status="open", assignee=None)
            tasks_mod.add_comment(engine.db, task.id, f"Attempt {slot.attempt} abandoned [{FailureType.INFRA_ERROR.value}]: {reason}")
            delete_assignment(project.repo_path, task.id, slot.worktree_path)
        except Exception:
            logger.exception("Could not reset %s after abandoning it", task.id)
        engine.bus.broadcast(project.id, events.TASK_UPDATED, task_id=task.id, status="open", reason=reason)
        engine.nudge(project.id, "abandoned")
