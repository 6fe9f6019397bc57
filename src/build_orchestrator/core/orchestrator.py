"""The orchestration engine: one scheduler worker per project, fed by a message queue.

Everything that mutates a project's scheduler state runs on that project's
worker (or, with ``threaded=False``, on whoever calls ``run_pending``).
Agent watchers, test threads and timers only post messages.
"""

import logging
import queue
import threading
import time

from build_orchestrator.config import Config
from build_orchestrator.core import events
from build_orchestrator.core import notifications as notifications_mod
from build_orchestrator.core import projects as projects_mod
from build_orchestrator.core import tasks as tasks_mod
from build_orchestrator.core.agents import AgentConfig, AgentSpawner
from build_orchestrator.core.branches import BranchManager
from build_orchestrator.core.events import EventBus
from build_orchestrator.core.failures import FailureHandler
from build_orchestrator.core.lifecycle import (
    IllegalTransitionError,
    LifecycleState,
    TaskLifecycle,
    Transition,
)
from build_orchestrator.core.merge import MergeCoordinator
from build_orchestrator.core.messages import (
    AgentExit,
    AgentOutput,
    InactivityCheck,
    KillAgent,
    MergerFinished,
    Nudge,
    Recover,
    Stop,
    StopTask,
    TestsFinished,
)
from build_orchestrator.core.phases import PhaseExecutor
from build_orchestrator.core.ready import resolve_ready_tasks
from build_orchestrator.core.recovery import RecoveryService
from build_orchestrator.core.sessions import archive_session, delete_assignment, delete_heartbeat
from build_orchestrator.core.slots import AgentSlot, SlotManager
from build_orchestrator.core.state import OrchestratorRegistry, OrchestratorState
from build_orchestrator.core.testing import TestRunner
from build_orchestrator.db.engine import Database
from build_orchestrator.db.models import Project, Task

logger = logging.getLogger(__name__)

OUTPUT_TAIL_CHARS = 2000


class Orchestrator:
    def __init__(
        self,
        config: Config,
        database: Database | None = None,
        spawner: AgentSpawner | None = None,
        test_runner: TestRunner | None = None,
        bus: EventBus | None = None,
        threaded: bool = True,
    ):
        self.config = config
        self.database = database or Database(config.db_path)
        self.spawner = spawner or AgentSpawner(heartbeat_interval=config.heartbeat_interval)
        self.test_runner = test_runner or TestRunner(timeout=config.test_timeout)
        self.bus = bus or EventBus()
        self.threaded = threaded

        self.registry = OrchestratorRegistry()
        self.slot_manager = SlotManager(kill=self.spawner.kill)
        self.phases = PhaseExecutor(self)
        self.failures = FailureHandler(self)
        self.merger = MergeCoordinator(self)
        self.recovery = RecoveryService(self)

        self._queues: dict[str, queue.Queue] = {}
        self._workers: dict[str, threading.Thread] = {}
        self._lock = threading.Lock()
        self._monitor = LoopMonitor(self)

    @property
    def db(self):
        return self.database.conn

    # ── Collaborators ───────────────────────────────────────────────────────

    def get_project(self, project_id: str) -> Project:
        project = projects_mod.get_project(self.db, project_id)
        if not project:
            raise ValueError(f"Project not found: {project_id}")
        return project

    def branches(self, project: Project) -> BranchManager:
        return BranchManager(project.repo_path, self.config.worktree_dir, project.default_branch)

    def agent_config(self) -> AgentConfig:
        return AgentConfig(command=self.config.agent_command, model=self.config.agent_default_model)

    def new_lifecycle(self, project_id: str, task_id: str, attempt: int) -> TaskLifecycle:
        def on_transition(t: Transition):
            state = self.registry.get(project_id)
            if state is not None:
                if t.to_state == LifecycleState.COMPLETE:
                    state.counters.total_done += 1
                elif t.to_state == LifecycleState.FAIL and t.count_failure:
                    state.counters.total_failed += 1
            tasks_mod.record_event(
                self.db, t.task_id, "lifecycle", t.from_state.value, f"{t.to_state.value} (attempt {t.attempt})"
            )
            self.bus.broadcast(
                project_id,
                events.EXECUTE_STATUS,
                task_id=t.task_id,
                attempt=t.attempt,
                state=t.to_state.value,
            )
            if state is not None and t.to_state in (LifecycleState.COMPLETE, LifecycleState.FAIL):
                self.persist_counters(state)

        return TaskLifecycle(task_id, attempt, on_transition=on_transition)

    def persist_counters(self, state: OrchestratorState):
        try:
            projects_mod.save_counters(self.db, state.counters)
        except Exception:
            logger.exception("Could not persist counters for %s", state.project_id)

    # ── Messaging ───────────────────────────────────────────────────────────

    def post(self, project_id: str, msg):
        q = self._queues.get(project_id)
        if q is None:
            logger.debug("Dropping %s for stopped project %s", type(msg).__name__, project_id)
            return
        q.put(msg)

    def nudge(self, project_id: str, reason: str = ""):
        """Idempotent wake-up: ask the scheduler to look for work."""
        self.post(project_id, Nudge(reason))

    def run_pending(self, project_id: str, max_messages: int = 1000) -> int:
        """Drain the project's queue on the calling thread. Returns messages handled."""
        q = self._queues.get(project_id)
        handled = 0
        while q is not None and handled < max_messages:
            try:
                msg = q.get_nowait()
            except queue.Empty:
                break
            handled += 1
            if self.dispatch(project_id, msg):
                break
        return handled

    def dispatch(self, project_id: str, msg) -> bool:
        """Handle one message. True when the project's worker should exit."""
        state = self.registry.get(project_id)
        if state is None:
            return True
        state.iteration_started_at = time.monotonic()
        try:
            return self._handle(project_id, state, msg)
        except IllegalTransitionError as e:
            logger.warning("%s", e)
        except Exception:
            logger.exception("Error handling %s for project %s", type(msg).__name__, project_id)
            state.backoff_until = time.monotonic() + self.config.loop_error_backoff
        finally:
            state.iteration_started_at = None
        return False

    def _handle(self, project_id: str, state: OrchestratorState, msg) -> bool:
        if isinstance(msg, Stop):
            self._stop(project_id, state)
            return True
        project = self.get_project(project_id)
        if isinstance(msg, Nudge):
            self._schedule(project, state)
        elif isinstance(msg, Recover):
            result = self.recovery.run_full_recovery(project, msg.include_assignments)
            if result.requeued:
                state.counters.total_failed += len(result.requeued)
                self.persist_counters(state)
        elif isinstance(msg, AgentOutput):
            self.phases.on_agent_output(project, state, msg)
        elif isinstance(msg, AgentExit):
            self.phases.on_agent_exit(project, state, msg)
        elif isinstance(msg, TestsFinished):
            self.phases.on_tests_finished(project, state, msg)
        elif isinstance(msg, MergerFinished):
            self.merger.on_merger_finished(project, state, msg)
        elif isinstance(msg, InactivityCheck):
            self.phases.on_inactivity_check(project, state, msg)
        elif isinstance(msg, KillAgent):
            self._kill(state, msg.task_id)
        elif isinstance(msg, StopTask):
            self._stop_task(project, state, msg.task_id, msg.reason)
        else:
            logger.warning("Unknown message %r", msg)
        return False

    # ── Scheduling ──────────────────────────────────────────────────────────

    def ready_tasks(self, project_id: str) -> list[Task]:
        state = self.registry.get(project_id)
        active = state.slots.keys() if state else ()
        return resolve_ready_tasks(tasks_mod.list_tasks(self.db, project_id), active)

    def _schedule(self, project: Project, state: OrchestratorState):
        if not state.loop_active or time.monotonic() < state.backoff_until:
            return
        self._claim_inbox(project, state)

        ready = [t for t in self.ready_tasks(project.id) if t.id not in state.deferred_task_ids]
        if state.priority_task_ids:
            wanted = {tid: i for i, tid in enumerate(state.priority_task_ids)}
            first = sorted((t for t in ready if t.id in wanted), key=lambda t: wanted[t.id])
            ready = first + [t for t in ready if t.id not in wanted]

        started = 0
        for task in ready:
            slot = self.slot_manager.try_allocate(project, state, task)
            if not slot:
                break
            if task.id in state.priority_task_ids:
                state.priority_task_ids.remove(task.id)
            self._start_task(project, state, task, slot)
            started += 1

        state.counters.queue_depth = len(ready) - started
        self.persist_counters(state)
        self._broadcast_status(state)

    def _claim_inbox(self, project: Project, state: OrchestratorState):
        for item in tasks_mod.claim_work(self.db, project.id):
            task = tasks_mod.get_task(self.db, item.task_id)
            if task is None:
                continue
            if item.kind == "stop":
                self._stop_task(project, state, task.id, "Stopped by user")
                continue
            state.deferred_task_ids.discard(task.id)
            if item.kind == "unblock":
                if task.status == "blocked":
                    tasks_mod.update_task(self.db, task.id, status="open", block_reason=None)
                    notifications_mod.resolve_for_source(self.db, task.id)
                    tasks_mod.add_comment(self.db, task.id, "Unblocked")
            elif task.id not in state.priority_task_ids:
                state.priority_task_ids.append(task.id)

    def _start_task(self, project: Project, state: OrchestratorState, task: Task, slot: AgentSlot):
        label = state.next_coder_label()
        attempt = task.attempts + 1
        tasks_mod.set_attempts(self.db, task.id, attempt)
        task = tasks_mod.update_task(self.db, task.id, status="in_progress", assignee=label)

        slot.agent_label = label
        slot.attempt = slot.first_attempt = attempt
        slot.lifecycle = self.new_lifecycle(project.id, task.id, attempt)
        slot.lifecycle.start_task()
        logger.info("Starting %s (attempt %d) as %s", task.id, attempt, label)
        self.bus.broadcast(project.id, events.TASK_UPDATED, task_id=task.id, status="in_progress", assignee=label)
        self.phases.start_coding(project, task, slot)

    # ── Operator actions ────────────────────────────────────────────────────

    def _find_slot(self, state: OrchestratorState, agent_id: str) -> AgentSlot | None:
        slot = state.slots.get(agent_id)
        if slot is None:
            slot = next((s for s in state.slots.values() if s.agent_label == agent_id), None)
        return slot

    def _kill(self, state: OrchestratorState, agent_id: str):
        slot = self._find_slot(state, agent_id)
        if slot is None or slot.agent.process is None or slot.agent.exited:
            return
        logger.info("Killing agent %s on %s", slot.agent_label, slot.task_id)
        self.spawner.kill(slot.agent.process)

    def _stop_task(self, project: Project, state: OrchestratorState, task_id: str, reason: str):
        slot = state.slots.get(task_id)
        task = tasks_mod.get_task(self.db, task_id)
        if slot is None:
            return
        if task is not None:
            tasks_mod.add_comment(self.db, task_id, reason)
        if slot.agent.session_id is not None and not slot.agent.exited:
            archive_session(self.db, slot.agent.session_id, "cancelled", summary=reason, output_log=slot.agent.output)
        slot.agent.exited = True
        slot.timers.cancel_all()
        if slot.agent.process is not None:
            self.spawner.kill(slot.agent.process)
        delete_assignment(project.repo_path, task_id, slot.worktree_path)
        if slot.worktree_path:
            delete_heartbeat(slot.worktree_path, task_id)
        if task is not None and task.status == "in_progress":
            tasks_mod.update_task(self.db, task_id, status="open", assignee=None)

        bm = self.branches(project)
        if project.git_working_mode == "branches":
            bm.revert_and_return_to_main(slot.branch_name)
        else:
            bm.remove_task_worktree(task_id)

        self.slot_manager.release(state, task_id)
        # A stopped task is not picked up again until someone asks for it
        state.deferred_task_ids.add(task_id)
        self.bus.broadcast(project.id, events.TASK_UPDATED, task_id=task_id, status="open", assignee=None)
        self.nudge(project.id, "task stopped")

    def _stop(self, project_id: str, state: OrchestratorState):
        project = projects_mod.get_project(self.db, project_id)
        for task_id, slot in list(state.slots.items()):
            slot.timers.cancel_all()
            if slot.agent.process is not None and not slot.agent.exited:
                self.spawner.kill(slot.agent.process)
                slot.agent.exited = True
                if slot.agent.session_id is not None:
                    archive_session(
                        self.db, slot.agent.session_id, "cancelled", summary="Engine stopped", output_log=slot.agent.output
                    )
            task = tasks_mod.get_task(self.db, task_id)
            if task is not None and task.status == "in_progress":
                tasks_mod.update_task(self.db, task_id, status="open", assignee=None)
            if project is not None:
                delete_assignment(project.repo_path, task_id, slot.worktree_path)
            self.slot_manager.release(state, task_id)

        if state.merging_task_id is not None and project is not None:
            self.branches(project).merge_abort()
            state.merging_task_id = None
        state.loop_active = False
        self.persist_counters(state)
        self.registry.remove(project_id)
        with self._lock:
            self._queues.pop(project_id, None)
        logger.info("Engine stopped for project %s", project_id)
        self._broadcast_status(state)

    # ── Public surface ──────────────────────────────────────────────────────

    def ensure_running(self, project_id: str) -> OrchestratorState:
        """Start the project's scheduler if it is not already running."""
        self.get_project(project_id)
        state = self.registry.get_or_create(project_id, projects_mod.load_counters(self.db, project_id))
        with self._lock:
            if state.loop_active:
                return state
            state.loop_active = True
            state.run_id += 1
            self._queues.setdefault(project_id, queue.Queue())
        logger.info("Engine starting for project %s (run %d)", project_id, state.run_id)
        self.post(project_id, Recover(include_assignments=True))
        self.nudge(project_id, "start")
        if self.threaded:
            self._start_worker(project_id, state.run_id)
            self._monitor.start()
        return state

    def restart_loop(self, project_id: str):
        """Abandon a hung iteration and start a fresh worker behind it."""
        state = self.registry.get(project_id)
        if state is None or not state.loop_active:
            return
        with self._lock:
            state.run_id += 1
            state.iteration_started_at = None
        logger.warning("Scheduler for %s was stuck; restarting as run %d", project_id, state.run_id)
        self.post(project_id, Recover(include_assignments=False))
        self.nudge(project_id, "restart")
        if self.threaded:
            self._start_worker(project_id, state.run_id)

    def stop_project(self, project_id: str, timeout: float = 30.0) -> bool:
        if self.registry.get(project_id) is None:
            return False
        self.post(project_id, Stop())
        if self.threaded:
            worker = self._workers.get(project_id)
            if worker is not None:
                worker.join(timeout=timeout)
        else:
            self.run_pending(project_id)
        return True

    def shutdown(self):
        for state in self.registry.all():
            self.stop_project(state.project_id)
        self._monitor.stop()

    def kill_agent(self, project_id: str, agent_id: str) -> bool:
        """Kill the agent working on a task; its exit is handled like a crash."""
        state = self.registry.get(project_id)
        if state is None or self._find_slot(state, agent_id) is None:
            return False
        self.post(project_id, KillAgent(agent_id))
        return True

    def stop_task_and_free_slot(self, project_id: str, task_id: str, reason: str = "Stopped by user") -> bool:
        state = self.registry.get(project_id)
        if state is None or task_id not in state.slots:
            return False
        self.post(project_id, StopTask(task_id, reason))
        return True

    def enqueue_work(self, project_id: str, kind: str, task_id: str):
        if not tasks_mod.get_task(self.db, task_id):
            raise ValueError(f"Task not found: {task_id}")
        item = tasks_mod.enqueue_work(self.db, project_id, kind, task_id)
        self.nudge(project_id, kind)
        return item

    def get_status(self, project_id: str) -> dict:
        state = self.registry.get(project_id)
        if state is None:
            counters = projects_mod.load_counters(self.db, project_id)
            return {
                "project_id": project_id,
                "loop_active": False,
                "run_id": 0,
                "active_tasks": [],
                "queue_depth": counters.queue_depth,
                "total_done": counters.total_done,
                "total_failed": counters.total_failed,
                "pending_work": tasks_mod.count_pending_work(self.db, project_id),
            }
        return self._status_payload(state)

    def _broadcast_status(self, state: OrchestratorState):
        payload = self._status_payload(state)
        project_id = payload.pop("project_id")
        self.bus.broadcast(project_id, events.EXECUTE_STATUS, **payload)

    def _status_payload(self, state: OrchestratorState) -> dict:
        return {
            "project_id": state.project_id,
            "loop_active": state.loop_active,
            "run_id": state.run_id,
            "active_tasks": sorted(state.slots),
            "queue_depth": state.counters.queue_depth,
            "total_done": state.counters.total_done,
            "total_failed": state.counters.total_failed,
            "pending_work": tasks_mod.count_pending_work(self.db, state.project_id),
        }

    def get_active_agents(self, project_id: str | None = None) -> list[dict]:
        if project_id is None:
            states = self.registry.all()
        else:
            state = self.registry.get(project_id)
            states = [state] if state else []
        agents = []
        for state in states:
            for slot in list(state.slots.values()):
                info = slot.to_dict()
                info["project_id"] = state.project_id
                info["output_tail"] = slot.agent.output[-OUTPUT_TAIL_CHARS:]
                agents.append(info)
        return agents

    # ── Worker threads ──────────────────────────────────────────────────────

    def _start_worker(self, project_id: str, generation: int):
        thread = threading.Thread(
            target=self._worker_loop,
            args=(project_id, generation),
            name=f"scheduler-{project_id}-{generation}",
            daemon=True,
        )
        self._workers[project_id] = thread
        thread.start()

    def _worker_loop(self, project_id: str, generation: int):
        q = self._queues.get(project_id)
        if q is None:
            return
        try:
            while True:
                state = self.registry.get(project_id)
                if state is None or state.run_id != generation:
                    return
                try:
                    msg = q.get(timeout=self.config.poll_interval)
                except queue.Empty:
                    msg = Nudge("poll")
                if state.run_id != generation:
                    # A newer worker owns the queue now
                    q.put(msg)
                    return
                if self.dispatch(project_id, msg):
                    return
        finally:
            self.database.close()


class LoopMonitor:
    """Background thread that restarts project schedulers stuck in one iteration."""

    def __init__(self, engine: Orchestrator, check_interval: float | None = None):
        self.engine = engine
        self.check_interval = check_interval or min(30.0, engine.config.loop_stuck_guard / 2)
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="loop-monitor", daemon=True)
        self._thread.start()
        logger.info("Loop monitor started")

    def stop(self):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)

    def _run(self):
        while not self._stop_event.is_set():
            try:
                self.check()
            except Exception:
                logger.exception("Error in loop monitor")
            self._stop_event.wait(self.check_interval)

    def check(self, now: float | None = None) -> list[str]:
        """Restart every scheduler whose current iteration exceeded the guard."""
        now = time.monotonic() if now is None else now
        restarted = []
        for state in self.engine.registry.all():
            started = state.iteration_started_at
            if state.loop_active and started is not None and now - started > self.engine.config.loop_stuck_guard:
                self.engine.restart_loop(state.project_id)
                restarted.append(state.project_id)
        return restarted
