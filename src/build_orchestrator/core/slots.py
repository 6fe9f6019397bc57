"""Agent slots: one per running task, bounded per project."""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from build_orchestrator.core.agents import AgentProcess
from build_orchestrator.core.testing import TestResults
from build_orchestrator.db.models import Project, Task

logger = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 200_000


class TimerRegistry:
    """Named background timers owned by one slot."""

    def __init__(self):
        self._timers: dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def start(self, name: str, interval: float, callback: Callable[[], None], repeat: bool = False):
        """Run ``callback`` after ``interval`` seconds (and every interval with ``repeat``).

        Starting a name that is already running replaces it.
        """
        stop = threading.Event()
        with self._lock:
            previous = self._timers.pop(name, None)
            self._timers[name] = stop
        if previous:
            previous.set()

        def run():
            while not stop.wait(interval):
                try:
                    callback()
                except Exception:
                    logger.exception("Timer %s failed", name)
                if not repeat:
                    return

        threading.Thread(target=run, name=f"timer-{name}", daemon=True).start()

    def cancel(self, name: str):
        with self._lock:
            stop = self._timers.pop(name, None)
        if stop:
            stop.set()

    def cancel_all(self):
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for stop in timers:
            stop.set()

    def active(self) -> list[str]:
        with self._lock:
            return sorted(self._timers)


@dataclass
class PhaseResult:
    coding_diff: str = ""
    coding_summary: str = ""
    changed_files: list[str] = field(default_factory=list)
    test_results: TestResults | None = None
    test_output: str = ""


@dataclass
class AgentRun:
    """State of the agent process currently attached to a slot."""

    process: AgentProcess | None = None
    session_id: int | None = None
    started_at: str | None = None
    output: str = ""
    last_output_at: float = field(default_factory=time.monotonic)
    killed_due_to_timeout: bool = False
    exited: bool = False

    def append_output(self, text: str):
        self.output = (self.output + text)[-MAX_OUTPUT_CHARS:]
        self.last_output_at = time.monotonic()

    def mark_started(self, process: AgentProcess, session_id: int | None):
        self.process = process
        self.session_id = session_id
        self.started_at = datetime.now().isoformat()
        self.last_output_at = time.monotonic()


@dataclass
class AgentSlot:
    task_id: str
    title: str
    phase: str = "coding"
    branch_name: str = ""
    worktree_path: str | None = None
    attempt: int = 1
    first_attempt: int = 1
    phase_result: PhaseResult = field(default_factory=PhaseResult)
    infra_retries: int = 0
    timers: TimerRegistry = field(default_factory=TimerRegistry)
    coordinator: object | None = None
    agent_label: str | None = None
    lifecycle: object | None = None
    agent: AgentRun = field(default_factory=AgentRun)
    review_history: list[str] = field(default_factory=list)

    def start_new_run(self):
        self.agent = AgentRun()

    def to_dict(self) -> dict:
        process = self.agent.process
        return {
            "task_id": self.task_id,
            "title": self.title,
            "phase": self.phase,
            "branch_name": self.branch_name,
            "worktree_path": self.worktree_path,
            "attempt": self.attempt,
            "agent": self.agent_label,
            "pid": process.pid if process else None,
            "started_at": self.agent.started_at,
            "state": self.lifecycle.state.value if self.lifecycle else None,
        }


class _Full:
    def __repr__(self):
        return "FULL"

    def __bool__(self):
        return False


FULL = _Full()


class SlotManager:
    """Allocates and frees slots in a project's state."""

    def __init__(self, kill: Callable[[AgentProcess | None], None]):
        self._kill = kill

    @staticmethod
    def capacity(project: Project) -> int:
        # One shared working tree cannot host two branches at once
        if project.git_working_mode == "branches":
            return 1
        return max(1, project.max_concurrent_agents)

    def try_allocate(self, project: Project, state, task: Task) -> AgentSlot | _Full:
        """Claim a slot for ``task``, or FULL when the project is at capacity."""
        if task.id in state.slots:
            raise ValueError(f"Task {task.id} already holds a slot")
        if len(state.slots) >= self.capacity(project):
            return FULL
        slot = AgentSlot(task_id=task.id, title=task.title)
        state.slots[task.id] = slot
        return slot

    def release(self, state, task_id: str):
        """Free a task's slot: cancel its timers and kill any live agent. Idempotent."""
        slot = state.slots.pop(task_id, None)
        state.context_cache.pop(task_id, None)
        if slot is None:
            return
        slot.timers.cancel_all()
        if slot.agent.process is not None and not slot.agent.exited:
            self._kill(slot.agent.process)
        logger.info("Released slot for %s", task_id)
