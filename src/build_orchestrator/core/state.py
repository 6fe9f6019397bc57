"""Per-project scheduler state and the registry that owns it."""

import threading
from dataclasses import dataclass, field

from build_orchestrator.core.slots import AgentSlot
from build_orchestrator.db.models import Counters

CODER_PREFIX = "coder-"
REVIEWER_PREFIX = "reviewer-"

AGENT_NAMES = [
    "ada", "grace", "alan", "barbara", "edsger", "frances", "ken", "margaret",
    "dennis", "radia", "donald", "hedy", "linus", "sophie", "john", "karen",
]


def agent_name(index: int) -> str:
    """Stable human-friendly name for the index-th agent; wraps with a numeric suffix."""
    base = AGENT_NAMES[index % len(AGENT_NAMES)]
    lap = index // len(AGENT_NAMES)
    return base if lap == 0 else f"{base}-{lap + 1}"


def is_agent_assignee(assignee: str | None) -> bool:
    return bool(assignee) and assignee.startswith((CODER_PREFIX, REVIEWER_PREFIX))


@dataclass
class OrchestratorState:
    project_id: str
    counters: Counters
    loop_active: bool = False
    run_id: int = 0
    slots: dict[str, AgentSlot] = field(default_factory=dict)
    context_cache: dict[str, str] = field(default_factory=dict)
    next_coder_index: int = 0
    next_reviewer_index: int = 0
    # Tasks an operator asked to run next, in request order
    priority_task_ids: list[str] = field(default_factory=list)
    # Escalated tasks wait for the next engine run unless explicitly requested
    deferred_task_ids: set[str] = field(default_factory=set)
    # Task whose merge into base is paused on a conflict; other merges queue behind it
    merging_task_id: str | None = None
    waiting_merges: list[str] = field(default_factory=list)
    backoff_until: float = 0.0
    iteration_started_at: float | None = None

    def next_coder_label(self) -> str:
        label = CODER_PREFIX + agent_name(self.next_coder_index)
        self.next_coder_index += 1
        return label

    def next_reviewer_label(self) -> str:
        label = REVIEWER_PREFIX + agent_name(self.next_reviewer_index)
        self.next_reviewer_index += 1
        return label


class OrchestratorRegistry:
    def __init__(self):
        self._states: dict[str, OrchestratorState] = {}
        self._lock = threading.Lock()

    def get(self, project_id: str) -> OrchestratorState | None:
        with self._lock:
            return self._states.get(project_id)

    def get_or_create(self, project_id: str, counters: Counters) -> OrchestratorState:
        with self._lock:
            state = self._states.get(project_id)
            if state is None:
                state = OrchestratorState(project_id=project_id, counters=counters)
                self._states[project_id] = state
            return state

    def remove(self, project_id: str) -> OrchestratorState | None:
        with self._lock:
            return self._states.pop(project_id, None)

    def all(self) -> list[OrchestratorState]:
        with self._lock:
            return list(self._states.values())
