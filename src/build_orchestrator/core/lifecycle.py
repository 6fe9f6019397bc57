"""Per-attempt task lifecycle: idle -> coding -> review -> complete | fail."""

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class LifecycleState(enum.Enum):
    IDLE = "idle"
    CODING = "coding"
    REVIEW = "review"
    COMPLETE = "complete"
    FAIL = "fail"


class IllegalTransitionError(Exception):
    """Raised when an event is not allowed from the current lifecycle state."""

    def __init__(self, task_id: str, event: str, state: LifecycleState):
        super().__init__(f"Illegal transition for {task_id}: {event} from {state.value}")
        self.task_id = task_id
        self.event = event
        self.state = state


TRANSITIONS: dict[str, dict[LifecycleState, LifecycleState]] = {
    "start_task": {LifecycleState.IDLE: LifecycleState.CODING},
    "enter_review": {LifecycleState.CODING: LifecycleState.REVIEW},
    "complete": {
        LifecycleState.CODING: LifecycleState.COMPLETE,
        LifecycleState.REVIEW: LifecycleState.COMPLETE,
    },
    "fail": {
        LifecycleState.CODING: LifecycleState.FAIL,
        LifecycleState.REVIEW: LifecycleState.FAIL,
    },
}


def next_state(state: LifecycleState, event: str) -> LifecycleState | None:
    return TRANSITIONS.get(event, {}).get(state)


@dataclass
class Transition:
    task_id: str
    attempt: int
    event: str
    from_state: LifecycleState
    to_state: LifecycleState
    count_failure: bool = True


class TaskLifecycle:
    """State machine for one attempt at one task.

    ``on_transition`` is called after every successful transition; callers use
    it to broadcast status, write the audit trail and bump counters.
    """

    def __init__(self, task_id: str, attempt: int, on_transition: Callable[[Transition], None] | None = None):
        self.task_id = task_id
        self.attempt = attempt
        self.state = LifecycleState.IDLE
        self._on_transition = on_transition

    def _fire(self, event: str, count_failure: bool = True) -> LifecycleState:
        target = next_state(self.state, event)
        if target is None:
            raise IllegalTransitionError(self.task_id, event, self.state)
        transition = Transition(self.task_id, self.attempt, event, self.state, target, count_failure)
        self.state = target
        logger.debug("%s attempt %d: %s -> %s", self.task_id, self.attempt, transition.from_state.value, target.value)
        if self._on_transition:
            self._on_transition(transition)
        return target

    def start_task(self) -> LifecycleState:
        return self._fire("start_task")

    def enter_review(self, coding_result) -> LifecycleState:
        """Move to review. Only a successful coding result may be reviewed."""
        if not getattr(coding_result, "succeeded", False):
            raise IllegalTransitionError(self.task_id, "enter_review", self.state)
        return self._fire("enter_review")

    def complete(self) -> LifecycleState:
        return self._fire("complete")

    def fail(self, count_failure: bool = True) -> LifecycleState:
        """Terminal failure. ``count_failure=False`` is used for blocked-on-question exits."""
        return self._fire("fail", count_failure=count_failure)

    @property
    def terminal(self) -> bool:
        return self.state in (LifecycleState.COMPLETE, LifecycleState.FAIL)
