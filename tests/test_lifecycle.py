"""Tests for the per-attempt task lifecycle state machine."""

import pytest

from build_orchestrator.core.lifecycle import (
    TRANSITIONS,
    IllegalTransitionError,
    LifecycleState,
    TaskLifecycle,
)
from build_orchestrator.core.results import CodingResult

OK = CodingResult(status="success", summary="done")
FAILED = CodingResult(status="failed")

LEGAL = {
    (LifecycleState.IDLE, "start_task"),
    (LifecycleState.CODING, "enter_review"),
    (LifecycleState.CODING, "complete"),
    (LifecycleState.REVIEW, "complete"),
    (LifecycleState.CODING, "fail"),
    (LifecycleState.REVIEW, "fail"),
}


def _at(state: LifecycleState) -> TaskLifecycle:
    lc = TaskLifecycle("t", 1)
    lc.state = state
    return lc


def _fire(lc: TaskLifecycle, event: str):
    if event == "enter_review":
        return lc.enter_review(OK)
    return getattr(lc, event)()


class TestTransitions:
    def test_happy_path_without_review(self):
        seen = []
        lc = TaskLifecycle("t", 1, on_transition=seen.append)
        lc.start_task()
        lc.complete()
        assert lc.state == LifecycleState.COMPLETE
        assert lc.terminal
        assert [(t.from_state, t.to_state) for t in seen] == [
            (LifecycleState.IDLE, LifecycleState.CODING),
            (LifecycleState.CODING, LifecycleState.COMPLETE),
        ]

    def test_review_path(self):
        lc = TaskLifecycle("t", 2)
        lc.start_task()
        lc.enter_review(OK)
        assert lc.state == LifecycleState.REVIEW
        lc.fail()
        assert lc.state == LifecycleState.FAIL

    def test_enter_review_requires_successful_coding(self):
        lc = TaskLifecycle("t", 1)
        lc.start_task()
        with pytest.raises(IllegalTransitionError):
            lc.enter_review(FAILED)
        assert lc.state == LifecycleState.CODING

    def test_transition_carries_attempt_and_failure_flag(self):
        seen = []
        lc = TaskLifecycle("t", 3, on_transition=seen.append)
        lc.start_task()
        lc.fail(count_failure=False)
        assert seen[-1].attempt == 3
        assert seen[-1].count_failure is False

    @pytest.mark.parametrize("state", list(LifecycleState))
    @pytest.mark.parametrize("event", list(TRANSITIONS))
    def test_only_listed_transitions_are_legal(self, state, event):
        lc = _at(state)
        if (state, event) in LEGAL:
            _fire(lc, event)
            assert lc.state == TRANSITIONS[event][state]
        else:
            with pytest.raises(IllegalTransitionError):
                _fire(lc, event)
            assert lc.state == state

    def test_duplicate_exit_delivery_raises(self):
        lc = TaskLifecycle("t", 1)
        lc.start_task()
        lc.complete()
        with pytest.raises(IllegalTransitionError):
            lc.complete()
        with pytest.raises(IllegalTransitionError):
            lc.fail()

    def test_callback_not_invoked_on_illegal_transition(self):
        seen = []
        lc = TaskLifecycle("t", 1, on_transition=seen.append)
        with pytest.raises(IllegalTransitionError):
            lc.complete()
        assert seen == []
