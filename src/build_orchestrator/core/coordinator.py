"""Join point for the concurrent test run and review of one coding attempt."""

import logging
from collections.abc import Callable
from dataclasses import dataclass

from build_orchestrator.core.testing import TestResults

logger = logging.getLogger(__name__)


@dataclass
class TestOutcome:
    __test__ = False

    results: TestResults | None = None
    error: str | None = None

    @property
    def passed(self) -> bool:
        return self.error is None and (self.results is None or self.results.ok)


@dataclass
class ReviewOutcome:
    status: str  # approved | rejected | no_result
    feedback: str = ""
    reason: str = ""
    failure_type: str = "no_result"


@dataclass
class Resolution:
    action: str  # merge | fail
    failure_type: str | None = None
    reason: str = ""
    review_feedback: str | None = None
    test_results: TestResults | None = None


def resolve_outcomes(test: TestOutcome, review: ReviewOutcome | None, review_enabled: bool = True) -> Resolution:
    """Decide what happens to an attempt once its tests (and review) are in.

    A failing or broken test run wins over any review verdict.
    """
    results = test.results
    if test.error is not None:
        return Resolution("fail", "test_failure", f"Test runner error: {test.error}", test_results=results)
    if results is not None and not results.ok:
        return Resolution("fail", "test_failure", f"Tests failed: {results.summary()}", test_results=results)
    if not review_enabled:
        return Resolution("merge", test_results=results)
    if review is None:
        raise ValueError("review outcome required when review is enabled")
    if review.status == "approved":
        return Resolution("merge", test_results=results)
    if review.status == "rejected":
        return Resolution(
            "fail",
            "review_rejection",
            "Review rejected",
            review_feedback=review.feedback,
            test_results=results,
        )
    return Resolution(
        "fail",
        review.failure_type or "no_result",
        review.reason or "Reviewer produced no usable result",
        test_results=results,
    )


class PhaseCoordinator:
    """Collects the test and review outcomes and resolves exactly once."""

    def __init__(self, task_id: str, on_resolve: Callable[[Resolution], None], review_enabled: bool = True):
        self.task_id = task_id
        self.review_enabled = review_enabled
        self._on_resolve = on_resolve
        self.test_outcome: TestOutcome | None = None
        self.review_outcome: ReviewOutcome | None = None
        self.resolved = False

    def set_test_outcome(self, outcome: TestOutcome):
        if self.test_outcome is not None:
            logger.warning("Duplicate test outcome for %s ignored", self.task_id)
            return
        self.test_outcome = outcome
        self._maybe_resolve()

    def set_review_outcome(self, outcome: ReviewOutcome):
        if self.review_outcome is not None:
            logger.warning("Duplicate review outcome for %s ignored", self.task_id)
            return
        self.review_outcome = outcome
        self._maybe_resolve()

    def _maybe_resolve(self):
        if self.resolved or self.test_outcome is None:
            return
        if self.review_enabled and self.review_outcome is None:
            return
        self.resolved = True
        self._on_resolve(resolve_outcomes(self.test_outcome, self.review_outcome, self.review_enabled))
