"""Messages consumed by a project's scheduler worker.

Agent watchers, test threads and timers never touch scheduler state; they
post one of these onto the project's queue instead.
"""

from dataclasses import dataclass

from build_orchestrator.core.testing import TestResults


@dataclass
class Nudge:
    reason: str = ""


@dataclass
class Recover:
    include_assignments: bool = True


@dataclass
class AgentOutput:
    task_id: str
    attempt: int
    text: str


@dataclass
class AgentExit:
    task_id: str
    phase: str
    attempt: int
    exit_code: int | None


@dataclass
class TestsFinished:
    __test__ = False

    task_id: str
    attempt: int
    results: TestResults | None = None
    error: str | None = None


@dataclass
class InactivityCheck:
    task_id: str
    attempt: int


@dataclass
class KillAgent:
    task_id: str


@dataclass
class StopTask:
    task_id: str
    reason: str = "Stopped by user"


@dataclass
class Stop:
    pass


@dataclass
class MergerFinished:
    task_id: str
    attempt: int
    resolved: bool
    files: list[str]
