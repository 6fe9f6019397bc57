"""Run a project's test command against a task's working tree."""

import logging
import re
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_COUNT_RE = re.compile(r"(\d+)\s+(passed|failed|skipped|errors?)\b", re.IGNORECASE)
_TEST_FILE_RE = re.compile(r"(^|/)(test_[^/]+\.py|[^/]+_test\.py|[^/]+\.(test|spec)\.[jt]sx?)$")

MAX_RAW_OUTPUT = 20000


class TestRunnerError(Exception):
    """Raised when the test command cannot be run to completion."""

    __test__ = False


@dataclass
class TestResults:
    __test__ = False

    passed: int = 0
    failed: int = 0
    skipped: int = 0
    exit_code: int = 0
    raw_output: str = ""

    @property
    def ok(self) -> bool:
        return self.failed == 0 and self.exit_code == 0

    def summary(self) -> str:
        return f"{self.passed} passed, {self.failed} failed, {self.skipped} skipped"


def parse_test_output(output: str) -> tuple[int, int, int]:
    """Extract (passed, failed, skipped) from pytest or jest style summaries.

    The last occurrence of each count wins, so jest's "Tests:" line overrides
    its earlier "Test Suites:" line.
    """
    counts = {"passed": 0, "failed": 0, "skipped": 0}
    for number, kind in _COUNT_RE.findall(output):
        kind = kind.lower()
        if kind.startswith("error"):
            counts["failed"] = max(counts["failed"], int(number))
        else:
            counts[kind] = int(number)
    return counts["passed"], counts["failed"], counts["skipped"]


def scoped_test_files(changed_files: list[str]) -> list[str]:
    return [f for f in changed_files if _TEST_FILE_RE.search(f)]


class TestRunner:
    __test__ = False

    def __init__(self, timeout: float = 900.0):
        self.timeout = timeout

    def run_scoped_tests(
        self,
        cwd: str | Path,
        changed_files: list[str],
        command: str | None,
    ) -> TestResults:
        """Run the test command, narrowed to changed test files where the command allows it.

        A ``{files}`` placeholder in the command is replaced by the changed
        test files; with no changed test files the whole suite runs.
        """
        if not command:
            return TestResults(raw_output="No test command configured")

        files = scoped_test_files(changed_files)
        if "{files}" in command:
            command = command.replace("{files}", " ".join(shlex.quote(f) for f in files))
        args = shlex.split(command)
        if not args:
            return TestResults(raw_output="No test command configured")

        logger.info("Running tests in %s: %s", cwd, " ".join(args))
        try:
            proc = subprocess.run(
                args,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise TestRunnerError(f"Test command timed out after {self.timeout:.0f}s") from e
        except OSError as e:
            raise TestRunnerError(f"Could not run test command: {e}") from e

        output = (proc.stdout or "") + (proc.stderr or "")
        passed, failed, skipped = parse_test_output(output)
        if proc.returncode != 0 and failed == 0:
            failed = 1
        return TestResults(
            passed=passed,
            failed=failed,
            skipped=skipped,
            exit_code=proc.returncode,
            raw_output=output[-MAX_RAW_OUTPUT:],
        )
