"""Normalization of agent result.json payloads.

Agents write free-form JSON. Everything downstream works on exactly one of
CodingResult, ReviewResult or NoResult; anything that cannot be read as the
expected shape becomes NoResult.
"""

from dataclasses import dataclass, field
from typing import Any

_CODING_STATUS = {
    "success": "success",
    "succeeded": "success",
    "completed": "success",
    "complete": "success",
    "done": "success",
    "failed": "failed",
    "failure": "failed",
    "fail": "failed",
    "error": "failed",
    "partial": "partial",
}

_REVIEW_STATUS = {
    "approved": "approved",
    "approve": "approved",
    "pass": "approved",
    "passed": "approved",
    "rejected": "rejected",
    "reject": "rejected",
    "changes_requested": "rejected",
    "request_changes": "rejected",
}


@dataclass
class OpenQuestion:
    id: str
    text: str


@dataclass
class CodingResult:
    status: str
    summary: str = ""
    files_changed: list[str] = field(default_factory=list)
    tests_written: int = 0
    tests_passed: int = 0
    notes: str = ""
    open_questions: list[OpenQuestion] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


@dataclass
class ReviewResult:
    status: str
    summary: str = ""
    issues: list[str] = field(default_factory=list)
    notes: str = ""

    @property
    def approved(self) -> bool:
        return self.status == "approved"

    def feedback(self) -> str:
        parts = [self.summary] if self.summary else []
        if self.issues:
            parts.append("\n".join(f"- {issue}" for issue in self.issues))
        if self.notes:
            parts.append(self.notes)
        return "\n\n".join(parts) or "Review rejected without details"


@dataclass
class NoResult:
    reason: str


def _first(data: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return "\n".join(str(v) for v in value)
    return str(value)


def _parse_questions(raw: Any) -> list[OpenQuestion]:
    if not isinstance(raw, list):
        return []
    questions = []
    for i, item in enumerate(raw, start=1):
        if isinstance(item, str) and item.strip():
            questions.append(OpenQuestion(id=f"q{i}", text=item.strip()))
        elif isinstance(item, dict):
            text = _as_text(_first(item, "text", "question")).strip()
            if text:
                questions.append(OpenQuestion(id=str(item.get("id") or f"q{i}"), text=text))
    return questions


def parse_coding_result(raw: Any) -> CodingResult | NoResult:
    if raw is None:
        return NoResult("Agent did not write result.json")
    if not isinstance(raw, dict):
        return NoResult("result.json is not a JSON object")
    status = _CODING_STATUS.get(str(raw.get("status", "")).strip().lower())
    if status is None:
        return NoResult(f"Unrecognized coding status: {raw.get('status')!r}")

    files = _first(raw, "files_changed", "filesChanged", default=[])
    return CodingResult(
        status=status,
        summary=_as_text(raw.get("summary")),
        files_changed=[str(f) for f in files] if isinstance(files, list) else [],
        tests_written=_as_int(_first(raw, "tests_written", "testsWritten")),
        tests_passed=_as_int(_first(raw, "tests_passed", "testsPassed")),
        notes=_as_text(raw.get("notes")),
        open_questions=_parse_questions(_first(raw, "open_questions", "openQuestions")),
    )


def parse_review_result(raw: Any) -> ReviewResult | NoResult:
    if raw is None:
        return NoResult("Reviewer did not write result.json")
    if not isinstance(raw, dict):
        return NoResult("result.json is not a JSON object")
    status = _REVIEW_STATUS.get(str(raw.get("status", "")).strip().lower())
    if status is None:
        return NoResult(f"Unrecognized review status: {raw.get('status')!r}")

    issues = _first(raw, "issues", "comments", default=[])
    if isinstance(issues, str):
        issues = [issues]
    return ReviewResult(
        status=status,
        summary=_as_text(raw.get("summary")),
        issues=[_as_text(i) for i in issues] if isinstance(issues, list) else [],
        notes=_as_text(raw.get("notes")),
    )
