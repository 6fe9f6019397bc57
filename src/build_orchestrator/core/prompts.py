"""Prompt assembly for coding, review and merge agents."""

import sqlite3
from pathlib import Path

from build_orchestrator.core import tasks as tasks_mod
from build_orchestrator.core.agents import AgentConfig
from build_orchestrator.core.sessions import CONFIG_FILE, PROMPT_FILE, RetryContext, write_json_atomic
from build_orchestrator.db.models import Project, Task

MAX_CONTEXT_CHARS = 6000
MAX_DEP_DESCRIPTION = 600
MAX_DIFF_CHARS = 30000
MAX_FEEDBACK_CHARS = 4000
MAX_TEST_OUTPUT_CHARS = 4000


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n... [truncated {len(text) - limit} chars]"


def condensed_context(db: sqlite3.Connection, task: Task) -> str:
    """What the agent should know about the work around this task."""
    parts = []
    if task.parent_task_id and (parent := tasks_mod.get_task(db, task.parent_task_id)):
        parts.append(f"## Parent: {parent.title}\n{_truncate(parent.description, MAX_DEP_DESCRIPTION)}")

    deps = [d for d in (tasks_mod.get_task(db, dep_id) for dep_id in task.depends_on) if d]
    if deps:
        parts.append("## Completed prerequisites")
        for dep in deps:
            line = f"- {dep.title} ({dep.id})"
            if dep.close_reason:
                line += f": {dep.close_reason}"
            parts.append(line)
            if dep.description:
                parts.append("  " + _truncate(dep.description, MAX_DEP_DESCRIPTION).replace("\n", "\n  "))
    return _truncate("\n".join(parts), MAX_CONTEXT_CHARS)


def build_coding_prompt(
    project: Project,
    task: Task,
    context: str,
    result_file: Path,
    retry_context: RetryContext | None = None,
) -> str:
    parts = [f"# Task: {task.title}", f"Task ID: {task.id}"]
    if task.description:
        parts.append(f"\n## Description\n{task.description}")
    parts.append(f"\n## Project\n{project.name} ({project.id}), base branch `{project.default_branch}`")
    if context:
        parts.append(f"\n{context}")

    if retry_context:
        if retry_context.previous_failure:
            parts.append(
                "\n## Previous attempt failed\n"
                + _truncate(retry_context.previous_failure, MAX_FEEDBACK_CHARS)
            )
        if retry_context.previous_test_output:
            parts.append(
                "\n### Test output\n```\n"
                + _truncate(retry_context.previous_test_output, MAX_TEST_OUTPUT_CHARS)
                + "\n```"
            )
        if retry_context.review_feedback:
            parts.append(
                "\n## Review feedback to address\n"
                + _truncate(retry_context.review_feedback, MAX_FEEDBACK_CHARS)
            )
        if retry_context.use_existing_branch:
            parts.append("\nYour earlier work is already on this branch. Build on it.")

    parts.append(
        "\n## Completion\n"
        "Implement the task with tests, and commit your work on the current branch.\n"
        f"When finished, write a JSON object to `{result_file}` with the keys:\n"
        '- "status": "success", "failed" or "partial"\n'
        '- "summary": what you did\n'
        '- "files_changed": list of paths\n'
        '- "tests_written", "tests_passed": integers\n'
        '- "notes": anything the reviewer should know\n'
        'If the task is too ambiguous to implement, do not guess: set "open_questions" to a list of '
        '{"id": ..., "text": ...} objects and stop.'
    )
    return "\n".join(parts)


def build_review_prompt(
    project: Project,
    task: Task,
    coding_summary: str,
    diff: str,
    result_file: Path,
) -> str:
    parts = [f"# Review: {task.title}", f"Task ID: {task.id}"]
    if task.description:
        parts.append(f"\n## Task description\n{task.description}")
    if coding_summary:
        parts.append(f"\n## Implementer's summary\n{coding_summary}")
    parts.append(f"\n## Diff against `{project.default_branch}`\n```diff\n{_truncate(diff, MAX_DIFF_CHARS)}\n```")
    parts.append(
        "\n## Verdict\n"
        "Check the change is correct, complete and tested. Do not modify files.\n"
        f"Write a JSON object to `{result_file}` with the keys:\n"
        '- "status": "approved" or "rejected"\n'
        '- "summary": your assessment\n'
        '- "issues": list of concrete problems (required when rejecting)\n'
        '- "notes": optional'
    )
    return "\n".join(parts)


def build_merge_prompt(task: Task, branch: str, base_branch: str, files: list[str]) -> str:
    listing = "\n".join(f"- {f}" for f in files) or "- (unknown)"
    return (
        f"# Resolve merge conflicts\n"
        f"Merging `{branch}` ({task.title}) into `{base_branch}` stopped on conflicts in:\n"
        f"{listing}\n\n"
        "Resolve every conflict keeping the intent of both sides, stage the files and "
        "commit to conclude the merge. Exit non-zero if you cannot."
    )


def write_prompt_files(directory: Path, prompt: str, agent_config: AgentConfig, **extra) -> Path:
    """Write prompt.md and config.json for an agent run; returns the prompt path."""
    directory.mkdir(parents=True, exist_ok=True)
    prompt_path = directory / PROMPT_FILE
    prompt_path.write_text(prompt, encoding="utf-8")
    write_json_atomic(directory / CONFIG_FILE, {**agent_config.to_dict(), **extra})
    return prompt_path
