"""Which tasks may be started right now."""

from collections.abc import Iterable

from build_orchestrator.db.models import Task

_NOT_STARTABLE_STATUS = {"blocked", "closed", "in_progress"}
_NOT_CODABLE_TYPES = {"epic", "chore"}


def resolve_ready_tasks(all_tasks: list[Task], active_task_ids: Iterable[str]) -> list[Task]:
    """Filter a project's tasks down to the startable ones, keeping store order.

    A task is ready when it is open, is neither an epic nor a chore, holds
    no slot, and every task it is blocked by is closed. A blocker that is
    not in ``all_tasks`` counts as not closed.
    """
    active = set(active_task_ids)
    status_by_id = {t.id: t.status for t in all_tasks}
    ready = []
    for task in all_tasks:
        if task.status in _NOT_STARTABLE_STATUS:
            continue
        if task.issue_type in _NOT_CODABLE_TYPES:
            continue
        if task.id in active:
            continue
        if all(status_by_id.get(dep_id) == "closed" for dep_id in task.depends_on):
            ready.append(task)
    return ready
