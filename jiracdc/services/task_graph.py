"""Task graph templates and validation"""

from typing import Dict, List, Sequence, Set

from jiracdc.errors import ValidationError
from jiracdc.services.operation_types import (
    OperationConfig,
    OperationKind,
    OperationStatus,
    Task,
    TaskKind,
)


def _task(kind: TaskKind, description: str, priority: int, dependencies=(), **payload) -> Task:
    return Task(
        id=kind.value,
        name=kind.value,
        kind=kind,
        description=description,
        priority=priority,
        dependencies=list(dependencies),
        payload=payload,
    )


def build_task_graph(kind: OperationKind, config: OperationConfig) -> List[Task]:
    """Return the task list for an operation kind."""
    if kind in (OperationKind.BOOTSTRAP, OperationKind.FORCED_SYNC):
        overwrite = kind == OperationKind.FORCED_SYNC
        init = _task(TaskKind.INIT_REPO, "Clone or open the target repository", 10)
        info = _task(TaskKind.FETCH_PROJECT_INFO, f"Fetch Jira project {config.project_key}", 10)
        sync = _task(
            TaskKind.BOOTSTRAP_SYNC,
            "Write every project issue to the repository",
            5,
            dependencies=[init.id, info.id],
            overwrite=overwrite,
        )
        return [init, info, sync]

    if kind == OperationKind.RECONCILE:
        check = _task(TaskKind.CHECK_SOURCE_UPDATES, "Find issues updated since the last sync", 10)
        update = _task(TaskKind.UPDATE_REPO, "Pull the target repository", 10)
        sync = _task(
            TaskKind.SYNC_UPDATED_ISSUES,
            "Write updated issues to the repository",
            5,
            dependencies=[check.id, update.id],
        )
        return [check, update, sync]

    if kind == OperationKind.CLEANUP:
        identify = _task(TaskKind.IDENTIFY_ORPHANS, "Find issue files no longer present in Jira", 10)
        remove = _task(
            TaskKind.REMOVE_ORPHANS,
            "Delete orphaned issue files",
            5,
            dependencies=[identify.id],
        )
        return [identify, remove]

    raise ValidationError(f"Unsupported operation kind: {kind}")


def execution_order(tasks: Sequence[Task]) -> List[str]:
    """Deterministic topological order (priority first, then id)."""
    by_id: Dict[str, Task] = {task.id: task for task in tasks}
    remaining: Dict[str, Set[str]] = {task.id: set(task.dependencies) for task in tasks}
    order: List[str] = []
    while remaining:
        ready = [task_id for task_id, deps in remaining.items() if not deps]
        if not ready:
            cycle = ", ".join(sorted(remaining))
            raise ValidationError(f"Task graph has a dependency cycle among: {cycle}")
        ready.sort(key=lambda task_id: (-by_id[task_id].priority, task_id))
        for task_id in ready:
            order.append(task_id)
            del remaining[task_id]
        for deps in remaining.values():
            deps.difference_update(ready)
    return order


def validate_task_graph(tasks: Sequence[Task]) -> None:
    """Reject graphs that could never finish: duplicates, dangling or cyclic dependencies."""
    if not tasks:
        raise ValidationError("Operation has no tasks")
    ids: Set[str] = set()
    for task in tasks:
        if task.id in ids:
            raise ValidationError(f"Duplicate task id: {task.id}")
        ids.add(task.id)
    for task in tasks:
        if task.status != OperationStatus.PENDING:
            raise ValidationError(f"Task {task.id} is not pending")
        for dep in task.dependencies:
            if dep == task.id:
                raise ValidationError(f"Task {task.id} depends on itself")
            if dep not in ids:
                raise ValidationError(f"Task {task.id} depends on unknown task {dep}")
    execution_order(tasks)


def runnable_tasks(tasks: Sequence[Task]) -> List[Task]:
    """Pending tasks whose dependencies have all completed, highest priority first."""
    status = {task.id: task.status for task in tasks}
    ready = [
        task
        for task in tasks
        if task.status == OperationStatus.PENDING
        and all(status.get(dep) == OperationStatus.COMPLETED for dep in task.dependencies)
    ]
    return sorted(ready, key=lambda task: (-task.priority, task.id))


def blocked_tasks(tasks: Sequence[Task]) -> List[Task]:
    """Pending tasks that can never run because a dependency failed or was cancelled."""
    status = {task.id: task.status for task in tasks}
    dead = (OperationStatus.FAILED, OperationStatus.CANCELLED)
    return [
        task
        for task in tasks
        if task.status == OperationStatus.PENDING
        and any(status.get(dep) in dead for dep in task.dependencies)
    ]
