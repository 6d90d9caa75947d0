"""Task store: reads graph snapshots and applies validated graph mutations."""

import logging
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from django.db import transaction

from .exceptions import (
    CircularDependencyError,
    DependencyDueDateError,
    TaskNotFound,
    TaskValidationError,
)
from .graph import TaskNode, would_create_cycle
from .models import Task

log = logging.getLogger(__name__)

Edge = Task.dependencies.through


def to_node(task: Task) -> TaskNode:
    return TaskNode(
        id=task.id,
        title=task.title,
        due_date=task.due_date,
        dependency_ids=tuple(sorted(d.id for d in task.dependencies.all())),
        created_at=task.created_at,
    )


def fetch_all_tasks() -> List[Task]:
    """Every task with its dependencies resolved, in creation order."""
    return list(Task.objects.prefetch_related("dependencies"))


def fetch_all() -> List[TaskNode]:
    return [to_node(t) for t in fetch_all_tasks()]


def fetch_one(task_id: int) -> Task:
    try:
        return Task.objects.prefetch_related("dependencies").get(pk=task_id)
    except Task.DoesNotExist:
        raise TaskNotFound()


def dependency_graph() -> Dict[int, List[int]]:
    """Stored edges as task id -> dependency ids."""
    graph: Dict[int, List[int]] = {}
    for task_id, dep_id in Edge.objects.values_list("from_task_id", "to_task_id"):
        graph.setdefault(task_id, []).append(dep_id)
    return graph


def _dedupe(ids: Iterable[int]) -> List[int]:
    out: List[int] = []
    for i in ids:
        if i not in out:
            out.append(i)
    return out


def _validate_dependencies(task: Task, dependency_ids: Sequence[int], wording: str) -> List[Task]:
    """Raise unless `task` may depend on exactly `dependency_ids`.

    Checks run against the snapshot visible inside the caller's transaction.
    """
    deps = list(Task.objects.filter(pk__in=dependency_ids))
    missing = set(dependency_ids) - {d.id for d in deps}
    if missing:
        raise TaskValidationError(
            f"Unknown dependency id(s): {', '.join(str(i) for i in sorted(missing))}"
        )

    if would_create_cycle(task.id, dependency_ids, dependency_graph()):
        raise CircularDependencyError()

    if task.due_date is not None:
        for dep in sorted(deps, key=lambda d: d.id):
            if dep.due_date is not None and dep.due_date > task.due_date:
                raise DependencyDueDateError(
                    f'Dependency "{dep.title}" has a due date after the {wording} todo.'
                )
    return deps


def create_task(title: str, due_date: Optional[date] = None,
                dependency_ids: Iterable[int] = ()) -> Task:
    """Create a task and attach its dependencies, or leave no trace at all."""
    if not title or not title.strip():
        raise TaskValidationError("Title is required")
    dependency_ids = _dedupe(dependency_ids)

    try:
        with transaction.atomic():
            task = Task.objects.create(title=title, due_date=due_date)
            if dependency_ids:
                deps = _validate_dependencies(task, dependency_ids, "new")
                task.dependencies.set(deps)
    except TaskValidationError as exc:
        log.warning("rejected new todo %r: %s", title, exc.detail)
        raise

    log.info("created todo %s with dependencies %s", task.id, dependency_ids)
    return fetch_one(task.id)


def replace_dependencies(task_id: int, dependency_ids: Iterable[int]) -> Task:
    """Wholesale replace a task's dependency set after validating it.

    The task row is locked for the check-then-write so concurrent edits of the
    same task are serialized.
    """
    dependency_ids = _dedupe(dependency_ids)
    try:
        with transaction.atomic():
            try:
                task = Task.objects.select_for_update().get(pk=task_id)
            except Task.DoesNotExist:
                raise TaskNotFound()
            deps: List[Task] = []
            if dependency_ids:
                deps = _validate_dependencies(task, dependency_ids, "current")
            task.dependencies.set(deps)
    except TaskValidationError as exc:
        log.warning("rejected dependencies %s for todo %s: %s", dependency_ids, task_id, exc.detail)
        raise

    log.info("todo %s now depends on %s", task_id, dependency_ids)
    return fetch_one(task_id)


def delete_task(task_id: int) -> Tuple[int, str]:
    """Delete a task; dependents simply lose the edge."""
    try:
        task = Task.objects.get(pk=task_id)
    except Task.DoesNotExist:
        raise TaskNotFound()
    title = task.title
    task.delete()
    log.info("deleted todo %s", task_id)
    return task_id, title
