"""Dependency-graph utilities for todos.

Contains utilities for:
- checking whether a proposed dependency set would close a cycle,
- labelling every task with its level and extracting the critical path,
- inferring the earliest start date of a task from its dependencies,
- listing cycles in an existing graph (integrity report),
- the default display ordering of the todo list.

Everything here is pure: functions take an in-memory snapshot and never touch
the database.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from collections import deque
from typing import Deque, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple


@dataclass(frozen=True)
class TaskNode:
    """Read-only snapshot of a task and the ids it depends on."""
    id: int
    title: str = ""
    due_date: Optional[date] = None
    dependency_ids: Tuple[int, ...] = ()
    created_at: Optional[datetime] = None


@dataclass
class CriticalPath:
    critical_path: List[int] = field(default_factory=list)
    path_length: int = 0
    level_of: Dict[int, int] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, object]:
        return {
            "critical_path": list(self.critical_path),
            "path_length": self.path_length,
            "level_of": dict(self.level_of),
        }


def dependency_map(tasks: Iterable[TaskNode]) -> Dict[int, Tuple[int, ...]]:
    """Return the task id -> dependency ids mapping used by the graph queries."""
    return {t.id: t.dependency_ids for t in tasks}


def would_create_cycle(task_id: int,
                       proposed_dependency_ids: Iterable[int],
                       graph: Mapping[int, Iterable[int]]) -> bool:
    """Return True if making `task_id` depend on every proposed id closes a cycle.

    For each proposed dependency `d` we search from `d` along existing dependency
    edges; reaching `task_id` means the new edge `task_id -> d` would close a loop.
    `d == task_id` is the degenerate self-dependency case.

    Args:
        task_id: id of the task being created or edited.
        proposed_dependency_ids: the complete dependency list being proposed.
        graph: current stored edges, task id -> iterable of dependency ids.

    Returns:
        True when the proposed set must be rejected as a whole.
    """
    # a node explored without reaching task_id can never reach it later
    visited: Set[int] = set()
    for start in proposed_dependency_ids:
        stack = [start]
        while stack:
            node = stack.pop()
            if node == task_id:
                return True
            if node in visited:
                continue
            visited.add(node)
            stack.extend(graph.get(node, ()))
    return False


def analyze(tasks: Sequence[TaskNode]) -> CriticalPath:
    """Compute per-task levels and the critical path.

    Longest-path labelling over the dependency DAG: roots start at level 0 and a
    dependent's level is relaxed to `level + 1` of its deepest prerequisite.

    Ordering is deterministic: roots and dependents are processed in ascending
    id order, a predecessor link is only replaced by a strictly longer chain, and
    when several tasks share the maximum level the lowest id ends the path.

    Dependencies on ids absent from `tasks` are ignored. Tasks that are never
    released (because they sit on or behind a cycle) get no level and are left
    out of the result instead of raising.
    """
    ordered = sorted(tasks, key=lambda t: t.id)
    if not ordered:
        return CriticalPath()

    dependents: Dict[int, List[int]] = {t.id: [] for t in ordered}
    in_degree: Dict[int, int] = {t.id: 0 for t in ordered}
    for t in ordered:
        for dep_id in sorted(set(t.dependency_ids)):
            if dep_id in dependents:
                dependents[dep_id].append(t.id)
                in_degree[t.id] += 1

    queue: Deque[int] = deque()
    best: Dict[int, int] = {}
    parent: Dict[int, Optional[int]] = {}
    for tid, degree in in_degree.items():
        if degree == 0:
            queue.append(tid)
            best[tid] = 0
            parent[tid] = None

    level_of: Dict[int, int] = {}
    while queue:
        current = queue.popleft()
        level_of[current] = best[current]
        for dependent in dependents[current]:
            new_level = best[current] + 1
            if new_level > best.get(dependent, -1):
                best[dependent] = new_level
                parent[dependent] = current
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    if not level_of:
        return CriticalPath()

    max_level = max(level_of.values())
    end = min(tid for tid, lvl in level_of.items() if lvl == max_level)

    path: List[int] = []
    node: Optional[int] = end
    while node is not None:
        path.append(node)
        node = parent[node]
    path.reverse()

    return CriticalPath(
        critical_path=path,
        path_length=max_level + 1,
        level_of=dict(sorted(level_of.items())),
    )


def earliest_start(dependencies: Iterable[TaskNode]) -> Optional[date]:
    """Day after the latest due date among direct dependencies, or None.

    Only one hop is considered: dependencies' own computed start dates are not
    propagated.
    """
    due_dates = [d.due_date for d in dependencies if d.due_date is not None]
    if not due_dates:
        return None
    return max(due_dates) + timedelta(days=1)


def earliest_starts(tasks: Sequence[TaskNode]) -> Dict[int, Optional[date]]:
    """Earliest start for every task, resolving dependencies inside `tasks`."""
    by_id = {t.id: t for t in tasks}
    return {
        t.id: earliest_start(by_id[d] for d in t.dependency_ids if d in by_id)
        for t in tasks
    }


def display_order(tasks: Sequence[TaskNode],
                  starts: Optional[Mapping[int, Optional[date]]] = None) -> List[TaskNode]:
    """Sort tasks for the list view.

    Ascending by earliest start, falling back to the task's own due date. Tasks
    with neither go last. Equal anchors are broken by due date, then by the
    incoming (insertion) order.
    """
    if starts is None:
        starts = earliest_starts(tasks)

    def key(t: TaskNode) -> Tuple[bool, date, bool, date]:
        anchor = starts.get(t.id) or t.due_date
        return (anchor is None, anchor or date.max,
                t.due_date is None, t.due_date or date.max)

    return sorted(tasks, key=key)


def find_cycles(graph: Mapping[int, Iterable[int]]) -> List[List[int]]:
    """List the cycles of an existing dependency graph.

    Args:
        graph: task id -> iterable of dependency ids.

    Returns:
        One entry per distinct cycle, rotated to start at its smallest id and
        closed with it (e.g. [3, 3] for a self-dependency, [1, 2, 3, 1] for a
        3-node loop). Empty for a healthy graph.
    """
    adjacency: Dict[int, List[int]] = {}
    for node, deps in graph.items():
        seen_deps: List[int] = []
        for d in deps:
            if d not in seen_deps:
                seen_deps.append(d)
        adjacency[node] = seen_deps

    visited: Set[int] = set()
    stack: List[int] = []
    cycles: List[List[int]] = []
    seen_cycles: Set[Tuple[int, ...]] = set()

    def dfs(node: int) -> None:
        if node in stack:
            # back-edge
            cycle = stack[stack.index(node):]
            start = cycle.index(min(cycle))
            ordered = cycle[start:] + cycle[:start] + [cycle[start]]
            key = tuple(ordered)
            if key not in seen_cycles:
                seen_cycles.add(key)
                cycles.append(ordered)
            return
        if node in visited:
            return

        visited.add(node)
        stack.append(node)
        for neighbour in adjacency.get(node, []):
            dfs(neighbour)
        stack.pop()

    for n in sorted(adjacency):
        if n not in visited:
            dfs(n)

    return cycles
