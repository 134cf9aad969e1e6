"""Dependency graph over tasks with validation and topological queries.

The edge set is fixed at construction; afterwards only task status
changes, and only through the transition helpers below. Status changes
are monotonic: nothing leaves COMPLETED, FAILED or BLOCKED.
"""

from __future__ import annotations

import heapq
import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

from task_conductor.exceptions import (
    CyclicDependencyError,
    DuplicateTaskError,
    InvalidTransitionError,
    TaskExecutionError,
    UnknownDependencyError,
)


# ---------------------------------------------------------------------------
# Task statuses
# ---------------------------------------------------------------------------

PENDING = "pending"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
FAILED = "failed"
BLOCKED = "blocked"

TERMINAL_STATES = frozenset({COMPLETED, FAILED, BLOCKED})

# PENDING -> FAILED only happens through session cancellation.
_ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({IN_PROGRESS, BLOCKED, FAILED}),
    IN_PROGRESS: frozenset({COMPLETED, FAILED}),
    COMPLETED: frozenset(),
    FAILED: frozenset(),
    BLOCKED: frozenset(),
}

DEFAULT_PRIORITY = 3
MIN_PRIORITY = 1
MAX_PRIORITY = 5


# ---------------------------------------------------------------------------
# Task dataclass
# ---------------------------------------------------------------------------


@dataclass
class Task:
    """Single unit of work in the dependency graph.

    ``priority`` runs from 1 (most urgent) to 5.
    """

    id: str
    description: str = ""
    worker_type: str = ""
    dependencies: list[str] = field(default_factory=list)
    optional_dependencies: set[str] = field(default_factory=set)
    priority: int = DEFAULT_PRIORITY
    estimated_duration: float = 0.0  # minutes
    status: str = PENDING
    result: Any = None
    error: str = ""
    failure: TaskExecutionError | None = None
    created_at: float = field(default_factory=time.time)
    sequence: int = 0
    attempts: int = 0
    max_retries: int | None = None  # None defers to the session
    started_at: float = 0.0
    completed_at: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    def is_optional(self, dependency_id: str) -> bool:
        return dependency_id in self.optional_dependencies

    def sort_key(self) -> tuple[int, int]:
        return (self.priority, self.sequence)

    @property
    def error_kind(self) -> str:
        return self.failure.kind if self.failure is not None else ""


# ---------------------------------------------------------------------------
# TaskGraph
# ---------------------------------------------------------------------------


class TaskGraph:
    """DAG of Task nodes.

    Tasks keep their insertion order; ``sequence`` is assigned from it and
    used as the final tie-break everywhere ordering matters.
    """

    def __init__(self, tasks: Iterable[Task] = ()):
        self._tasks: dict[str, Task] = {}
        for index, task in enumerate(tasks):
            if task.id in self._tasks:
                raise DuplicateTaskError(task.id)
            task.sequence = index
            self._tasks[task.id] = task

        self._dependents: dict[str, list[str]] = {tid: [] for tid in self._tasks}
        for tid, task in self._tasks.items():
            for dep_id in task.dependencies:
                if dep_id in self._dependents:
                    self._dependents[dep_id].append(tid)
        self._order: list[str] | None = None

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    @property
    def tasks(self) -> list[Task]:
        return list(self._tasks.values())

    @property
    def task_ids(self) -> list[str]:
        return list(self._tasks.keys())

    def __len__(self) -> int:
        return len(self._tasks)

    def __iter__(self) -> Iterator[Task]:
        return iter(self._tasks.values())

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def dependencies_of(self, task_id: str) -> list[Task]:
        task = self._require(task_id)
        return [self._tasks[dep_id] for dep_id in task.dependencies if dep_id in self._tasks]

    def dependents_of(self, task_id: str) -> list[Task]:
        self._require(task_id)
        return [self._tasks[tid] for tid in self._dependents.get(task_id, [])]

    def _require(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise KeyError(task_id)
        return task

    # ------------------------------------------------------------------
    # Validation / topological sort (Kahn's algorithm)
    # ------------------------------------------------------------------

    def validate(self) -> None:
        """Raise a GraphError if a reference dangles or the graph has a cycle."""
        for tid, task in self._tasks.items():
            for dep_id in task.dependencies:
                if dep_id not in self._tasks:
                    raise UnknownDependencyError(tid, dep_id)
        self._order = self._kahn()

    def _kahn(self) -> list[str]:
        in_degree = {
            tid: sum(1 for dep_id in task.dependencies if dep_id in self._tasks)
            for tid, task in self._tasks.items()
        }
        heap = [
            (task.priority, task.sequence, tid)
            for tid, task in self._tasks.items()
            if in_degree[tid] == 0
        ]
        heapq.heapify(heap)
        order: list[str] = []
        while heap:
            _, _, current = heapq.heappop(heap)
            order.append(current)
            for dependent in self._dependents.get(current, []):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    task = self._tasks[dependent]
                    heapq.heappush(heap, (task.priority, task.sequence, dependent))

        if len(order) < len(self._tasks):
            drained = set(order)
            involved = [tid for tid in self._tasks if tid not in drained]
            raise CyclicDependencyError(involved)
        return order

    def topological_order(self) -> list[Task]:
        """Tasks in dependency order; ties broken by (priority, insertion order)."""
        if self._order is None:
            self.validate()
        return [self._tasks[tid] for tid in self._order or []]

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def _dependency_state(self, task: Task) -> str:
        """Return ``"ready"``, ``"waiting"`` or ``"blocked"`` for a PENDING task."""
        waiting = False
        for dep_id in task.dependencies:
            dep = self._tasks.get(dep_id)
            if dep is None:
                continue
            if task.is_optional(dep_id):
                if not dep.is_terminal():
                    waiting = True
                continue
            if dep.status in (FAILED, BLOCKED):
                return "blocked"
            if dep.status != COMPLETED:
                waiting = True
        return "waiting" if waiting else "ready"

    def get_ready_tasks(
        self,
        on_blocked: Callable[[Task], None] | None = None,
    ) -> list[Task]:
        """Return PENDING tasks whose dependencies are satisfied.

        A PENDING task with a FAILED or BLOCKED non-optional dependency is
        marked BLOCKED instead.  Walking in topological order lets a
        block cascade through the whole subgraph in one call.
        """
        ready: list[Task] = []
        for task in self.topological_order():
            if task.status != PENDING:
                continue
            state = self._dependency_state(task)
            if state == "blocked":
                self.block_task(task.id)
                if on_blocked is not None:
                    on_blocked(task)
            elif state == "ready":
                ready.append(task)
        ready.sort(key=Task.sort_key)
        return ready

    def is_ready(self, task_id: str) -> bool:
        task = self._require(task_id)
        return task.status == PENDING and self._dependency_state(task) == "ready"

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(self, task_id: str, target: str) -> Task:
        task = self._require(task_id)
        if target not in _ALLOWED_TRANSITIONS[task.status]:
            raise InvalidTransitionError(task_id, task.status, target)
        task.status = target
        return task

    def start_task(self, task_id: str) -> Task:
        task = self._transition(task_id, IN_PROGRESS)
        task.started_at = time.monotonic()
        return task

    def complete_task(self, task_id: str, result: Any = None) -> Task:
        task = self._transition(task_id, COMPLETED)
        task.result = result
        task.error = ""
        task.completed_at = time.monotonic()
        return task

    def fail_task(self, task_id: str, error: str = "", failure: TaskExecutionError | None = None) -> Task:
        task = self._transition(task_id, FAILED)
        task.error = error or (failure.reason if failure is not None else "failed")
        task.failure = failure
        task.completed_at = time.monotonic()
        return task

    def block_task(self, task_id: str, reason: str = "") -> Task:
        task = self._transition(task_id, BLOCKED)
        if not reason:
            failed = [
                dep_id
                for dep_id in task.dependencies
                if not task.is_optional(dep_id)
                and self._tasks.get(dep_id) is not None
                and self._tasks[dep_id].status in (FAILED, BLOCKED)
            ]
            reason = f"dependency_failed: {', '.join(failed)}" if failed else "dependency_failed"
        task.error = reason
        task.completed_at = time.monotonic()
        return task

    def block_dependents(self, task_id: str) -> list[Task]:
        """Block every PENDING dependent reachable through non-optional edges."""
        blocked: list[Task] = []
        stack = [task_id]
        while stack:
            current = stack.pop()
            for dependent_id in self._dependents.get(current, []):
                dependent = self._tasks[dependent_id]
                if dependent.status != PENDING or dependent.is_optional(current):
                    continue
                self.block_task(dependent_id)
                blocked.append(dependent)
                stack.append(dependent_id)
        return blocked

    # ------------------------------------------------------------------
    # Graph-level queries
    # ------------------------------------------------------------------

    @property
    def is_complete(self) -> bool:
        """All tasks are in a terminal state."""
        return all(task.is_terminal() for task in self._tasks.values())

    def counts(self) -> dict[str, int]:
        result = {PENDING: 0, IN_PROGRESS: 0, COMPLETED: 0, FAILED: 0, BLOCKED: 0}
        for task in self._tasks.values():
            result[task.status] += 1
        return result

    def execution_levels(self) -> list[list[str]]:
        """Group tasks into batches that could run together (by dependency depth)."""
        order = self.topological_order()
        depth: dict[str, int] = {}
        for task in order:
            depth[task.id] = 1 + max(
                (depth[dep_id] for dep_id in task.dependencies if dep_id in depth),
                default=-1,
            )
        levels: list[list[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
        for task in order:
            levels[depth[task.id]].append(task.id)
        return levels

    def critical_path(self) -> list[str]:
        """Longest chain by estimated duration."""
        best: dict[str, float] = {}
        previous: dict[str, str | None] = {}
        for task in self.topological_order():
            start = 0.0
            prev: str | None = None
            for dep_id in task.dependencies:
                if dep_id in best and best[dep_id] > start:
                    start = best[dep_id]
                    prev = dep_id
            best[task.id] = start + task.estimated_duration
            previous[task.id] = prev
        if not best:
            return []
        end = max(best, key=lambda tid: (best[tid], -self._tasks[tid].sequence))
        path: list[str] = []
        node: str | None = end
        while node is not None:
            path.append(node)
            node = previous[node]
        path.reverse()
        return path

    def estimated_duration(self, parallel: bool = True) -> float:
        """Estimated minutes: critical path length, or the plain sum when serial."""
        if not parallel:
            return sum(task.estimated_duration for task in self._tasks.values())
        return sum(self._tasks[tid].estimated_duration for tid in self.critical_path())

    def bottlenecks(self, threshold: int = 3) -> list[str]:
        """Tasks with at least ``threshold`` direct dependents."""
        return [tid for tid, deps in self._dependents.items() if len(deps) >= threshold]

    def get_results(self) -> dict[str, dict[str, Any]]:
        """Collect results from all tasks."""
        results: dict[str, dict[str, Any]] = {}
        for tid, task in self._tasks.items():
            results[tid] = {
                "description": task.description,
                "worker_type": task.worker_type,
                "status": task.status,
                "result": task.result,
                "error": task.error,
                "error_kind": task.error_kind,
                "attempts": task.attempts,
            }
        return results
