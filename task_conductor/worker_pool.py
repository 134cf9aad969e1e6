"""Worker pool contract consumed by the execution coordinator.

The pool runs a task somewhere (an external coding agent, a subprocess,
a remote service) and reports the outcome.  The coordinator never
blocks on it: every ``execute`` call is awaited inside its own asyncio
task.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from task_conductor.config import get_config
from task_conductor.logging import get_logger
from task_conductor.task_graph import Task

log = get_logger(__name__)


@dataclass
class ExecutionOutcome:
    """Result reported by a worker for one attempt."""

    success: bool
    output: Any = None
    error: str = ""
    timed_out: bool = False

    @classmethod
    def ok(cls, output: Any = None) -> "ExecutionOutcome":
        return cls(success=True, output=output)

    @classmethod
    def failure(cls, error: str, timed_out: bool = False) -> "ExecutionOutcome":
        return cls(success=False, error=error, timed_out=timed_out)


class WorkerPool(ABC):
    """Abstract execution capability."""

    @abstractmethod
    async def execute(self, task: Task) -> ExecutionOutcome:
        """Run one attempt of ``task`` and report how it went."""

    async def abort(self, task_id: str) -> None:
        """Ask the pool to stop an in-flight execution.  Default: nothing to stop."""
        return None

    def get_available_capacity(self, worker_type: str) -> int:
        """Concurrent executions currently supportable for ``worker_type``."""
        return get_config().capacity_for(worker_type)

    def worker_types(self) -> list[str]:
        return list(get_config().workers.types)


class CallableWorkerPool(WorkerPool):
    """Adapts an ``async def run(task)`` function to the pool contract.

    The callable may return an ``ExecutionOutcome`` or any plain value
    (treated as successful output).  Exceptions propagate to the
    coordinator, which records them as worker failures.
    """

    def __init__(
        self,
        run: Callable[[Task], Awaitable[Any]],
        *,
        capacity: dict[str, int] | None = None,
        worker_types: Iterable[str] | None = None,
        on_abort: Callable[[str], Awaitable[None]] | None = None,
    ):
        self._run = run
        self._capacity = dict(capacity or {})
        self._worker_types = list(worker_types) if worker_types is not None else None
        self._on_abort = on_abort

    async def execute(self, task: Task) -> ExecutionOutcome:
        value = await self._run(task)
        if isinstance(value, ExecutionOutcome):
            return value
        return ExecutionOutcome.ok(value)

    async def abort(self, task_id: str) -> None:
        if self._on_abort is not None:
            await self._on_abort(task_id)

    def get_available_capacity(self, worker_type: str) -> int:
        if worker_type in self._capacity:
            return self._capacity[worker_type]
        return super().get_available_capacity(worker_type)

    def worker_types(self) -> list[str]:
        if self._worker_types is not None:
            return list(self._worker_types)
        return super().worker_types()


class SimulatedWorkerPool(WorkerPool):
    """Dry-run pool: every task succeeds after ``delay`` seconds.

    Tasks listed in ``fail_ids`` fail instead.  Used by ``task-conductor
    run`` to exercise a plan without real workers.
    """

    def __init__(
        self,
        delay: float = 0.0,
        fail_ids: Iterable[str] = (),
        capacity: dict[str, int] | None = None,
    ):
        self.delay = max(0.0, float(delay))
        self.fail_ids = set(fail_ids)
        self._capacity = dict(capacity or {})
        self.executed: list[str] = []
        self.aborted: list[str] = []

    async def execute(self, task: Task) -> ExecutionOutcome:
        self.executed.append(task.id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if task.id in self.fail_ids:
            return ExecutionOutcome.failure(f"simulated failure for {task.id}")
        return ExecutionOutcome.ok(f"[{task.worker_type}] {task.description}".strip())

    async def abort(self, task_id: str) -> None:
        self.aborted.append(task_id)
        log.debug("Simulated abort", task_id=task_id)

    def get_available_capacity(self, worker_type: str) -> int:
        if worker_type in self._capacity:
            return self._capacity[worker_type]
        return super().get_available_capacity(worker_type)
