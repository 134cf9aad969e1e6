import asyncio
from pathlib import Path

import pytest

import task_conductor.config as config_module
from task_conductor.config import Config
from task_conductor.task_graph import Task
from task_conductor.worker_pool import ExecutionOutcome, WorkerPool


class GatedWorkerPool(WorkerPool):
    """Worker pool whose executions finish only when a test releases them."""

    def __init__(self, capacity: dict[str, int] | None = None, worker_types: list[str] | None = None):
        self.started: list[str] = []
        self.aborted: list[str] = []
        self._gates: dict[str, asyncio.Event] = {}
        self._outcomes: dict[str, ExecutionOutcome | BaseException] = {}
        self._capacity = dict(capacity or {})
        self._worker_types = worker_types

    def _gate(self, task_id: str) -> asyncio.Event:
        return self._gates.setdefault(task_id, asyncio.Event())

    def release(self, task_id: str, outcome: ExecutionOutcome | BaseException | None = None) -> None:
        if outcome is not None:
            self._outcomes[task_id] = outcome
        self._gate(task_id).set()

    def fail(self, task_id: str, error: str = "boom") -> None:
        self.release(task_id, ExecutionOutcome.failure(error))

    async def execute(self, task: Task) -> ExecutionOutcome:
        self.started.append(task.id)
        await self._gate(task.id).wait()
        self._gates.pop(task.id, None)
        outcome = self._outcomes.pop(task.id, None)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome or ExecutionOutcome.ok(f"done {task.id}")

    async def abort(self, task_id: str) -> None:
        self.aborted.append(task_id)

    def get_available_capacity(self, worker_type: str) -> int:
        if worker_type in self._capacity:
            return self._capacity[worker_type]
        return super().get_available_capacity(worker_type)

    def worker_types(self) -> list[str]:
        if self._worker_types is not None:
            return list(self._worker_types)
        return super().worker_types()


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Yield to the loop until ``predicate()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.001)


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path: Path) -> Config:
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "absent" / "config.yaml")
    cfg = Config()
    monkeypatch.setattr(config_module, "_config", cfg)
    return cfg


@pytest.fixture
def gated_pool() -> GatedWorkerPool:
    return GatedWorkerPool()
