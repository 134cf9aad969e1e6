"""Event-driven execution of a TaskGraph session.

Each session owns one run loop.  Worker executions are asyncio tasks that
only post completion events into the session queue; the loop applies each
event (transition, progress, dependents) and then runs a dispatch pass.
All graph mutation happens on the loop, so no locks are needed.
"""

from __future__ import annotations

import asyncio
import time
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field

from task_conductor.config import Config, get_config
from task_conductor.events import (
    ORCHESTRATION_CANCELLED,
    ORCHESTRATION_COMPLETED,
    ORCHESTRATION_FAILED,
    TASK_BLOCKED,
    TASK_COMPLETED,
    TASK_FAILED,
    TASK_RETRYING,
    TASK_STARTED,
    EventEmitter,
)
from task_conductor.exceptions import (
    SessionNotFoundError,
    TaskCancelledError,
    TaskExecutionError,
    TaskTimeoutError,
    WorkerFailureError,
)
from task_conductor.logging import get_logger
from task_conductor.progress import ProgressAggregator
from task_conductor.session import (
    ADAPTIVE,
    CANCELLED,
    COMPLETED as SESSION_COMPLETED,
    FAILED as SESSION_FAILED,
    RUNNING,
    SEQUENTIAL,
    Session,
    SessionRegistry,
)
from task_conductor.task_graph import BLOCKED, FAILED, IN_PROGRESS, PENDING, Task
from task_conductor.worker_pool import ExecutionOutcome, WorkerPool

log = get_logger(__name__)

CapacityFn = Callable[[str], int]

_FINAL_EVENTS = {
    SESSION_COMPLETED: ORCHESTRATION_COMPLETED,
    SESSION_FAILED: ORCHESTRATION_FAILED,
    CANCELLED: ORCHESTRATION_CANCELLED,
}


@dataclass
class _WorkerEvent:
    """Posted into the session queue by a worker execution or retry timer."""

    task_id: str
    attempt: int
    outcome: ExecutionOutcome | None = None
    retry_due: bool = False


@dataclass
class _SessionRun:
    session: Session
    queue: asyncio.Queue[_WorkerEvent | None] = field(default_factory=asyncio.Queue)
    in_flight: dict[str, asyncio.Task[None]] = field(default_factory=dict)
    in_flight_by_type: Counter[str] = field(default_factory=Counter)
    # IN_PROGRESS tasks whose next attempt may be dispatched
    retry_ready: set[str] = field(default_factory=set)
    retry_timers: dict[str, asyncio.Task[None]] = field(default_factory=dict)
    order_index: dict[str, int] = field(default_factory=dict)
    dispatch_pass: int = 0
    halted: bool = False
    runner: asyncio.Task[None] | None = None

    def has_work(self) -> bool:
        return bool(self.in_flight or self.retry_ready or self.retry_timers)


class ExecutionCoordinator:
    """Runs sessions against a WorkerPool under a dispatch policy."""

    def __init__(
        self,
        worker_pool: WorkerPool,
        progress: ProgressAggregator,
        registry: SessionRegistry,
        events: EventEmitter | None = None,
        config: Config | None = None,
        capacity_fn: CapacityFn | None = None,
    ):
        self._pool = worker_pool
        self._progress = progress
        self._registry = registry
        self._events = events or EventEmitter()
        self._config = config or get_config()
        self._capacity_fn = capacity_fn or worker_pool.get_available_capacity
        self._runs: dict[str, _SessionRun] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, session: Session) -> None:
        """Run the first dispatch pass and hand the session to its run loop.

        Must be called from a running event loop.  The session is RUNNING
        (or already terminal) when this returns.
        """
        run = _SessionRun(session=session)
        if session.mode == SEQUENTIAL:
            run.order_index = {
                task.id: index for index, task in enumerate(session.graph.topological_order())
            }
        self._runs[session.id] = run

        self._dispatch(run)
        session.status = RUNNING
        self._progress.record_session_status(session.id, RUNNING)
        log.info(
            "Session running",
            session_id=session.id,
            mode=session.mode,
            tasks=len(session.graph),
            dispatched=len(run.in_flight),
        )
        run.runner = asyncio.create_task(self._run_loop(run))

    async def run(self, session: Session) -> Session:
        """Start ``session`` and wait until it is terminal."""
        self.start(session)
        return await self.wait(session.id)

    async def wait(self, session_id: str) -> Session:
        run = self._runs.get(session_id)
        if run is None:
            return self._registry.require(session_id)
        if run.runner is not None:
            await asyncio.shield(run.runner)
        return run.session

    def is_active(self, session_id: str) -> bool:
        run = self._runs.get(session_id)
        return run is not None and not run.session.is_terminal()

    async def _run_loop(self, run: _SessionRun) -> None:
        session = run.session
        while not session.is_terminal() and run.has_work():
            event = await run.queue.get()
            if event is None or session.is_terminal():
                continue
            if event.retry_due:
                run.retry_timers.pop(event.task_id, None)
                run.retry_ready.add(event.task_id)
            else:
                self._apply_outcome(run, event)
            self._dispatch(run)

        if not session.is_terminal():
            self._finalize(run)
        self._runs.pop(session.id, None)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _candidates(self, run: _SessionRun) -> list[Task]:
        graph = run.session.graph
        ready = graph.get_ready_tasks(on_blocked=lambda task: self._on_blocked(run, task))
        retries = [graph.get_task(tid) for tid in run.retry_ready]
        candidates = [task for task in [*retries, *ready] if task is not None]
        if run.session.mode == SEQUENTIAL:
            candidates.sort(key=lambda task: run.order_index.get(task.id, len(run.order_index)))
        else:
            candidates.sort(key=Task.sort_key)
        return candidates

    def _dispatch(self, run: _SessionRun) -> int:
        """One dispatch pass: start every candidate the policy has room for."""
        session = run.session
        if session.is_terminal():
            return 0
        run.dispatch_pass += 1
        candidates = self._candidates(run)
        if run.halted:
            # Only attempts already under way may continue.
            candidates = [task for task in candidates if task.id in run.retry_ready]

        limit = session.concurrency_limit
        if session.mode == SEQUENTIAL:
            limit = 1
        capacity: dict[str, int] = {}
        started = 0

        for task in candidates:
            if limit is not None and len(run.in_flight) >= max(1, limit):
                break
            if session.mode == ADAPTIVE:
                if task.worker_type not in capacity:
                    capacity[task.worker_type] = self._slots_for(task.worker_type)
                if run.in_flight_by_type[task.worker_type] >= capacity[task.worker_type]:
                    continue
            self._launch(run, task)
            started += 1
        return started

    def _slots_for(self, worker_type: str) -> int:
        try:
            slots = int(self._capacity_fn(worker_type))
        except Exception as e:
            log.warning("Capacity lookup failed", worker_type=worker_type, error=str(e))
            slots = 0
        # One slot at minimum, otherwise the type could never make progress.
        return max(1, slots)

    def _launch(self, run: _SessionRun, task: Task) -> None:
        session = run.session
        if task.id in run.retry_ready:
            run.retry_ready.discard(task.id)
        else:
            old = task.status
            session.graph.start_task(task.id)
            self._progress.record_transition(session.id, task, old, IN_PROGRESS)

        task.attempts += 1
        run.in_flight_by_type[task.worker_type] += 1
        run.in_flight[task.id] = asyncio.create_task(self._execute(run, task, task.attempts))

        log.info(
            "Task started",
            session_id=session.id,
            task_id=task.id,
            worker_type=task.worker_type,
            attempt=task.attempts,
            dispatch_pass=run.dispatch_pass,
        )
        self._events.emit(
            TASK_STARTED,
            session.id,
            task_id=task.id,
            worker_type=task.worker_type,
            attempt=task.attempts,
            dispatch_pass=run.dispatch_pass,
        )

    async def _execute(self, run: _SessionRun, task: Task, attempt: int) -> None:
        try:
            outcome = await self._pool.execute(task)
            if not isinstance(outcome, ExecutionOutcome):
                outcome = ExecutionOutcome.ok(outcome)
        except asyncio.CancelledError:
            raise
        except (asyncio.TimeoutError, TimeoutError):
            log.warning("Worker timed out", session_id=run.session.id, task_id=task.id)
            outcome = ExecutionOutcome.failure("timeout", timed_out=True)
        except Exception as e:
            log.warning("Worker raised", session_id=run.session.id, task_id=task.id, error=str(e))
            outcome = ExecutionOutcome.failure(str(e) or type(e).__name__)
        run.queue.put_nowait(_WorkerEvent(task_id=task.id, attempt=attempt, outcome=outcome))

    # ------------------------------------------------------------------
    # Completion handling
    # ------------------------------------------------------------------

    def _apply_outcome(self, run: _SessionRun, event: _WorkerEvent) -> None:
        session = run.session
        graph = session.graph
        if run.in_flight.pop(event.task_id, None) is None:
            return
        task = graph.get_task(event.task_id)
        if task is None:
            return
        run.in_flight_by_type[task.worker_type] -= 1
        if task.status != IN_PROGRESS:
            return
        outcome = event.outcome or ExecutionOutcome.failure("no outcome reported")

        if outcome.success:
            graph.complete_task(task.id, outcome.output)
            self._progress.record_transition(session.id, task, IN_PROGRESS, task.status)
            log.info("Task completed", session_id=session.id, task_id=task.id, attempt=event.attempt)
            self._events.emit(TASK_COMPLETED, session.id, task_id=task.id, result=outcome.output)
            return

        failure: TaskExecutionError
        if outcome.timed_out:
            failure = TaskTimeoutError(task.id)
        else:
            failure = WorkerFailureError(task.id, outcome.error or "failed")
        reason = failure.reason
        max_retries = task.max_retries if task.max_retries is not None else session.max_retries
        if task.attempts <= max_retries:
            self._schedule_retry(run, task, reason)
            return

        graph.fail_task(task.id, reason, failure)
        self._progress.record_transition(session.id, task, IN_PROGRESS, FAILED)
        log.warning(
            "Task failed",
            session_id=session.id,
            task_id=task.id,
            attempts=task.attempts,
            error=reason,
            kind=failure.kind,
        )
        self._events.emit(
            TASK_FAILED,
            session.id,
            task_id=task.id,
            error=reason,
            kind=failure.kind,
            attempts=task.attempts,
        )

        for dependent in graph.block_dependents(task.id):
            self._on_blocked(run, dependent)

        if not session.continue_on_error:
            run.halted = True
            log.info("Dispatch halted after failure", session_id=session.id, task_id=task.id)

    def _schedule_retry(self, run: _SessionRun, task: Task, reason: str) -> None:
        session = run.session
        delay = 0.0
        backoff = self._config.orchestrator.retry_backoff_seconds
        if backoff > 0:
            delay = backoff * (2 ** (task.attempts - 1))

        log.info(
            "Task retrying",
            session_id=session.id,
            task_id=task.id,
            attempt=task.attempts + 1,
            delay=delay,
            error=reason,
        )
        self._events.emit(
            TASK_RETRYING,
            session.id,
            task_id=task.id,
            attempt=task.attempts + 1,
            error=reason,
            delay=delay,
        )
        if delay <= 0:
            run.retry_ready.add(task.id)
        else:
            run.retry_timers[task.id] = asyncio.create_task(
                self._retry_after(run, task.id, task.attempts + 1, delay)
            )

    async def _retry_after(self, run: _SessionRun, task_id: str, attempt: int, delay: float) -> None:
        await asyncio.sleep(delay)
        run.queue.put_nowait(_WorkerEvent(task_id=task_id, attempt=attempt, retry_due=True))

    def _on_blocked(self, run: _SessionRun, task: Task) -> None:
        session = run.session
        self._progress.record_transition(session.id, task, PENDING, BLOCKED)
        log.info("Task blocked", session_id=session.id, task_id=task.id, reason=task.error)
        self._events.emit(TASK_BLOCKED, session.id, task_id=task.id, reason=task.error)

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def _finalize(self, run: _SessionRun) -> None:
        session = run.session
        counts = session.graph.counts()
        if counts[FAILED]:
            status = SESSION_FAILED
        elif counts[BLOCKED] or counts[PENDING]:
            status = SESSION_FAILED if session.fail_on_blocked else SESSION_COMPLETED
        else:
            status = SESSION_COMPLETED
        self._finish(run, status)

    def _finish(self, run: _SessionRun, status: str) -> None:
        session = run.session
        session.status = status
        session.end_time = time.time()
        session.finished_at = time.monotonic()
        self._progress.record_session_status(session.id, status)

        counts = session.graph.counts()
        log.info(
            "Session finished",
            session_id=session.id,
            status=status,
            duration=round(session.duration, 3),
            **counts,
        )
        self._events.emit(
            _FINAL_EVENTS[status],
            session.id,
            status=status,
            counts=counts,
            results=session.graph.get_results(),
        )

    async def cancel(self, session_id: str) -> bool:
        """Cancel a running session.  Returns False if it was already terminal.

        Statuses flip before the first await, so a concurrent status read
        never sees a half-cancelled session.
        """
        session = self._registry.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.is_terminal():
            return False
        run = self._runs.get(session_id)

        graph = session.graph
        for task in graph.tasks:
            if task.status in (PENDING, IN_PROGRESS):
                old = task.status
                graph.fail_task(task.id, failure=TaskCancelledError(task.id))
                self._progress.record_transition(session_id, task, old, FAILED)

        in_flight: dict[str, asyncio.Task[None]] = {}
        timers: list[asyncio.Task[None]] = []
        if run is not None:
            in_flight = dict(run.in_flight)
            timers = list(run.retry_timers.values())
            run.in_flight.clear()
            run.in_flight_by_type.clear()
            run.retry_ready.clear()
            run.retry_timers.clear()
            self._finish(run, CANCELLED)
            run.queue.put_nowait(None)
        else:
            session.status = CANCELLED
            session.end_time = time.time()
            session.finished_at = time.monotonic()
            self._progress.record_session_status(session_id, CANCELLED)

        for task_id in in_flight:
            try:
                await self._pool.abort(task_id)
            except Exception as e:
                log.warning("Worker abort failed", session_id=session_id, task_id=task_id, error=str(e))

        pending = [*in_flight.values(), *timers]
        for fut in pending:
            if not fut.done():
                fut.cancel()
        for fut in pending:
            try:
                await fut
            except (asyncio.CancelledError, Exception):
                pass
        return True

    async def shutdown(self) -> None:
        """Cancel every active session."""
        for session_id in list(self._runs):
            if self.is_active(session_id):
                await self.cancel(session_id)
        for run in list(self._runs.values()):
            if run.runner is not None and not run.runner.done():
                try:
                    await run.runner
                except (asyncio.CancelledError, Exception):
                    pass
        self._runs.clear()
