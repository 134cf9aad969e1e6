"""Per-session progress snapshots, updated on every status transition.

The coordinator folds each transition in synchronously; readers get the
cached immutable snapshot and never touch raw task state.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from task_conductor.events import PROGRESS_UPDATED, EventEmitter
from task_conductor.exceptions import SessionNotFoundError
from task_conductor.logging import get_logger
from task_conductor.session import (
    CANCELLED,
    COMPLETED as SESSION_COMPLETED,
    FAILED as SESSION_FAILED,
    INITIALIZING,
    TERMINAL_SESSION_STATES,
)
from task_conductor.task_graph import BLOCKED, COMPLETED, FAILED, IN_PROGRESS, PENDING, Task, TaskGraph

log = get_logger(__name__)

_STAGE_FOR_SESSION_STATUS = {
    SESSION_COMPLETED: "completed",
    SESSION_FAILED: "failed",
    CANCELLED: "cancelled",
}


@dataclass(frozen=True)
class WorkerTypeProgress:
    completed: int = 0
    total: int = 0


@dataclass(frozen=True)
class TaskIssue:
    task_id: str
    status: str
    error: str
    kind: str = ""


@dataclass(frozen=True)
class ProgressSnapshot:
    """Point-in-time aggregate view of a session.  Treat as read-only."""

    session_id: str
    total: int
    completed: int
    failed: int
    blocked: int
    in_progress: int
    pending: int
    current_stage: str
    per_worker_type: dict[str, WorkerTypeProgress] = field(default_factory=dict)
    issues: tuple[TaskIssue, ...] = ()
    session_status: str = INITIALIZING

    @property
    def finished(self) -> int:
        return self.completed + self.failed + self.blocked

    @property
    def percent_complete(self) -> float:
        return round(100.0 * self.completed / self.total, 1) if self.total else 100.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "session_status": self.session_status,
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "blocked": self.blocked,
            "in_progress": self.in_progress,
            "pending": self.pending,
            "current_stage": self.current_stage,
            "per_worker_type": {
                wt: {"completed": p.completed, "total": p.total}
                for wt, p in self.per_worker_type.items()
            },
            "issues": [
                {"task_id": i.task_id, "status": i.status, "error": i.error, "kind": i.kind}
                for i in self.issues
            ],
        }


class ProgressSubscription:
    """Change-only stream of snapshots for one session.

    Iterate with ``async for``; the stream ends after the terminal
    snapshot or when the handle is closed.
    """

    def __init__(self, aggregator: "ProgressAggregator", session_id: str):
        self.session_id = session_id
        self._aggregator = aggregator
        self._queue: asyncio.Queue[ProgressSnapshot | None] = asyncio.Queue()
        self._last: ProgressSnapshot | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, snapshot: ProgressSnapshot) -> bool:
        if self._closed or snapshot == self._last:
            return False
        self._last = snapshot
        self._queue.put_nowait(snapshot)
        if snapshot.session_status in TERMINAL_SESSION_STATES:
            self._finish()
        return True

    def _finish(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    def close(self) -> None:
        self._aggregator.unsubscribe(self)

    async def get(self, timeout: float | None = None) -> ProgressSnapshot | None:
        """Next snapshot, or None once the stream has ended."""
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        if item is None:
            # Keep the end marker for later readers.
            self._queue.put_nowait(None)
        return item

    def __aiter__(self) -> "ProgressSubscription":
        return self

    async def __anext__(self) -> ProgressSnapshot:
        item = await self.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> "ProgressSubscription":
        return self

    async def __aexit__(self, *exc: object) -> None:
        self.close()


@dataclass
class _SessionProgress:
    session_id: str
    counts: dict[str, int]
    type_completed: dict[str, int]
    type_total: dict[str, int]
    issues: list[TaskIssue] = field(default_factory=list)
    stage: str = "initializing"
    session_status: str = INITIALIZING
    snapshot: ProgressSnapshot | None = None
    subscriptions: list[ProgressSubscription] = field(default_factory=list)

    def freeze(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            session_id=self.session_id,
            total=sum(self.counts.values()),
            completed=self.counts[COMPLETED],
            failed=self.counts[FAILED],
            blocked=self.counts[BLOCKED],
            in_progress=self.counts[IN_PROGRESS],
            pending=self.counts[PENDING],
            current_stage=self.stage,
            per_worker_type={
                wt: WorkerTypeProgress(completed=self.type_completed.get(wt, 0), total=total)
                for wt, total in self.type_total.items()
            },
            issues=tuple(self.issues),
            session_status=self.session_status,
        )


class ProgressAggregator:
    """One cached ProgressSnapshot per session."""

    def __init__(self, events: EventEmitter | None = None):
        self._events = events
        self._sessions: dict[str, _SessionProgress] = {}

    def initialize(self, session_id: str, graph: TaskGraph) -> ProgressSnapshot:
        counts = {PENDING: 0, IN_PROGRESS: 0, COMPLETED: 0, FAILED: 0, BLOCKED: 0}
        type_total: dict[str, int] = {}
        type_completed: dict[str, int] = {}
        issues: list[TaskIssue] = []
        for task in graph:
            counts[task.status] += 1
            type_total[task.worker_type] = type_total.get(task.worker_type, 0) + 1
            if task.status == COMPLETED:
                type_completed[task.worker_type] = type_completed.get(task.worker_type, 0) + 1
            elif task.status in (FAILED, BLOCKED):
                issues.append(TaskIssue(task.id, task.status, task.error, task.error_kind))
        state = _SessionProgress(
            session_id=session_id,
            counts=counts,
            type_completed=type_completed,
            type_total=type_total,
            issues=issues,
        )
        self._sessions[session_id] = state
        return self._publish(state)

    def record_transition(
        self,
        session_id: str,
        task: Task,
        old_status: str,
        new_status: str,
    ) -> ProgressSnapshot | None:
        """Fold one task status change into the cached snapshot."""
        state = self._sessions.get(session_id)
        if state is None or old_status == new_status:
            return None

        state.counts[old_status] -= 1
        state.counts[new_status] += 1
        total = sum(state.counts.values())

        if new_status == IN_PROGRESS:
            state.stage = f"Executing {task.worker_type} tasks"
        elif new_status == COMPLETED:
            state.type_completed[task.worker_type] = state.type_completed.get(task.worker_type, 0) + 1
            done = state.counts[COMPLETED]
            if done == total:
                state.stage = "completed"
            else:
                state.stage = f"{int(100 * done / total + 0.5)}% completed"
        elif new_status == FAILED:
            state.issues.append(TaskIssue(task.id, FAILED, task.error, task.error_kind))
            state.stage = f"{state.counts[FAILED]} task(s) failed"
        elif new_status == BLOCKED:
            state.issues.append(TaskIssue(task.id, BLOCKED, task.error))

        return self._publish(state)

    def record_session_status(self, session_id: str, status: str) -> ProgressSnapshot | None:
        state = self._sessions.get(session_id)
        if state is None:
            return None
        state.session_status = status
        if status in _STAGE_FOR_SESSION_STATUS:
            state.stage = _STAGE_FOR_SESSION_STATUS[status]
        return self._publish(state)

    def _publish(self, state: _SessionProgress) -> ProgressSnapshot:
        snapshot = state.freeze()
        changed = snapshot != state.snapshot
        state.snapshot = snapshot
        if changed:
            for subscription in list(state.subscriptions):
                subscription._offer(snapshot)
            if snapshot.session_status in TERMINAL_SESSION_STATES:
                state.subscriptions = [s for s in state.subscriptions if not s.closed]
            if self._events is not None:
                self._events.emit(PROGRESS_UPDATED, state.session_id, snapshot=snapshot)
        return snapshot

    # ------------------------------------------------------------------
    # Reads / subscriptions
    # ------------------------------------------------------------------

    def get_snapshot(self, session_id: str) -> ProgressSnapshot | None:
        state = self._sessions.get(session_id)
        return state.snapshot if state is not None else None

    def subscribe(self, session_id: str) -> ProgressSubscription:
        state = self._sessions.get(session_id)
        if state is None:
            raise SessionNotFoundError(session_id)
        subscription = ProgressSubscription(self, session_id)
        if state.snapshot is not None:
            subscription._offer(state.snapshot)
        if not subscription.closed:
            state.subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: ProgressSubscription) -> None:
        state = self._sessions.get(subscription.session_id)
        if state is not None and subscription in state.subscriptions:
            state.subscriptions.remove(subscription)
        subscription._finish()

    def subscriber_count(self, session_id: str) -> int:
        state = self._sessions.get(session_id)
        return len(state.subscriptions) if state is not None else 0

    def evict(self, session_id: str) -> bool:
        state = self._sessions.pop(session_id, None)
        if state is None:
            return False
        for subscription in state.subscriptions:
            subscription._finish()
        log.debug("Progress snapshot evicted", session_id=session_id)
        return True
