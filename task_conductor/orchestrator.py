"""Public entry point: turn task input into a running session and observe it."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from task_conductor.config import Config, get_config
from task_conductor.distributor import Distributor
from task_conductor.events import ORCHESTRATION_STARTED, EventEmitter, Listener
from task_conductor.exceptions import ConfigurationError, GraphError, SessionError, SessionNotFoundError
from task_conductor.execution_coordinator import CapacityFn, ExecutionCoordinator
from task_conductor.logging import get_logger
from task_conductor.message_bus import MessageBus
from task_conductor.progress import ProgressAggregator, ProgressSnapshot, ProgressSubscription
from task_conductor.session import (
    EXECUTION_MODES,
    SEQUENTIAL,
    Session,
    SessionRegistry,
    new_session_id,
)
from task_conductor.task_graph import PENDING, TaskGraph
from task_conductor.worker_pool import SimulatedWorkerPool, WorkerPool

log = get_logger(__name__)


class Orchestrator:
    """Owns the session registry and wires the engine components together.

    One instance per process is typical.  Every component that needs to
    look a session up receives this instance's registry.
    """

    def __init__(
        self,
        worker_pool: WorkerPool | None = None,
        *,
        config: Config | None = None,
        events: EventEmitter | None = None,
        distributor: Distributor | None = None,
        capacity_fn: CapacityFn | None = None,
    ):
        self.config = config or get_config()
        self.events = events or EventEmitter()
        self.worker_pool = worker_pool or SimulatedWorkerPool()
        self.distributor = distributor or Distributor()
        self.registry = SessionRegistry()
        self.progress = ProgressAggregator(events=self.events)
        self.message_bus = MessageBus(
            events=self.events,
            history_limit=self.config.message_bus.history_limit,
            default_timeout_ms=self.config.message_bus.default_timeout_ms,
        )
        self.coordinator = ExecutionCoordinator(
            self.worker_pool,
            self.progress,
            self.registry,
            events=self.events,
            config=self.config,
            capacity_fn=capacity_fn,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def orchestrate(
        self,
        task_input: TaskGraph | Iterable[Any],
        worker_assignments: Mapping[str, str] | None = None,
        mode: str | None = None,
        *,
        continue_on_error: bool | None = None,
        max_retries: int | None = None,
        concurrency_limit: int | None = None,
        fail_on_blocked: bool | None = None,
    ) -> str:
        """Create a session for ``task_input`` and start executing it.

        ``task_input`` is either a TaskGraph or a raw candidate list for
        the Distributor.  Returns once the first dispatch pass has run.

        Raises:
            GraphError: the graph is invalid (cycle, unknown dependency).
            DecompositionError: the raw input holds no usable tasks.
            ConfigurationError: unknown execution mode.
        """
        cfg = self.config.orchestrator
        mode = mode or cfg.default_mode
        if mode not in EXECUTION_MODES:
            raise ConfigurationError(
                f"Unknown execution mode '{mode}' (expected one of: {', '.join(EXECUTION_MODES)})"
            )

        distribution: dict[str, Any] = {}
        if isinstance(task_input, TaskGraph):
            graph = task_input
            graph.validate()
            if any(task.status != PENDING for task in graph):
                raise GraphError("Task graph has already been executed")
            for task_id, worker_type in (worker_assignments or {}).items():
                task = graph.get_task(task_id)
                if task is not None:
                    task.worker_type = worker_type
        else:
            result = self.distributor.distribute(task_input, worker_assignments)
            graph = result.graph
            distribution = result.to_dict()

        if continue_on_error is None:
            continue_on_error = cfg.continue_on_error
        if continue_on_error is None:
            continue_on_error = mode != SEQUENTIAL

        session = Session(
            id=new_session_id(),
            graph=graph,
            mode=mode,
            concurrency_limit=concurrency_limit if concurrency_limit is not None else cfg.concurrency_limit,
            continue_on_error=continue_on_error,
            max_retries=max(0, max_retries if max_retries is not None else cfg.max_retries),
            fail_on_blocked=cfg.fail_on_blocked if fail_on_blocked is None else fail_on_blocked,
            distribution=distribution,
        )
        self.registry.add(session)

        log.info(
            "Orchestration started",
            session_id=session.id,
            mode=mode,
            tasks=len(graph),
            continue_on_error=session.continue_on_error,
            max_retries=session.max_retries,
        )
        self.events.emit(
            ORCHESTRATION_STARTED,
            session.id,
            mode=mode,
            task_ids=graph.task_ids,
            distribution=distribution,
        )
        self.progress.initialize(session.id, graph)
        self.coordinator.start(session)
        return session.id

    def get_status(self, session_id: str) -> ProgressSnapshot | None:
        return self.progress.get_snapshot(session_id)

    def stream_progress(self, session_id: str) -> ProgressSubscription:
        """Subscribe to change-only snapshots; the current one comes first."""
        return self.progress.subscribe(session_id)

    async def cancel(self, session_id: str) -> None:
        if await self.coordinator.cancel(session_id):
            log.info("Orchestration cancelled", session_id=session_id)

    def get_available_worker_types(self) -> list[str]:
        types = self.worker_pool.worker_types()
        return list(types) if types else list(self.config.workers.types)

    def subscribe(self, listener: Listener, events: Iterable[str] | None = None):
        """Register a lifecycle event listener; returns an unsubscribe callable."""
        return self.events.subscribe(listener, events)

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> Session | None:
        return self.registry.get(session_id)

    def list_sessions(self) -> list[Session]:
        return self.registry.list()

    async def wait(self, session_id: str) -> ProgressSnapshot:
        """Wait for the session to reach a terminal status; return the final snapshot."""
        await self.coordinator.wait(session_id)
        snapshot = self.progress.get_snapshot(session_id)
        if snapshot is None:
            raise SessionNotFoundError(session_id)
        return snapshot

    def cleanup(self, session_id: str) -> bool:
        """Drop a terminal session and its progress cache."""
        session = self.registry.require(session_id)
        if not session.is_terminal():
            raise SessionError(f"Session {session_id} is still {session.status}")
        self.registry.remove(session_id)
        self.progress.evict(session_id)
        log.debug("Session cleaned up", session_id=session_id)
        return True

    def evict_expired(self, retention_seconds: float | None = None) -> list[str]:
        """Clean up terminal sessions older than the retention window."""
        if retention_seconds is None:
            retention_seconds = self.config.orchestrator.session_retention_seconds
        evicted = []
        for session in self.registry.expired(retention_seconds):
            self.cleanup(session.id)
            evicted.append(session.id)
        if evicted:
            log.info("Expired sessions evicted", count=len(evicted))
        return evicted

    async def shutdown(self) -> None:
        await self.coordinator.shutdown()
        await self.message_bus.close()
        log.info("Orchestrator shut down", sessions=len(self.registry))
