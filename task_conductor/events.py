"""Structured lifecycle events and an ordered observer list."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from task_conductor.logging import get_logger

log = get_logger(__name__)

ORCHESTRATION_STARTED = "orchestration_started"
ORCHESTRATION_COMPLETED = "orchestration_completed"
ORCHESTRATION_FAILED = "orchestration_failed"
ORCHESTRATION_CANCELLED = "orchestration_cancelled"
TASK_STARTED = "task_started"
TASK_COMPLETED = "task_completed"
TASK_FAILED = "task_failed"
TASK_BLOCKED = "task_blocked"
TASK_RETRYING = "task_retrying"
PROGRESS_UPDATED = "progress_updated"
MESSAGE_DELIVERY_FAILED = "message_delivery_failed"
MESSAGE_HANDLER_ERROR = "message_handler_error"
CONTEXT_SHARED = "context_shared"


@dataclass(frozen=True)
class LifecycleEvent:
    name: str
    session_id: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


Listener = Callable[[LifecycleEvent], None]


class EventEmitter:
    """Notifies registered listeners in registration order.

    A failing listener is logged and skipped; it never interrupts the
    emitter's caller.
    """

    def __init__(self) -> None:
        self._listeners: list[tuple[Listener, frozenset[str] | None]] = []

    def subscribe(
        self,
        listener: Listener,
        events: Iterable[str] | None = None,
    ) -> Callable[[], None]:
        """Register ``listener``; returns a callable that removes it."""
        entry = (listener, frozenset(events) if events is not None else None)
        self._listeners.append(entry)

        def _unsubscribe() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return _unsubscribe

    def emit(self, name: str, session_id: str = "", **data: Any) -> LifecycleEvent:
        event = LifecycleEvent(name=name, session_id=session_id, data=data)
        for listener, names in list(self._listeners):
            if names is not None and name not in names:
                continue
            try:
                listener(event)
            except Exception as e:
                log.warning("Event listener failed", event_name=name, error=str(e))
        return event

    @property
    def listener_count(self) -> int:
        return len(self._listeners)
