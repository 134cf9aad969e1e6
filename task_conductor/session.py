"""Execution sessions and the registry that owns them."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from task_conductor.exceptions import SessionNotFoundError
from task_conductor.logging import get_logger
from task_conductor.task_graph import TaskGraph

log = get_logger(__name__)

# Session statuses
INITIALIZING = "initializing"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

TERMINAL_SESSION_STATES = frozenset({COMPLETED, FAILED, CANCELLED})

# Dispatch policies
SEQUENTIAL = "sequential"
PARALLEL = "parallel"
ADAPTIVE = "adaptive"

EXECUTION_MODES = (SEQUENTIAL, PARALLEL, ADAPTIVE)


@dataclass
class Session:
    """One execution run of a TaskGraph under a dispatch policy."""

    id: str
    graph: TaskGraph
    mode: str = PARALLEL
    status: str = INITIALIZING
    start_time: float = field(default_factory=time.time)
    end_time: float | None = None
    concurrency_limit: int | None = None
    continue_on_error: bool = True
    max_retries: int = 0
    fail_on_blocked: bool = True
    distribution: dict[str, Any] = field(default_factory=dict)
    # monotonic timestamp of the terminal transition, for retention
    finished_at: float = 0.0

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATES

    @property
    def duration(self) -> float:
        end = self.end_time if self.end_time is not None else time.time()
        return max(0.0, end - self.start_time)


def new_session_id() -> str:
    return f"orch_{uuid.uuid4().hex[:16]}"


class SessionRegistry:
    """Map of session id to Session, owned by one Orchestrator."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def add(self, session: Session) -> Session:
        self._sessions[session.id] = session
        return session

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def remove(self, session_id: str) -> Session | None:
        return self._sessions.pop(session_id, None)

    def list(self) -> list[Session]:
        return list(self._sessions.values())

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def expired(self, retention_seconds: float) -> list[Session]:
        """Terminal sessions that finished more than ``retention_seconds`` ago."""
        now = time.monotonic()
        return [
            session
            for session in self._sessions.values()
            if session.is_terminal() and (now - session.finished_at) > retention_seconds
        ]
