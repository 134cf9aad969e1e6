"""Custom exceptions for Task Conductor."""


class TaskConductorError(Exception):
    """Base exception for Task Conductor."""

    pass


class ConfigurationError(TaskConductorError):
    """Configuration-related errors."""

    pass


class GraphError(TaskConductorError):
    """Task graph construction or validation errors."""

    pass


class CyclicDependencyError(GraphError):
    """The dependency relation contains a cycle."""

    def __init__(self, involved_ids: list[str]):
        super().__init__(f"Cyclic dependency between tasks: {', '.join(involved_ids)}")
        self.involved_ids = list(involved_ids)


class UnknownDependencyError(GraphError):
    """A task depends on an id that is not in the graph."""

    def __init__(self, task_id: str, missing_id: str):
        super().__init__(f"Task '{task_id}' depends on unknown task '{missing_id}'")
        self.task_id = task_id
        self.missing_id = missing_id


class DuplicateTaskError(GraphError):
    """Two tasks share the same id."""

    def __init__(self, task_id: str):
        super().__init__(f"Duplicate task id: {task_id}")
        self.task_id = task_id


class InvalidTransitionError(GraphError):
    """A status change that the task lifecycle does not allow."""

    def __init__(self, task_id: str, current: str, target: str):
        super().__init__(f"Task '{task_id}' cannot move from {current} to {target}")
        self.task_id = task_id
        self.current = current
        self.target = target


class DecompositionError(TaskConductorError):
    """Raw decomposition input could not be turned into tasks."""

    pass


class EmptyInputError(DecompositionError):
    """No usable tasks in the decomposition input."""

    def __init__(self, message: str = "Decomposition produced no usable tasks"):
        super().__init__(message)


class TaskExecutionError(TaskConductorError):
    """Failure local to a single task execution."""

    kind = "execution"

    def __init__(self, task_id: str, message: str):
        super().__init__(f"Task '{task_id}' failed: {message}")
        self.task_id = task_id
        self.reason = message


class WorkerFailureError(TaskExecutionError):
    """The worker reported a failure or raised."""

    kind = "worker_failure"


class TaskTimeoutError(TaskExecutionError):
    """The worker pool gave up on the task after its timeout."""

    kind = "timeout"

    def __init__(self, task_id: str):
        super().__init__(task_id, "timeout")


class TaskCancelledError(TaskExecutionError):
    """The task was cancelled with its session."""

    kind = "cancelled"

    def __init__(self, task_id: str):
        super().__init__(task_id, "cancelled")


class MessageBusError(TaskConductorError):
    """Message bus errors (never fatal to orchestration)."""

    pass


class RecipientNotFoundError(MessageBusError):
    """Message addressed to a participant that is not registered."""

    def __init__(self, recipient: str):
        super().__init__(f"Recipient not found: {recipient}")
        self.recipient = recipient


class MessageTimeoutError(MessageBusError, TimeoutError):
    """No correlated response arrived in time."""

    def __init__(self, correlation_id: str, timeout_ms: float):
        super().__init__(f"Message timeout: no response within {timeout_ms:g}ms")
        self.correlation_id = correlation_id
        self.timeout_ms = timeout_ms


class SessionError(TaskConductorError):
    """Session-related errors."""

    pass


class SessionNotFoundError(SessionError):
    """Session not found."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id
