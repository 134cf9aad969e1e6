"""Task Conductor - dependency-aware orchestration of worker tasks."""

__version__ = "0.1.0"

from task_conductor.config import Config
from task_conductor.distributor import Distributor
from task_conductor.orchestrator import Orchestrator
from task_conductor.task_graph import Task, TaskGraph
from task_conductor.worker_pool import CallableWorkerPool, ExecutionOutcome, SimulatedWorkerPool, WorkerPool

__all__ = [
    "CallableWorkerPool",
    "Config",
    "Distributor",
    "ExecutionOutcome",
    "Orchestrator",
    "SimulatedWorkerPool",
    "Task",
    "TaskGraph",
    "WorkerPool",
    "__version__",
]
