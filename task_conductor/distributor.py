"""Normalize raw decomposition output into a validated TaskGraph.

The reasoning service hands over a loose list of candidate tasks.  This
module makes ids unique, fills defaults, drops dangling references and
reports a few planning metrics before the graph reaches the scheduler.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from task_conductor.config import EstimationConfig, get_config
from task_conductor.exceptions import EmptyInputError
from task_conductor.logging import get_logger
from task_conductor.task_graph import MAX_PRIORITY, MIN_PRIORITY, Task, TaskGraph

log = get_logger(__name__)

# (description, worker_type) -> minutes
DurationEstimator = Callable[[str, str], float]


class RawTask(BaseModel):
    """One candidate task as produced by the decomposition service."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(default="", validation_alias=AliasChoices("id", "task_id", "taskId"))
    description: str = ""
    title: str = ""
    dependencies: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("dependencies", "depends_on", "dependsOn"),
    )
    optional_dependencies: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("optional_dependencies", "optionalDependencies"),
    )
    worker_type: str | None = Field(
        default=None,
        validation_alias=AliasChoices("worker_type", "workerType", "agent"),
    )
    priority: int | None = None
    estimated_duration: float | None = Field(
        default=None,
        validation_alias=AliasChoices("estimated_duration", "estimatedDuration"),
    )
    max_retries: int | None = Field(
        default=None,
        validation_alias=AliasChoices("max_retries", "maxRetries"),
    )
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, (int, float)):
            return str(value)
        return value

    @field_validator("dependencies", "optional_dependencies", mode="before")
    @classmethod
    def _coerce_dependency_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, (str, int)):
            value = [value]
        if isinstance(value, (list, tuple, set)):
            return [str(item) for item in value if item is not None]
        return value

    @property
    def text(self) -> str:
        return (self.description or self.title).strip()


class HeuristicDurationEstimator:
    """Monotonic estimate: a per-type base plus a term growing with text length."""

    def __init__(self, config: EstimationConfig | None = None):
        self.config = config or get_config().distributor.estimation

    def __call__(self, description: str, worker_type: str) -> float:
        cfg = self.config
        base = cfg.base_minutes.get(worker_type, cfg.default_base_minutes)
        minutes = base + (len(description) / 100.0) * cfg.minutes_per_100_chars
        return round(min(minutes, cfg.max_minutes), 1)


@dataclass
class DistributionResult:
    graph: TaskGraph
    warnings: list[str] = field(default_factory=list)
    renamed_ids: list[tuple[str, str]] = field(default_factory=list)
    parallelization_factor: float = 0.0
    critical_path: list[str] = field(default_factory=list)
    estimated_total_duration: float = 0.0
    estimated_parallel_duration: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_count": len(self.graph),
            "warnings": list(self.warnings),
            "renamed_ids": [list(pair) for pair in self.renamed_ids],
            "parallelization_factor": self.parallelization_factor,
            "critical_path": list(self.critical_path),
            "estimated_total_duration": self.estimated_total_duration,
            "estimated_parallel_duration": self.estimated_parallel_duration,
        }


class Distributor:
    """Turns a raw candidate list into a validated TaskGraph."""

    def __init__(
        self,
        duration_estimator: DurationEstimator | None = None,
        default_priority: int | None = None,
        default_worker_type: str | None = None,
    ):
        cfg = get_config()
        self._estimate = duration_estimator or HeuristicDurationEstimator(cfg.distributor.estimation)
        self.default_priority = default_priority or cfg.distributor.default_priority
        self.default_worker_type = default_worker_type or cfg.workers.default_type

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def _parse(self, raw_tasks: Iterable[Any], warnings: list[str]) -> list[tuple[int, RawTask]]:
        parsed: list[tuple[int, RawTask]] = []
        for position, entry in enumerate(raw_tasks, start=1):
            if isinstance(entry, RawTask):
                raw = entry
            elif isinstance(entry, Mapping):
                try:
                    raw = RawTask.model_validate(dict(entry))
                except ValidationError as e:
                    warnings.append(f"entry {position}: invalid task ({e.error_count()} errors), skipped")
                    continue
            else:
                warnings.append(f"entry {position}: not a task mapping, skipped")
                continue

            if not raw.id.strip() and not raw.text:
                warnings.append(f"entry {position}: no id or description, skipped")
                continue
            parsed.append((position, raw))
        return parsed

    # ------------------------------------------------------------------
    # Id assignment
    # ------------------------------------------------------------------

    @staticmethod
    def _assign_ids(
        parsed: list[tuple[int, RawTask]],
        renamed: list[tuple[str, str]],
    ) -> list[str]:
        """Unique ids in first-seen order: ``task-1``, ``task-1-2``, ``task-1-3``..."""
        raw_ids = {raw.id.strip() for _, raw in parsed if raw.id.strip()}
        used: set[str] = set()
        final_ids: list[str] = []
        for position, raw in parsed:
            base = raw.id.strip() or f"task-{position}"
            candidate = base
            if candidate in used:
                suffix = 2
                while f"{base}-{suffix}" in used or f"{base}-{suffix}" in raw_ids:
                    suffix += 1
                candidate = f"{base}-{suffix}"
                renamed.append((base, candidate))
            used.add(candidate)
            final_ids.append(candidate)
        return final_ids

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def distribute(
        self,
        raw_tasks: Iterable[Any] | None,
        worker_assignments: Mapping[str, str] | None = None,
    ) -> DistributionResult:
        """Normalize ``raw_tasks`` and return a validated graph plus a report.

        Raises:
            EmptyInputError: the input is empty or nothing usable remains.
            CyclicDependencyError: the surviving dependencies form a cycle.
        """
        entries = list(raw_tasks or [])
        if not entries:
            raise EmptyInputError("Decomposition input is empty")

        warnings: list[str] = []
        renamed: list[tuple[str, str]] = []
        parsed = self._parse(entries, warnings)
        if not parsed:
            raise EmptyInputError("No usable tasks in decomposition input")

        final_ids = self._assign_ids(parsed, renamed)
        known = set(final_ids)
        assignments = dict(worker_assignments or {})

        tasks: list[Task] = []
        for task_id, (_, raw) in zip(final_ids, parsed):
            dependencies: list[str] = []
            for dep_id in [*raw.dependencies, *raw.optional_dependencies]:
                dep_id = dep_id.strip()
                if dep_id in dependencies:
                    continue
                if dep_id == task_id:
                    warnings.append(f"{task_id}: dropped self-dependency")
                    continue
                if dep_id not in known:
                    warnings.append(f"{task_id}: dropped unknown dependency '{dep_id}'")
                    continue
                dependencies.append(dep_id)
            optional = {d.strip() for d in raw.optional_dependencies} & set(dependencies)

            priority = self.default_priority if raw.priority is None else raw.priority
            if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
                clamped = min(max(priority, MIN_PRIORITY), MAX_PRIORITY)
                warnings.append(f"{task_id}: priority {priority} clamped to {clamped}")
                priority = clamped

            worker_type = (assignments.get(task_id) or raw.worker_type or self.default_worker_type).strip()
            description = raw.text or task_id
            if raw.estimated_duration is not None and raw.estimated_duration >= 0:
                duration = float(raw.estimated_duration)
            else:
                duration = float(self._estimate(description, worker_type))

            metadata = dict(raw.metadata)
            if raw.title and raw.description:
                metadata.setdefault("title", raw.title)

            tasks.append(Task(
                id=task_id,
                description=description,
                worker_type=worker_type,
                dependencies=dependencies,
                optional_dependencies=optional,
                priority=priority,
                estimated_duration=duration,
                max_retries=None if raw.max_retries is None else max(0, raw.max_retries),
                metadata=metadata,
            ))

        graph = TaskGraph(tasks)
        graph.validate()

        independent = sum(1 for task in tasks if not task.dependencies)
        result = DistributionResult(
            graph=graph,
            warnings=warnings,
            renamed_ids=renamed,
            parallelization_factor=independent / max(len(tasks), 1),
            critical_path=graph.critical_path(),
            estimated_total_duration=graph.estimated_duration(parallel=False),
            estimated_parallel_duration=graph.estimated_duration(parallel=True),
        )

        for warning in warnings:
            log.warning("Decomposition input adjusted", detail=warning)
        log.info(
            "Task graph distributed",
            task_count=len(tasks),
            renamed=len(renamed),
            warnings=len(warnings),
            parallelization_factor=round(result.parallelization_factor, 3),
        )
        return result
