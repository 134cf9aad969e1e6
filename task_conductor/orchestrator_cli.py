"""Headless runner for task plans.

- Inspect a plan: ``task-conductor plan tasks.yaml``
- Dry-run a plan: ``task-conductor run tasks.yaml --mode adaptive --fail build``
- Programmatic use: ``await run_plan_headless(...)``

Plans are YAML or JSON: either a list of tasks or a mapping with a
``tasks`` list and an optional ``worker_assignments`` mapping.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import yaml

from task_conductor.config import Config, set_config
from task_conductor.distributor import Distributor
from task_conductor.events import (
    ORCHESTRATION_CANCELLED,
    ORCHESTRATION_COMPLETED,
    ORCHESTRATION_FAILED,
    TASK_BLOCKED,
    TASK_COMPLETED,
    TASK_FAILED,
    TASK_RETRYING,
    TASK_STARTED,
    LifecycleEvent,
)
from task_conductor.exceptions import ConfigurationError, TaskConductorError
from task_conductor.logging import configure_logging, get_logger
from task_conductor.orchestrator import Orchestrator
from task_conductor.session import EXECUTION_MODES
from task_conductor.worker_pool import SimulatedWorkerPool

log = get_logger(__name__)


def _print_status(status: str) -> None:
    """Print status updates to stderr (keeps stdout clean for the result)."""
    sys.stderr.write(f"[conductor] {status}\n")
    sys.stderr.flush()


def _print_event(event: LifecycleEvent) -> None:
    data = event.data
    if event.name == TASK_STARTED:
        line = f"  [started] {data['task_id']} ({data['worker_type']}, attempt {data['attempt']})"
    elif event.name == TASK_COMPLETED:
        line = f"  [completed] {data['task_id']}"
    elif event.name == TASK_FAILED:
        line = f"  [failed] {data['task_id']} ({data['kind']}): {data['error']}"
    elif event.name == TASK_BLOCKED:
        line = f"  [blocked] {data['task_id']}: {data['reason']}"
    elif event.name == TASK_RETRYING:
        line = f"  [retrying] {data['task_id']} (attempt {data['attempt']}): {data['error']}"
    elif event.name in (ORCHESTRATION_COMPLETED, ORCHESTRATION_FAILED, ORCHESTRATION_CANCELLED):
        line = f"[conductor] session {data['status']}"
    else:
        return
    sys.stderr.write(line + "\n")
    sys.stderr.flush()


def load_task_file(path: Path | str) -> tuple[list[Any], dict[str, str]]:
    """Read a plan file; returns (raw task list, worker assignments)."""
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Plan file not found: {path}")
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Could not parse plan file {path}: {e}") from e

    assignments: dict[str, str] = {}
    if isinstance(data, dict):
        assignments = {str(k): str(v) for k, v in (data.get("worker_assignments") or {}).items()}
        data = data.get("tasks")
    if data is None:
        data = []
    if not isinstance(data, list):
        raise ConfigurationError(f"Plan file {path} must hold a list of tasks")
    return data, assignments


def _load_config(config_path: str = "") -> Config:
    cfg = Config.from_yaml(Path(config_path)) if config_path else Config.load()
    set_config(cfg)
    return cfg


def describe_plan(plan_path: str, *, config_path: str = "") -> dict[str, Any]:
    """Distribute a plan without running it and report its shape."""
    _load_config(config_path)
    raw_tasks, assignments = load_task_file(plan_path)
    result = Distributor().distribute(raw_tasks, assignments)
    graph = result.graph
    report = result.to_dict()
    report["order"] = [task.id for task in graph.topological_order()]
    report["levels"] = graph.execution_levels()
    report["bottlenecks"] = graph.bottlenecks()
    report["tasks"] = [
        {
            "id": task.id,
            "worker_type": task.worker_type,
            "priority": task.priority,
            "dependencies": list(task.dependencies),
            "estimated_duration": task.estimated_duration,
        }
        for task in graph
    ]
    return report


async def run_plan_headless(
    plan_path: str,
    *,
    mode: str = "",
    config_path: str = "",
    fail_ids: list[str] | None = None,
    delay: float = 0.0,
    max_retries: int | None = None,
    concurrency_limit: int | None = None,
    quiet: bool = False,
) -> dict[str, Any]:
    """Run a plan against the simulated worker pool.

    Returns:
        Dict with ``ok``, ``session_id``, ``status``, ``snapshot``,
        ``results`` and ``error`` (if the plan could not be started).
    """
    cfg = _load_config(config_path)
    result_data: dict[str, Any] = {
        "ok": False,
        "session_id": "",
        "status": "",
        "snapshot": None,
        "results": {},
        "error": "",
    }

    pool = SimulatedWorkerPool(delay=delay, fail_ids=fail_ids or [])
    orchestrator = Orchestrator(pool, config=cfg)
    if not quiet:
        orchestrator.subscribe(_print_event)

    try:
        raw_tasks, assignments = load_task_file(plan_path)
        if not quiet:
            _print_status(f"Running {len(raw_tasks)} task(s) from {plan_path}")
        session_id = await orchestrator.orchestrate(
            raw_tasks,
            assignments,
            mode or None,
            max_retries=max_retries,
            concurrency_limit=concurrency_limit,
        )
        snapshot = await orchestrator.wait(session_id)
        session = orchestrator.get_session(session_id)

        result_data["session_id"] = session_id
        result_data["status"] = snapshot.session_status
        result_data["snapshot"] = snapshot.to_dict()
        result_data["results"] = session.graph.get_results() if session is not None else {}
        result_data["ok"] = snapshot.session_status == "completed"
    except TaskConductorError as e:
        log.error("Plan run failed", plan=plan_path, error=str(e))
        result_data["error"] = str(e)
    finally:
        await orchestrator.shutdown()

    return result_data


def _print_plan(report: dict[str, Any]) -> None:
    print(f"Tasks: {report['task_count']}")
    print(f"Order: {' -> '.join(report['order'])}")
    for index, level in enumerate(report["levels"], start=1):
        print(f"  level {index}: {', '.join(level)}")
    print(f"Critical path: {' -> '.join(report['critical_path'])}")
    print(f"Parallelization factor: {report['parallelization_factor']:.2f}")
    print(
        f"Estimated duration: {report['estimated_parallel_duration']:g} min parallel, "
        f"{report['estimated_total_duration']:g} min sequential"
    )
    if report["bottlenecks"]:
        print(f"Bottlenecks: {', '.join(report['bottlenecks'])}")
    for warning in report["warnings"]:
        print(f"warning: {warning}")


def _print_run(result: dict[str, Any]) -> None:
    snapshot = result["snapshot"] or {}
    print(f"Session {result['session_id']}: {result['status']}")
    print(
        f"  completed {snapshot.get('completed', 0)}/{snapshot.get('total', 0)}, "
        f"failed {snapshot.get('failed', 0)}, blocked {snapshot.get('blocked', 0)}"
    )
    for issue in snapshot.get("issues", []):
        print(f"  {issue['status']}: {issue['task_id']} ({issue['error']})")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="task-conductor",
        description="Inspect and dry-run task dependency plans.",
    )
    parser.add_argument("-c", "--config", default="", help="Path to config YAML.")
    parser.add_argument("--json", action="store_true", dest="json_output", help="Output result as JSON.")
    parser.add_argument("-q", "--quiet", action="store_true", help="Suppress status output.")
    sub = parser.add_subparsers(dest="command", required=True)

    plan = sub.add_parser("plan", help="Validate a plan and show its execution shape.")
    plan.add_argument("file", help="YAML or JSON task list.")

    run = sub.add_parser("run", help="Run a plan against simulated workers.")
    run.add_argument("file", help="YAML or JSON task list.")
    run.add_argument("--mode", choices=EXECUTION_MODES, default="", help="Dispatch policy.")
    run.add_argument("--fail", action="append", default=[], metavar="ID", help="Task id that should fail.")
    run.add_argument("--delay", type=float, default=0.0, help="Simulated seconds per task.")
    run.add_argument("--max-retries", type=int, default=None, help="Extra attempts per failed task.")
    run.add_argument("--concurrency", type=int, default=None, help="Upper bound on tasks in flight.")
    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point for ``task-conductor``."""
    args = build_parser().parse_args(argv)

    if args.config:
        set_config(Config.from_yaml(Path(args.config)))
    configure_logging("ERROR" if args.quiet else None)

    if args.command == "plan":
        try:
            report = describe_plan(args.file, config_path=args.config)
        except TaskConductorError as e:
            sys.stderr.write(f"Error: {e}\n")
            return 1
        if args.json_output:
            print(json.dumps(report, ensure_ascii=False, indent=2))
        else:
            _print_plan(report)
        return 0

    result = asyncio.run(run_plan_headless(
        args.file,
        mode=args.mode,
        config_path=args.config,
        fail_ids=args.fail,
        delay=args.delay,
        max_retries=args.max_retries,
        concurrency_limit=args.concurrency,
        quiet=args.quiet or args.json_output,
    ))

    if args.json_output:
        print(json.dumps(result, ensure_ascii=False, indent=2, default=str))
    elif result["error"]:
        sys.stderr.write(f"Error: {result['error']}\n")
    else:
        _print_run(result)
    return 0 if result["ok"] else 1


def cli_main() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli_main()
