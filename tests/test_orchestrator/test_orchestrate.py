import pytest

from conftest import GatedWorkerPool, wait_until
from task_conductor.events import (
    ORCHESTRATION_COMPLETED,
    ORCHESTRATION_STARTED,
    TASK_COMPLETED,
    TASK_STARTED,
)
from task_conductor.exceptions import (
    ConfigurationError,
    CyclicDependencyError,
    EmptyInputError,
    SessionError,
    SessionNotFoundError,
    UnknownDependencyError,
)
from task_conductor.orchestrator import Orchestrator
from task_conductor.task_graph import Task, TaskGraph
from task_conductor.worker_pool import SimulatedWorkerPool

RAW_PLAN = [
    {"id": "schema", "description": "Design the schema", "worker_type": "architect", "priority": 1},
    {"id": "api", "description": "Build the API", "worker_type": "backend", "dependencies": ["schema"]},
    {"id": "ui", "description": "Build the UI", "worker_type": "frontend", "dependencies": ["schema"]},
    {"id": "tests", "description": "Write tests", "worker_type": "test-writer", "dependencies": ["api", "ui"]},
]


@pytest.mark.asyncio
async def test_orchestrate_raw_plan_to_completion() -> None:
    orchestrator = Orchestrator(SimulatedWorkerPool())
    names: list[str] = []
    orchestrator.subscribe(lambda event: names.append(event.name))

    session_id = await orchestrator.orchestrate(RAW_PLAN, mode="parallel")
    snapshot = await orchestrator.wait(session_id)

    assert snapshot.session_status == "completed"
    assert snapshot.completed == 4
    assert snapshot.current_stage == "completed"
    assert names[0] == ORCHESTRATION_STARTED
    assert names[-1] == ORCHESTRATION_COMPLETED
    assert names.count(TASK_STARTED) == 4
    assert names.count(TASK_COMPLETED) == 4
    session = orchestrator.get_session(session_id)
    assert session.distribution["task_count"] == 4
    assert session.graph.get_task("api").result == "[backend] Build the API"


@pytest.mark.asyncio
async def test_orchestrate_accepts_prebuilt_graph_with_assignments() -> None:
    pool = SimulatedWorkerPool()
    orchestrator = Orchestrator(pool)
    graph = TaskGraph([Task(id="a", description="a", worker_type="cli")])

    session_id = await orchestrator.orchestrate(graph, {"a": "backend"})
    await orchestrator.wait(session_id)

    assert graph.get_task("a").worker_type == "backend"
    assert pool.executed == ["a"]


@pytest.mark.asyncio
async def test_graph_errors_abort_before_a_session_exists() -> None:
    orchestrator = Orchestrator(SimulatedWorkerPool())

    with pytest.raises(CyclicDependencyError):
        await orchestrator.orchestrate([
            {"id": "a", "dependencies": ["b"]},
            {"id": "b", "dependencies": ["a"]},
        ])
    with pytest.raises(UnknownDependencyError):
        await orchestrator.orchestrate(TaskGraph([Task(id="a", dependencies=["zzz"])]))
    with pytest.raises(EmptyInputError):
        await orchestrator.orchestrate([])
    with pytest.raises(ConfigurationError):
        await orchestrator.orchestrate(RAW_PLAN, mode="turbo")

    assert orchestrator.list_sessions() == []


@pytest.mark.asyncio
async def test_mode_defaults_to_config(isolated_config) -> None:
    isolated_config.orchestrator.default_mode = "sequential"
    orchestrator = Orchestrator(SimulatedWorkerPool(), config=isolated_config)

    session_id = await orchestrator.orchestrate(RAW_PLAN)

    session = orchestrator.get_session(session_id)
    assert session.mode == "sequential"
    assert session.continue_on_error is False
    await orchestrator.wait(session_id)


@pytest.mark.asyncio
async def test_status_is_available_immediately_and_after_failure() -> None:
    orchestrator = Orchestrator(SimulatedWorkerPool(fail_ids=["schema"]))

    session_id = await orchestrator.orchestrate(RAW_PLAN)
    early = orchestrator.get_status(session_id)
    assert early.session_status == "running"
    assert early.in_progress == 1

    final = await orchestrator.wait(session_id)

    assert final.session_status == "failed"
    assert final.failed == 1
    assert final.blocked == 3
    issues = {issue.task_id: issue.error for issue in final.issues}
    assert issues["schema"] == "simulated failure for schema"
    assert issues["tests"].startswith("dependency_failed")
    assert orchestrator.get_status("unknown") is None


@pytest.mark.asyncio
async def test_stream_progress_ends_with_terminal_snapshot() -> None:
    pool = GatedWorkerPool()
    orchestrator = Orchestrator(pool)
    session_id = await orchestrator.orchestrate(RAW_PLAN)
    subscription = orchestrator.stream_progress(session_id)

    for task_id in ["schema", "api", "ui", "tests"]:
        pool.release(task_id)
    snapshots = [snap async for snap in subscription]

    assert snapshots[0].session_status == "running"
    assert snapshots[-1].session_status == "completed"
    assert [s.completed for s in snapshots] == sorted(s.completed for s in snapshots)


@pytest.mark.asyncio
async def test_cancel_through_orchestrator() -> None:
    pool = GatedWorkerPool()
    orchestrator = Orchestrator(pool)
    session_id = await orchestrator.orchestrate(RAW_PLAN)
    await wait_until(lambda: pool.started == ["schema"])

    await orchestrator.cancel(session_id)
    await orchestrator.cancel(session_id)

    snapshot = orchestrator.get_status(session_id)
    assert snapshot.session_status == "cancelled"
    assert snapshot.failed == 4
    assert pool.aborted == ["schema"]
    with pytest.raises(SessionNotFoundError):
        await orchestrator.cancel("missing")


@pytest.mark.asyncio
async def test_cleanup_only_after_terminal_status() -> None:
    pool = GatedWorkerPool()
    orchestrator = Orchestrator(pool)
    session_id = await orchestrator.orchestrate([{"id": "only", "description": "x"}])

    with pytest.raises(SessionError):
        orchestrator.cleanup(session_id)

    pool.release("only")
    await orchestrator.wait(session_id)
    assert orchestrator.cleanup(session_id) is True
    assert orchestrator.get_session(session_id) is None
    assert orchestrator.get_status(session_id) is None


@pytest.mark.asyncio
async def test_evict_expired_uses_retention_window() -> None:
    orchestrator = Orchestrator(SimulatedWorkerPool())
    session_id = await orchestrator.orchestrate([{"id": "only", "description": "x"}])
    await orchestrator.wait(session_id)

    assert orchestrator.evict_expired(retention_seconds=3600) == []
    assert orchestrator.evict_expired(retention_seconds=-1) == [session_id]
    assert orchestrator.list_sessions() == []


@pytest.mark.asyncio
async def test_shutdown_cancels_active_sessions() -> None:
    pool = GatedWorkerPool()
    orchestrator = Orchestrator(pool)
    session_id = await orchestrator.orchestrate(RAW_PLAN)

    await orchestrator.shutdown()

    assert orchestrator.get_session(session_id).status == "cancelled"


def test_available_worker_types(isolated_config) -> None:
    assert Orchestrator(GatedWorkerPool(worker_types=["a", "b"])).get_available_worker_types() == ["a", "b"]
    assert Orchestrator(GatedWorkerPool(worker_types=[])).get_available_worker_types() == isolated_config.workers.types
