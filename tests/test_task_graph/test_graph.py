import pytest

from task_conductor.exceptions import (
    CyclicDependencyError,
    DuplicateTaskError,
    InvalidTransitionError,
    UnknownDependencyError,
)
from task_conductor.task_graph import (
    BLOCKED,
    COMPLETED,
    FAILED,
    IN_PROGRESS,
    PENDING,
    Task,
    TaskGraph,
)


def _graph(edges: dict[str, list[str]], **overrides) -> TaskGraph:
    tasks = []
    for task_id, deps in edges.items():
        task = Task(id=task_id, description=task_id, worker_type="backend", dependencies=list(deps))
        for key, value in overrides.get(task_id, {}).items():
            setattr(task, key, value)
        tasks.append(task)
    return TaskGraph(tasks)


def test_topological_order_respects_every_edge():
    graph = _graph({"a": [], "b": ["a"], "c": ["a"], "d": ["b", "c"], "e": []})
    order = [task.id for task in graph.topological_order()]

    assert sorted(order) == ["a", "b", "c", "d", "e"]
    for task in graph:
        for dep in task.dependencies:
            assert order.index(dep) < order.index(task.id)


def test_topological_order_breaks_ties_by_priority_then_insertion():
    graph = _graph(
        {"low": [], "urgent": [], "also-low": []},
        urgent={"priority": 1},
        low={"priority": 4},
        **{"also-low": {"priority": 4}},
    )

    assert [task.id for task in graph.topological_order()] == ["urgent", "low", "also-low"]


def test_cycle_is_rejected_with_involved_ids():
    graph = _graph({"a": ["c"], "b": ["a"], "c": ["b"], "free": []})

    with pytest.raises(CyclicDependencyError) as exc_info:
        graph.validate()

    assert set(exc_info.value.involved_ids) == {"a", "b", "c"}


def test_self_dependency_is_a_cycle():
    graph = _graph({"a": ["a"]})

    with pytest.raises(CyclicDependencyError):
        graph.topological_order()


def test_unknown_dependency_is_rejected():
    graph = _graph({"a": [], "b": ["ghost"]})

    with pytest.raises(UnknownDependencyError) as exc_info:
        graph.validate()

    assert exc_info.value.task_id == "b"
    assert exc_info.value.missing_id == "ghost"


def test_duplicate_ids_are_rejected():
    with pytest.raises(DuplicateTaskError):
        TaskGraph([Task(id="a"), Task(id="a")])


def test_ready_tasks_follow_completions():
    graph = _graph({"a": [], "b": ["a"], "c": ["a", "b"]})

    assert [t.id for t in graph.get_ready_tasks()] == ["a"]
    graph.start_task("a")
    assert graph.get_ready_tasks() == []
    graph.complete_task("a", "ok")
    assert [t.id for t in graph.get_ready_tasks()] == ["b"]
    assert not graph.is_ready("c")


def test_failed_dependency_blocks_transitively():
    graph = _graph({"a": [], "b": ["a"], "c": ["b"], "d": []})
    graph.start_task("a")
    graph.fail_task("a", "exploded")

    blocked = graph.block_dependents("a")

    assert [t.id for t in blocked] == ["b", "c"]
    assert graph.get_task("b").status == BLOCKED
    assert graph.get_task("c").error == "dependency_failed: b"
    assert graph.get_task("d").status == PENDING


def test_get_ready_tasks_cascades_blocking_in_one_call():
    graph = _graph({"a": [], "b": ["a"], "c": ["b"]})
    graph.start_task("a")
    graph.fail_task("a")
    seen: list[str] = []

    ready = graph.get_ready_tasks(on_blocked=lambda task: seen.append(task.id))

    assert ready == []
    assert seen == ["b", "c"]
    assert graph.is_complete


def test_optional_dependency_is_satisfied_by_failure():
    graph = TaskGraph([
        Task(id="a"),
        Task(id="b", dependencies=["a"], optional_dependencies={"a"}),
    ])
    assert graph.get_ready_tasks()[0].id == "a"

    graph.start_task("a")
    assert graph.get_ready_tasks() == []
    graph.fail_task("a")

    assert graph.block_dependents("a") == []
    assert [t.id for t in graph.get_ready_tasks()] == ["b"]


def test_status_transitions_are_monotonic():
    graph = _graph({"a": []})
    graph.start_task("a")
    graph.complete_task("a", 42)

    with pytest.raises(InvalidTransitionError):
        graph.start_task("a")
    with pytest.raises(InvalidTransitionError):
        graph.fail_task("a")

    task = graph.get_task("a")
    assert task.status == COMPLETED
    assert task.result == 42


def test_pending_task_cannot_complete_without_starting():
    graph = _graph({"a": []})

    with pytest.raises(InvalidTransitionError):
        graph.complete_task("a")


def test_in_progress_tasks_always_have_completed_required_dependencies():
    graph = _graph({"a": [], "b": ["a"], "c": ["a"], "d": ["b", "c"]})
    while not graph.is_complete:
        for task in graph.get_ready_tasks():
            graph.start_task(task.id)
            for current in graph:
                if current.status == IN_PROGRESS:
                    assert all(dep.status == COMPLETED for dep in graph.dependencies_of(current.id))
            graph.complete_task(task.id)

    assert graph.counts()[COMPLETED] == 4


def test_execution_levels_and_critical_path():
    graph = _graph(
        {"a": [], "b": ["a"], "c": ["a"], "d": ["b", "c"]},
        a={"estimated_duration": 10.0},
        b={"estimated_duration": 5.0},
        c={"estimated_duration": 30.0},
        d={"estimated_duration": 1.0},
    )

    assert graph.execution_levels() == [["a"], ["b", "c"], ["d"]]
    assert graph.critical_path() == ["a", "c", "d"]
    assert graph.estimated_duration(parallel=True) == pytest.approx(41.0)
    assert graph.estimated_duration(parallel=False) == pytest.approx(46.0)


def test_bottlenecks_lists_tasks_with_many_dependents():
    graph = _graph({"root": [], "a": ["root"], "b": ["root"], "c": ["root"], "d": ["a"]})

    assert graph.bottlenecks(threshold=3) == ["root"]


def test_results_cover_terminal_tasks():
    graph = _graph({"a": [], "b": []})
    graph.start_task("a")
    graph.complete_task("a", "output")
    graph.start_task("b")
    graph.fail_task("b", "nope")

    results = graph.get_results()

    assert results["a"]["status"] == COMPLETED
    assert results["a"]["result"] == "output"
    assert results["b"]["status"] == FAILED
    assert results["b"]["error"] == "nope"
