from pathlib import Path

from taskroute.config import TaskrouteConfig
from taskroute.decomposer import decompose
from taskroute.driver import (
    CompletionDriver,
    Completed,
    Continue,
    Exhausted,
    NoActivePlan,
    completion_marker,
    has_completion_marker,
)
from taskroute.models import Phase, Task
from taskroute.patterns import classify
from taskroute.scheduler import schedule
from taskroute.state import PlanStateStore, PlanStatus


def _setup(tmp_path: Path, request: str, max_retries: int = 3) -> tuple[PlanStateStore, str]:
    store = PlanStateStore(tmp_path / "state")
    phases = schedule(decompose(request, classify(request).pattern))
    plan = store.create_plan(phases, request, max_retries=max_retries).plan
    return store, plan.plan_id


def test_no_active_plan(tmp_path: Path) -> None:
    driver = CompletionDriver(PlanStateStore(tmp_path / "state"))

    result = driver.evaluate()

    assert isinstance(result, NoActivePlan)
    assert result.kind == "no_active_plan"


def test_pending_tasks_produce_continuation(tmp_path: Path) -> None:
    store, plan_id = _setup(tmp_path, "add a login feature")

    result = CompletionDriver(store).evaluate()

    assert isinstance(result, Continue)
    assert result.retry.current_retry == 1
    assert result.retry.can_retry is True
    assert [task.id for task in result.tasks] == ["task-1"]
    assert plan_id in result.message
    assert "0/4" in result.message
    assert "[architect] task-1" in result.message
    assert completion_marker(plan_id) in result.message
    assert store.get_summary().current_retry == 1


def test_retry_exhaustion_fails_plan_with_escalation_report(tmp_path: Path) -> None:
    store, plan_id = _setup(tmp_path, "fix crash in parser.go", max_retries=3)
    driver = CompletionDriver(store)

    results = [driver.evaluate() for _ in range(3)]

    assert [type(result) for result in results] == [Continue, Continue, Exhausted]
    exhausted = results[-1]
    assert exhausted.retry.current_retry == 3
    assert exhausted.original_task_count == 3
    assert [task.id for task in exhausted.tasks] == ["task-1"]
    assert plan_id in exhausted.message
    assert "manual intervention" in exhausted.message
    assert "[explorer] task-1: Locate the root cause" in exhausted.message
    assert store.load() is None
    archived = store.last_archived()
    assert archived.status == PlanStatus.FAILED
    assert archived.fail_reason == "Max retries exceeded"
    assert isinstance(driver.evaluate(), NoActivePlan)


def test_executing_tasks_keep_plan_open(tmp_path: Path) -> None:
    store, _plan_id = _setup(tmp_path, "fix crash in parser.go")
    store.mark_task_started("task-1")

    result = CompletionDriver(store).evaluate()

    assert isinstance(result, Continue)
    assert [task.id for task in result.tasks] == ["task-1"]


def test_no_outstanding_tasks_completes_plan(tmp_path: Path) -> None:
    store = PlanStateStore(tmp_path / "state")
    tasks = [
        Task(id="task-1", role="developer", description="api"),
        Task(id="task-2", role="developer", description="ui"),
    ]
    plan_id = store.create_plan([Phase(index=0, parallel=True, tasks=tasks)]).plan.plan_id
    store.mark_task_completed("task-1")
    store.mark_task_failed("task-2", "flaky build")

    result = CompletionDriver(store).evaluate()

    assert isinstance(result, Completed)
    assert result.plan_id == plan_id
    assert result.failed_count == 1
    assert "1 task(s) failed" in result.message
    assert "flaky build" in result.message
    assert store.last_archived().status == PlanStatus.COMPLETED


def test_completion_marker_completes_plan(tmp_path: Path) -> None:
    store, plan_id = _setup(tmp_path, "add a login feature")

    result = CompletionDriver(store).evaluate(transcript=f"all done [routing complete: {plan_id}]")

    assert isinstance(result, Completed)
    assert store.has_active_plan() is False
    assert store.last_archived().status == PlanStatus.COMPLETED


def test_has_completion_marker() -> None:
    assert has_completion_marker("done [Routing Complete:  route-abc]", "route-abc")
    assert not has_completion_marker("done [Routing Complete: route-abcd]", "route-abc")
    assert not has_completion_marker(None, "route-abc")
    assert not has_completion_marker("[Routing Complete: ]", "")


def test_continuation_lists_limited_number_of_tasks(tmp_path: Path) -> None:
    store = PlanStateStore(tmp_path / "state")
    tasks = [
        Task(id=f"task-{index}", role="explorer", description=f"scan area {index}")
        for index in range(1, 8)
    ]
    store.create_plan([Phase(index=0, parallel=True, tasks=tasks)])
    config = TaskrouteConfig.default()

    result = CompletionDriver(store, config).evaluate()

    assert isinstance(result, Continue)
    assert len(result.tasks) == 7
    assert "scan area 5" in result.message
    assert "scan area 6" not in result.message
    assert "2 more task(s)" in result.message


def test_evaluation_uses_configured_workspace(tmp_path: Path) -> None:
    store = PlanStateStore(tmp_path / "state")
    phases = schedule(decompose("add a login feature", classify("add a login feature").pattern))
    store.create_plan(phases, workspace="feature-x")
    config = TaskrouteConfig.default()
    config.state.workspace = "feature-x"

    result = CompletionDriver(store, config).evaluate()

    assert isinstance(result, Continue)
    assert result.to_dict()["kind"] == "continue"


def test_parallel_strategy_offers_task_after_failed_dependency(tmp_path: Path) -> None:
    store = PlanStateStore(tmp_path / "state")
    edit = Task(id="task-1", role="developer", description="edit")
    phases = [
        Phase(index=0, parallel=False, tasks=[edit]),
        Phase(
            index=1,
            parallel=False,
            tasks=[Task(id="task-2", role="tester", description="test", depends_on=["task-1"])],
        ),
    ]
    store.create_plan(phases, strategy="parallel")
    store.mark_task_failed("task-1", "compile error")

    assert [task.id for task in store.get_pending_tasks()] == ["task-2"]

    result = CompletionDriver(store).evaluate()

    assert isinstance(result, Continue)
    assert [task.id for task in result.tasks] == ["task-2"]
    assert store.load().status == PlanStatus.IN_PROGRESS


def test_blocked_pending_tasks_are_never_closed_as_completed(tmp_path: Path) -> None:
    store = PlanStateStore(tmp_path / "state")
    edit = Task(id="task-1", role="developer", description="edit")
    phases = [
        Phase(
            index=0,
            parallel=False,
            tasks=[Task(id="task-2", role="tester", description="test", depends_on=["task-1"])],
        ),
        Phase(index=1, parallel=False, tasks=[edit]),
    ]
    store.create_plan(phases, strategy="parallel", max_retries=1)
    assert store.get_pending_tasks() == []

    result = CompletionDriver(store).evaluate()

    assert isinstance(result, Exhausted)
    assert {task.id for task in result.tasks} == {"task-1", "task-2"}
    assert store.last_archived().status == PlanStatus.FAILED
