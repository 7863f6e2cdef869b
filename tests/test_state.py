import json
import logging
import threading
from pathlib import Path

import pytest

from taskroute.decomposer import decompose
from taskroute.models import Phase, Task, TaskStatus
from taskroute.patterns import classify
from taskroute.scheduler import schedule
from taskroute.state import PlanStateError, PlanStateStore, PlanStatus, RoutingPlan


def _phases(request: str) -> list[Phase]:
    return schedule(decompose(request, classify(request).pattern))


def _parallel_phase(count: int, role: str = "developer") -> list[Phase]:
    tasks = [
        Task(id=f"task-{index}", role=role, description=f"part {index}")
        for index in range(1, count + 1)
    ]
    return [Phase(index=0, parallel=True, tasks=tasks)]


def _store(tmp_path: Path) -> PlanStateStore:
    return PlanStateStore(tmp_path / "state")


def test_create_plan_persists_versioned_envelope(tmp_path: Path) -> None:
    store = _store(tmp_path)
    creation = store.create_plan(_phases("add a login feature"), "add a login feature")

    assert creation.persisted is True
    assert creation.error is None
    plan = creation.plan
    assert plan.plan_id.startswith("route-")
    assert plan.status == PlanStatus.PENDING
    assert plan.total_count == 4
    assert plan.task_index["task-3"] == (2, 0)

    raw = json.loads((tmp_path / "state" / "default.json").read_text(encoding="utf-8"))
    assert raw["schema_version"] == 1
    assert raw["revision"] == 1
    assert raw["data"]["plan_id"] == plan.plan_id
    assert raw["data"]["phases"][0]["tasks"][0]["status"] == "pending"
    assert store.has_active_plan()


def test_sequential_plan_offers_one_task_at_a_time(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create_plan(_phases("fix crash in parser.go"), "fix crash in parser.go")

    assert [task.id for task in store.get_pending_tasks()] == ["task-1"]

    plan = store.mark_task_started("task-1")
    assert plan is not None
    assert plan.status == PlanStatus.IN_PROGRESS
    assert plan.get_task("task-1").started_at is not None
    assert store.get_pending_tasks() == []

    store.mark_task_completed("task-1")
    assert [task.id for task in store.get_pending_tasks()] == ["task-2"]


def test_completing_twice_does_not_double_count(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create_plan(_phases("add a login feature"))

    store.mark_task_completed("task-1")
    plan = store.mark_task_completed("task-1")

    assert plan is not None
    assert plan.completed_count == 1
    assert store.get_summary().progress == "1/4"


def test_completing_every_task_completes_and_archives_plan(tmp_path: Path) -> None:
    store = _store(tmp_path)
    plan_id = store.create_plan(_phases("add a login feature")).plan.plan_id

    plan = None
    for task_id in ("task-1", "task-2", "task-3", "task-4"):
        store.mark_task_started(task_id)
        plan = store.mark_task_completed(task_id)

    assert plan is not None
    assert plan.status == PlanStatus.COMPLETED
    assert plan.completed_count == plan.total_count == 4
    assert store.load() is None
    assert store.has_active_plan() is False
    assert store.get_pending_tasks() == []
    archived = store.last_archived()
    assert archived is not None
    assert archived.plan_id == plan_id
    assert archived.status == PlanStatus.COMPLETED
    assert (tmp_path / "state" / "archive" / f"{plan_id}.json").exists()


def test_transitions_without_plan_or_for_unknown_ids_are_noops(tmp_path: Path) -> None:
    store = _store(tmp_path)
    assert store.mark_task_started("task-1") is None
    assert store.mark_task_completed("task-1") is None
    assert store.mark_task_failed("task-1", "boom") is None
    assert store.get_summary().has_active_plan is False

    store.create_plan(_phases("add a login feature"))
    revision = store.get_envelope()["revision"]
    plan = store.mark_task_completed("task-99")

    assert plan is not None
    assert plan.completed_count == 0
    assert store.get_envelope()["revision"] == revision


def test_failed_task_is_terminal_and_does_not_fail_plan(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create_plan(_phases("fix crash in parser.go"))

    plan = store.mark_task_failed("task-1", "could not reproduce")
    assert plan is not None
    task = plan.get_task("task-1")
    assert task.status == TaskStatus.FAILED
    assert task.error == "could not reproduce"
    assert task.started_at is not None and task.completed_at is not None
    assert plan.failed_count == 1
    assert plan.status == PlanStatus.IN_PROGRESS

    plan = store.mark_task_completed("task-1")
    assert plan.get_task("task-1").status == TaskStatus.FAILED
    assert plan.completed_count == 0


def test_executable_tasks_respect_live_role_counts(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create_plan(_parallel_phase(3))

    assert [task.id for task in store.get_pending_tasks()] == ["task-1", "task-2", "task-3"]
    assert [task.id for task in store.get_executable_tasks()] == ["task-1", "task-2"]

    store.mark_task_started("task-1")
    assert [task.id for task in store.get_pending_tasks()] == ["task-2", "task-3"]
    assert [task.id for task in store.get_executable_tasks()] == ["task-2"]

    store.mark_task_started("task-2")
    assert store.get_executable_tasks() == []


def test_parallel_strategy_moves_past_dispatched_phase(tmp_path: Path) -> None:
    tasks = [
        Task(id="task-1", role="explorer", description="scan"),
        Task(id="task-2", role="developer", description="edit"),
        Task(id="task-3", role="tester", description="test", depends_on=["task-2"]),
    ]
    phases = [Phase(index=index, parallel=False, tasks=[task]) for index, task in enumerate(tasks)]
    sequential = PlanStateStore(tmp_path / "seq")
    sequential.create_plan(phases, strategy="sequential")
    sequential.mark_task_started("task-1")
    assert sequential.get_pending_tasks() == []

    parallel = PlanStateStore(tmp_path / "par")
    parallel.create_plan(phases, strategy="parallel")
    parallel.mark_task_started("task-1")
    assert [task.id for task in parallel.get_pending_tasks()] == ["task-2"]
    parallel.mark_task_started("task-2")
    assert parallel.get_pending_tasks() == []


def test_cancel_is_terminal(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create_plan(_phases("add a login feature"))

    plan = store.cancel()

    assert plan is not None
    assert plan.status == PlanStatus.CANCELLED
    assert plan.pending_tasks() == []
    assert store.get_pending_tasks() == []
    assert store.mark_task_started("task-1") is None
    assert store.last_archived().status == PlanStatus.CANCELLED


def test_mark_plan_failed_records_reason(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create_plan(_phases("add a login feature"))

    plan = store.mark_plan_failed("blocked on credentials")

    assert plan.status == PlanStatus.FAILED
    assert store.last_archived().fail_reason == "blocked on credentials"


def test_increment_retry_reports_can_retry(tmp_path: Path) -> None:
    store = _store(tmp_path)
    assert store.increment_retry().can_retry is False

    store.create_plan(_phases("add a login feature"), max_retries=3)
    states = [store.increment_retry() for _ in range(3)]

    assert [state.current_retry for state in states] == [1, 2, 3]
    assert [state.can_retry for state in states] == [True, True, False]
    assert store.get_summary().current_retry == 3


def test_summary_is_read_only(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create_plan(_phases("add a login feature"))
    store.mark_task_completed("task-1")
    revision = store.get_envelope()["revision"]

    summary = store.get_summary()

    assert summary.has_active_plan is True
    assert summary.progress == "1/4"
    assert summary.progress_fraction == 0.25
    assert summary.pending_count == 1
    assert summary.max_retries == 3
    assert store.get_envelope()["revision"] == revision


def test_create_plan_replaces_and_archives_previous_plan(tmp_path: Path) -> None:
    store = _store(tmp_path)
    first = store.create_plan(_phases("add a login feature")).plan
    second = store.create_plan(_phases("fix crash in parser.go")).plan

    assert store.load().plan_id == second.plan_id
    archived = store.last_archived()
    assert archived.plan_id == first.plan_id
    assert archived.status == PlanStatus.CANCELLED


def test_workspaces_are_isolated(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create_plan(_phases("add a login feature"), workspace="alpha")
    store.create_plan(_phases("fix crash in parser.go"), workspace="beta")

    store.mark_task_completed("task-1", workspace="alpha")

    assert store.get_summary("alpha").progress == "1/4"
    assert store.get_summary("beta").progress == "0/3"
    assert store.load("default") is None
    with pytest.raises(PlanStateError, match="Invalid workspace"):
        store.load("../escape")


def test_create_plan_reports_io_failure(tmp_path: Path) -> None:
    blocker = tmp_path / "state"
    blocker.write_text("not a directory", encoding="utf-8")
    store = PlanStateStore(blocker)

    creation = store.create_plan(_phases("add a login feature"), "add a login feature")

    assert creation.persisted is False
    assert creation.error
    assert creation.plan.total_count == 4


def test_corrupt_document_is_ignored(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    store = _store(tmp_path)
    (tmp_path / "state").mkdir()
    (tmp_path / "state" / "default.json").write_text("{not json", encoding="utf-8")

    with caplog.at_level(logging.WARNING, logger="taskroute.state.store"):
        assert store.load() is None
    assert "undecodable" in caplog.text

    assert store.create_plan(_phases("add a login feature")).persisted is True


def test_bare_plan_document_is_loaded(tmp_path: Path) -> None:
    plan = RoutingPlan.build(_phases("add a login feature"), "add a login feature")
    (tmp_path / "state").mkdir()
    (tmp_path / "state" / "default.json").write_text(json.dumps(plan.to_dict()), encoding="utf-8")
    store = _store(tmp_path)

    loaded = store.load()
    assert loaded is not None
    assert loaded.plan_id == plan.plan_id

    store.mark_task_completed("task-1")
    assert store.get_envelope()["revision"] == 1


def test_transaction_discards_changes_when_body_raises(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create_plan(_phases("add a login feature"))
    revision = store.get_envelope()["revision"]

    with pytest.raises(RuntimeError):
        with store.transaction() as plan:
            plan.mark_task_completed("task-1")
            raise RuntimeError("abort")

    assert store.get_envelope()["revision"] == revision
    assert store.get_summary().completed_count == 0


def test_clear_removes_active_plan(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create_plan(_phases("add a login feature"))

    store.clear()

    assert store.load() is None
    assert store.get_envelope()["data"] is None


def test_find_tasks_by_role(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create_plan(_phases("add a login feature"))
    store.mark_task_completed("task-1")

    assert [task.id for task in store.find_tasks_by_role("developer")] == ["task-2"]
    open_architect = store.find_tasks_by_role(
        "architect", statuses=frozenset({TaskStatus.PENDING, TaskStatus.EXECUTING})
    )
    assert open_architect == []


def test_lock_timeout_raises(tmp_path: Path) -> None:
    store = PlanStateStore(tmp_path / "state", lock_timeout_seconds=0.1)
    store.create_plan(_phases("add a login feature"))
    (tmp_path / "state" / "default.lock").write_text("999", encoding="utf-8")

    with pytest.raises(PlanStateError, match="Timed out"):
        store.mark_task_completed("task-1")


def test_concurrent_completions_are_serialised(tmp_path: Path) -> None:
    state_dir = tmp_path / "state"
    PlanStateStore(state_dir).create_plan(_parallel_phase(8, role="explorer"))
    errors: list[Exception] = []

    def _complete(task_id: str) -> None:
        store = PlanStateStore(state_dir, lock_timeout_seconds=30.0)
        try:
            store.mark_task_completed(task_id)
            store.mark_task_completed(task_id)
        except Exception as exc:
            errors.append(exc)

    threads = [
        threading.Thread(target=_complete, args=(f"task-{index}",)) for index in range(1, 9)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    store = PlanStateStore(state_dir)
    assert errors == []
    assert store.load() is None
    archived = store.last_archived()
    assert archived.completed_count == 8
    assert archived.status == PlanStatus.COMPLETED


def test_shared_store_serialises_threads(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create_plan(_parallel_phase(6, role="explorer"))
    barrier = threading.Barrier(6)

    def _complete(task_id: str) -> None:
        barrier.wait()
        store.mark_task_completed(task_id)

    threads = [
        threading.Thread(target=_complete, args=(f"task-{index}",)) for index in range(1, 7)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert store.last_archived().completed_count == 6
