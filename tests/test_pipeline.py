from pathlib import Path

from taskroute.config import TaskrouteConfig
from taskroute.decomposer import ClassifierHints
from taskroute.pipeline import build_plan
from taskroute.roles import default_registry
from taskroute.state import PlanStateStore, PlanStatus, PlanStrategy


def test_build_plan_runs_every_stage(tmp_path: Path) -> None:
    store = PlanStateStore(tmp_path / "state")

    build = build_plan("fix crash in parser.go", store)

    assert build.classification.pattern.name == "bug_fix"
    assert [task.id for task in build.tasks] == ["task-1", "task-2", "task-3"]
    assert [len(phase.tasks) for phase in build.phases] == [1, 1, 1]
    assert build.unscheduled == []
    assert build.partial is False
    assert build.creation.persisted is True
    loaded = store.load()
    assert loaded.plan_id == build.creation.plan.plan_id
    assert loaded.pattern == "bug_fix"
    assert loaded.original_request == "fix crash in parser.go"


def test_build_plan_uses_config_and_hints(tmp_path: Path) -> None:
    config = TaskrouteConfig.default()
    config.plan.max_retries = 5
    config.plan.strategy = "parallel"
    config.state.workspace = "feature-x"
    store = PlanStateStore(tmp_path / "state")

    build = build_plan(
        "add a login feature",
        store,
        config,
        ClassifierHints(compound_requirement_count=6),
    )

    plan = store.load("feature-x")
    assert plan is not None
    assert plan.max_retries == 5
    assert plan.strategy == PlanStrategy.PARALLEL
    assert plan.total_count == 6
    assert len(build.tasks) == 6


def test_build_plan_respects_concurrency_overrides(tmp_path: Path) -> None:
    registry = default_registry().with_limits({"developer": 1})
    store = PlanStateStore(tmp_path / "state", registry=registry)

    build = build_plan("refactor src/auth.py and src/db.py", store, strategy="sequential")

    assert [[task.id for task in phase.tasks] for phase in build.phases] == [
        ["task-1"],
        ["task-2"],
        ["task-3"],
    ]


def test_full_round_trip_reaches_completed(tmp_path: Path) -> None:
    store = PlanStateStore(tmp_path / "state")
    build_plan("add a login feature", store)

    plan = None
    while store.get_pending_tasks():
        for task in store.get_executable_tasks():
            store.mark_task_started(task.id)
            plan = store.mark_task_completed(task.id)

    assert plan is not None
    assert plan.status == PlanStatus.COMPLETED
    assert plan.completed_count == plan.total_count == 4
