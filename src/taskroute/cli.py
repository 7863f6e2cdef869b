from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from taskroute.config import TaskrouteConfig, load_config, save_config
from taskroute.decomposer import ClassifierHints
from taskroute.dispatch import TaskOutcome, apply_outcome, build_directives, check_dispatch
from taskroute.driver import CompletionDriver
from taskroute.models import Complexity
from taskroute.patterns import classify
from taskroute.pipeline import build_plan
from taskroute.roles import default_registry
from taskroute.state import PlanStateError, PlanStateStore, RoutingPlan

DEFAULT_CONFIG_FILE = "taskroute.toml"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: TaskrouteConfig
    store: PlanStateStore
    workspace: str


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_runtime(config_value: str, workspace: str | None) -> Runtime:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
        registry = default_registry().with_limits(config.concurrency)
    except ValueError as exc:
        raise click.ClickException(f"Invalid config {config_path}: {exc}") from exc
    store = PlanStateStore(
        config.state_dir(repo_root),
        registry=registry,
        lock_timeout_seconds=config.state.lock_timeout_seconds,
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        workspace=workspace or config.state.workspace,
    )


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _require_plan(plan: RoutingPlan | None) -> RoutingPlan:
    if plan is None:
        raise click.ClickException("No active routing plan.")
    return plan


def _plan_status_line(plan: RoutingPlan) -> str:
    line = f"Plan {plan.plan_id}: {plan.status.value}, progress {plan.progress}"
    if plan.fail_reason:
        line += f" ({plan.fail_reason})"
    return line


def _config_option(func):
    return click.option(
        "--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True
    )(func)


def _workspace_option(func):
    return click.option(
        "--workspace", default=None, help="Plan slot to operate on (defaults to config)."
    )(func)


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Taskroute CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@_config_option
def init_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except ValueError as exc:
        raise click.ClickException(f"Invalid config {config_path}: {exc}") from exc
    save_config(config_path, config)
    state_dir = config.state_dir(repo_root)
    state_dir.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized taskroute in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State: {state_dir}")


@cli.command("classify")
@click.argument("request")
def classify_command(request: str) -> None:
    classification = classify(request)
    _echo_json(
        {
            "pattern": classification.pattern.name,
            "score": classification.score,
            "decomposition_strategy": classification.pattern.decomposition_strategy.value,
            "default_roles": list(classification.pattern.default_role_sequence),
            "scores": classification.scores,
        }
    )


@cli.command("plan")
@click.argument("request")
@click.option(
    "--complexity",
    type=click.Choice([item.value for item in Complexity]),
    default=None,
)
@click.option("--compound-count", type=click.IntRange(min=0), default=0, show_default=True)
@click.option("--strategy", type=click.Choice(["sequential", "parallel"]), default=None)
@_config_option
@_workspace_option
def plan_command(
    request: str,
    complexity: str | None,
    compound_count: int,
    strategy: str | None,
    config_value: str,
    workspace: str | None,
) -> None:
    runtime = _load_runtime(config_value, workspace)
    hints = ClassifierHints(
        complexity=Complexity(complexity) if complexity else None,
        compound_requirement_count=compound_count,
    )
    build = build_plan(
        request,
        runtime.store,
        runtime.config,
        hints,
        workspace=runtime.workspace,
        strategy=strategy,
    )
    if build.unscheduled:
        click.echo(
            "Warning: circular or unresolvable dependencies; unscheduled tasks: "
            + ", ".join(task.id for task in build.unscheduled),
            err=True,
        )
    if not build.creation.persisted:
        raise click.ClickException(
            f"Plan {build.creation.plan.plan_id} was not persisted: {build.creation.error}"
        )

    plan = build.creation.plan
    _echo_json(
        {
            "plan_id": plan.plan_id,
            "pattern": build.classification.pattern.name,
            "score": build.classification.score,
            "strategy": plan.strategy.value,
            "total_count": plan.total_count,
            "phases": [
                {
                    "index": phase.index,
                    "parallel": phase.parallel,
                    "tasks": [
                        {"id": task.id, "role": task.role, "description": task.description}
                        for task in phase.tasks
                    ],
                }
                for phase in plan.phases
            ],
            "unscheduled": [task.id for task in build.unscheduled],
        }
    )


@cli.command("next")
@_config_option
@_workspace_option
def next_command(config_value: str, workspace: str | None) -> None:
    runtime = _load_runtime(config_value, workspace)
    try:
        directives = build_directives(runtime.store, runtime.workspace)
    except PlanStateError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json([directive.to_dict() for directive in directives])


@cli.command("start")
@click.argument("task_id")
@_config_option
@_workspace_option
def start_command(task_id: str, config_value: str, workspace: str | None) -> None:
    runtime = _load_runtime(config_value, workspace)
    try:
        plan = _require_plan(runtime.store.mark_task_started(task_id, workspace=runtime.workspace))
    except PlanStateError as exc:
        raise click.ClickException(str(exc)) from exc
    task = plan.get_task(task_id)
    if task is None:
        raise click.ClickException(f"Task not found in plan {plan.plan_id}: {task_id}")
    click.echo(f"{task.id} [{task.role}] {task.status.value}")


@cli.command("complete")
@click.argument("task_id")
@_config_option
@_workspace_option
def complete_command(task_id: str, config_value: str, workspace: str | None) -> None:
    runtime = _load_runtime(config_value, workspace)
    try:
        plan = _require_plan(
            runtime.store.mark_task_completed(task_id, workspace=runtime.workspace)
        )
    except PlanStateError as exc:
        raise click.ClickException(str(exc)) from exc
    task = plan.get_task(task_id)
    if task is None:
        raise click.ClickException(f"Task not found in plan {plan.plan_id}: {task_id}")
    click.echo(f"{task.id} [{task.role}] {task.status.value}")
    click.echo(_plan_status_line(plan))


@cli.command("fail")
@click.argument("task_id")
@click.option("--error", "error_message", default="", help="Failure detail to record.")
@_config_option
@_workspace_option
def fail_command(
    task_id: str, error_message: str, config_value: str, workspace: str | None
) -> None:
    runtime = _load_runtime(config_value, workspace)
    try:
        plan = _require_plan(
            runtime.store.mark_task_failed(task_id, error_message, workspace=runtime.workspace)
        )
    except PlanStateError as exc:
        raise click.ClickException(str(exc)) from exc
    task = plan.get_task(task_id)
    if task is None:
        raise click.ClickException(f"Task not found in plan {plan.plan_id}: {task_id}")
    click.echo(f"{task.id} [{task.role}] {task.status.value}")
    click.echo(_plan_status_line(plan))


@cli.command("outcome")
@click.option("--task-id", default=None)
@click.option("--role", default=None, help="Match the first open task of this role.")
@click.option("--failure", is_flag=True, default=False)
@click.option("--error", "error_message", default=None)
@_config_option
@_workspace_option
def outcome_command(
    task_id: str | None,
    role: str | None,
    failure: bool,
    error_message: str | None,
    config_value: str,
    workspace: str | None,
) -> None:
    if not task_id and not role:
        raise click.UsageError("Pass --task-id or --role.")
    runtime = _load_runtime(config_value, workspace)
    outcome = TaskOutcome(
        task_id=task_id,
        outcome="failure" if failure else "success",
        error_message=error_message,
        role=role,
    )
    try:
        result = apply_outcome(runtime.store, outcome, runtime.workspace)
    except PlanStateError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(result.to_dict())


@cli.command("check")
@click.option(
    "--transcript", default=None, help="Host transcript to scan for the completion marker."
)
@_config_option
@_workspace_option
def check_command(transcript: str | None, config_value: str, workspace: str | None) -> None:
    runtime = _load_runtime(config_value, workspace)
    driver = CompletionDriver(runtime.store, runtime.config)
    try:
        evaluation = driver.evaluate(runtime.workspace, transcript=transcript)
    except PlanStateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(evaluation.message)


@cli.command("status")
@click.option("--verbose", is_flag=True, default=False)
@_config_option
@_workspace_option
def status_command(verbose: bool, config_value: str, workspace: str | None) -> None:
    runtime = _load_runtime(config_value, workspace)
    try:
        plan = runtime.store.load(runtime.workspace)
        payload: dict[str, Any] = runtime.store.get_summary(runtime.workspace).to_dict()
        payload["workspace"] = runtime.workspace
        if plan is None:
            last = runtime.store.last_archived(runtime.workspace)
            if last is not None:
                payload["last_plan"] = {
                    "plan_id": last.plan_id,
                    "status": last.status.value,
                    "progress": last.progress,
                    "fail_reason": last.fail_reason,
                }
    except PlanStateError as exc:
        raise click.ClickException(str(exc)) from exc
    if verbose and plan is not None:
        payload["original_request"] = plan.original_request
        payload["pattern"] = plan.pattern
        payload["strategy"] = plan.strategy.value
        payload["phases"] = [phase.to_dict() for phase in plan.phases]
    _echo_json(payload)


@cli.command("cancel")
@_config_option
@_workspace_option
def cancel_command(config_value: str, workspace: str | None) -> None:
    runtime = _load_runtime(config_value, workspace)
    try:
        plan = _require_plan(runtime.store.cancel(runtime.workspace))
    except PlanStateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(_plan_status_line(plan))


@cli.command("clear")
@_config_option
@_workspace_option
def clear_command(config_value: str, workspace: str | None) -> None:
    runtime = _load_runtime(config_value, workspace)
    try:
        runtime.store.clear(runtime.workspace)
    except PlanStateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Cleared workspace {runtime.workspace}.")


@cli.command("check-dispatch")
@click.argument("role")
@_config_option
@_workspace_option
def check_dispatch_command(role: str, config_value: str, workspace: str | None) -> None:
    runtime = _load_runtime(config_value, workspace)
    try:
        plan = runtime.store.load(runtime.workspace)
    except PlanStateError as exc:
        raise click.ClickException(str(exc)) from exc
    check = check_dispatch(plan, role)
    _echo_json(check.to_dict())
    if not check.valid:
        click.get_current_context().exit(1)
