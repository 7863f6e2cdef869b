from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from taskroute.config import TaskrouteConfig
from taskroute.models import Task, TaskStatus
from taskroute.state import PlanStateStore, RetryState, RoutingPlan

logger = logging.getLogger(__name__)

MAX_RETRIES_EXCEEDED = "Max retries exceeded"


def completion_marker(plan_id: str) -> str:
    return f"[Routing Complete: {plan_id}]"


def has_completion_marker(transcript: str | None, plan_id: str) -> bool:
    if not transcript or not plan_id:
        return False
    pattern = re.compile(r"\[Routing Complete:\s*" + re.escape(plan_id) + r"\]", re.IGNORECASE)
    return pattern.search(transcript) is not None


def _task_lines(tasks: list[Task], limit: int) -> list[str]:
    lines = [
        f"{index}. [{task.role}] {task.id}: {task.description}"
        for index, task in enumerate(tasks[:limit], start=1)
    ]
    if len(tasks) > limit:
        lines.append(f"... and {len(tasks) - limit} more task(s)")
    return lines


def _header(title: str, plan: RoutingPlan) -> list[str]:
    return [
        title,
        f"Plan: {plan.plan_id}",
        f"Progress: {plan.progress} ({plan.progress_fraction:.0%})",
    ]


@dataclass(slots=True)
class NoActivePlan:
    message: str = "No active routing plan."

    @property
    def kind(self) -> str:
        return "no_active_plan"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


@dataclass(slots=True)
class Completed:
    plan_id: str
    progress: str
    progress_fraction: float
    failed_count: int
    message: str

    @property
    def kind(self) -> str:
        return "completed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "plan_id": self.plan_id,
            "progress": self.progress,
            "progress_fraction": self.progress_fraction,
            "failed_count": self.failed_count,
            "message": self.message,
        }


@dataclass(slots=True)
class Continue:
    plan_id: str
    progress: str
    progress_fraction: float
    retry: RetryState
    tasks: list[Task] = field(default_factory=list)
    message: str = ""

    @property
    def kind(self) -> str:
        return "continue"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "plan_id": self.plan_id,
            "progress": self.progress,
            "progress_fraction": self.progress_fraction,
            "retry": self.retry.to_dict(),
            "tasks": [task.to_dict() for task in self.tasks],
            "message": self.message,
        }


@dataclass(slots=True)
class Exhausted:
    plan_id: str
    progress: str
    progress_fraction: float
    retry: RetryState
    original_task_count: int
    tasks: list[Task] = field(default_factory=list)
    message: str = ""

    @property
    def kind(self) -> str:
        return "exhausted"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "plan_id": self.plan_id,
            "progress": self.progress,
            "progress_fraction": self.progress_fraction,
            "retry": self.retry.to_dict(),
            "original_task_count": self.original_task_count,
            "tasks": [task.to_dict() for task in self.tasks],
            "message": self.message,
        }


Evaluation = NoActivePlan | Completed | Continue | Exhausted


class CompletionDriver:
    """Decide whether the active plan is done, should continue, or needs a human.

    The driver only interprets store projections. Its read-decide-write
    sequence runs inside one store transaction, so a concurrent task
    completion cannot slip between the pending check and the status change.
    """

    def __init__(self, store: PlanStateStore, config: TaskrouteConfig | None = None) -> None:
        self.store = store
        self.config = config or TaskrouteConfig.default()

    def evaluate(self, workspace: str | None = None, transcript: str | None = None) -> Evaluation:
        workspace = workspace or self.config.state.workspace
        with self.store.transaction(workspace) as plan:
            if plan is None or not plan.is_active:
                return NoActivePlan()

            if has_completion_marker(transcript, plan.plan_id):
                logger.info("Completion marker found for plan %s", plan.plan_id)
                plan.mark_completed()
                return self._completed(plan, "Routing complete: completion marker acknowledged.")

            outstanding = (
                plan.pending_tasks()
                or plan.executing_tasks()
                or [task for task in plan.iter_tasks() if task.status == TaskStatus.PENDING]
            )
            if not outstanding:
                plan.mark_completed()
                return self._completed(plan, "Routing complete: no outstanding tasks.")

            retry = plan.increment_retry()
            if retry.can_retry:
                logger.info(
                    "Plan %s has %d outstanding task(s); retry %d/%d",
                    plan.plan_id,
                    len(outstanding),
                    retry.current_retry,
                    retry.max_retries,
                )
                return Continue(
                    plan_id=plan.plan_id,
                    progress=plan.progress,
                    progress_fraction=plan.progress_fraction,
                    retry=retry,
                    tasks=outstanding,
                    message=self.render_continue(plan, outstanding, retry),
                )

            logger.warning("Plan %s exhausted %d retries", plan.plan_id, retry.max_retries)
            plan.mark_failed(MAX_RETRIES_EXCEEDED)
            return Exhausted(
                plan_id=plan.plan_id,
                progress=plan.progress,
                progress_fraction=plan.progress_fraction,
                retry=retry,
                original_task_count=plan.total_count,
                tasks=outstanding,
                message=self.render_escalation(plan, outstanding, retry),
            )

    def _completed(self, plan: RoutingPlan, headline: str) -> Completed:
        lines = _header(headline, plan)
        if plan.failed_count:
            lines.append(f"Note: {plan.failed_count} task(s) failed; review their errors.")
            failed = [task for task in plan.iter_tasks() if task.status == TaskStatus.FAILED]
            lines.extend(
                f"- [{task.role}] {task.id}: {task.error or 'no error message'}"
                for task in failed[: self.config.driver.max_listed_tasks]
            )
        return Completed(
            plan_id=plan.plan_id,
            progress=plan.progress,
            progress_fraction=plan.progress_fraction,
            failed_count=plan.failed_count,
            message="\n".join(lines),
        )

    def render_continue(self, plan: RoutingPlan, tasks: list[Task], retry: RetryState) -> str:
        lines = _header("Routing incomplete: continue dispatching.", plan)
        lines.append(f"Retry: {retry.current_retry}/{retry.max_retries}")
        lines.append("")
        lines.append("Outstanding tasks:")
        lines.extend(_task_lines(tasks, self.config.driver.max_listed_tasks))
        first = tasks[0]
        lines.append("")
        lines.append(f"Next: dispatch role '{first.role}' for {first.id}: {first.description}")
        lines.append(f"When every task is done, reply with {completion_marker(plan.plan_id)}")
        return "\n".join(lines)

    def render_escalation(self, plan: RoutingPlan, tasks: list[Task], retry: RetryState) -> str:
        lines = _header("Routing failed: retries exhausted.", plan)
        lines.append(f"Retries exhausted: {retry.current_retry}/{retry.max_retries}")
        lines.append(f"Original tasks: {plan.total_count}, still pending: {len(tasks)}")
        lines.append("")
        lines.append("Unfinished tasks:")
        lines.extend(_task_lines(tasks, self.config.driver.escalation_listed_tasks))
        lines.append("")
        lines.append("Recommendation: manual intervention required. Inspect the unfinished")
        lines.append("tasks, resolve any blocking errors, then re-plan or finish them by hand.")
        return "\n".join(lines)
