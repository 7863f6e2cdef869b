from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Literal

from taskroute.config import DEFAULT_WORKSPACE
from taskroute.models import Task, TaskStatus
from taskroute.roles import RoleRegistry, default_registry
from taskroute.state import PlanStateStore, RoutingPlan

logger = logging.getLogger(__name__)

OutcomeName = Literal["success", "failure"]
DEFAULT_FAILURE_MESSAGE = "Task execution failed"
OPEN_TASK_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.EXECUTING})


def parse_role_name(value: str | None) -> str:
    if not value:
        return ""
    return value.split(":")[-1].strip().lower()


@dataclass(slots=True)
class DispatchDirective:
    task_id: str
    role: str
    instruction_text: str
    can_run_in_parallel: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "role": self.role,
            "instruction_text": self.instruction_text,
            "can_run_in_parallel": self.can_run_in_parallel,
        }


@dataclass(slots=True)
class TaskOutcome:
    task_id: str | None = None
    outcome: OutcomeName = "success"
    error_message: str | None = None
    role: str | None = None

    def __post_init__(self) -> None:
        if self.outcome not in ("success", "failure"):
            raise ValueError(f"Unsupported outcome: {self.outcome!r}. Use 'success' or 'failure'.")


@dataclass(slots=True)
class OutcomeResult:
    task_id: str | None
    status: str
    all_done: bool = False
    plan: RoutingPlan | None = None

    @property
    def applied(self) -> bool:
        return self.task_id is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status,
            "all_done": self.all_done,
            "plan_id": self.plan.plan_id if self.plan is not None else None,
            "plan_status": self.plan.status.value if self.plan is not None else None,
        }


@dataclass(slots=True)
class DispatchCheck:
    valid: bool
    role: str
    expected_roles: list[str] = field(default_factory=list)
    plan_id: str | None = None

    @property
    def reason(self) -> str:
        if self.plan_id is None:
            return "No active routing plan"
        if not self.expected_roles:
            return "No open tasks in routing plan"
        if self.valid:
            return f"Role {self.role} matches routing plan"
        return f"Role mismatch: {self.role} not in expected [{', '.join(self.expected_roles)}]"

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "role": self.role,
            "expected_roles": list(self.expected_roles),
            "plan_id": self.plan_id,
            "reason": self.reason,
        }


def render_instruction(task: Task, registry: RoleRegistry | None = None) -> str:
    roles = registry or default_registry()
    role = roles.get(task.role)
    lines: list[str] = []
    if role is not None:
        lines.extend([role.instruction, ""])
    lines.append(f"Task {task.id}: {task.description}")
    if task.inputs:
        lines.append("")
        lines.append("Inputs:")
        lines.extend(f"- {item}" for item in task.inputs)
    if task.outputs:
        lines.append("")
        lines.append("Expected outputs:")
        lines.extend(f"- {item}" for item in task.outputs)
    return "\n".join(lines)


def build_directives(
    store: PlanStateStore,
    workspace: str = DEFAULT_WORKSPACE,
) -> list[DispatchDirective]:
    plan = store.load(workspace)
    if plan is None:
        return []
    directives = []
    for task in plan.executable_tasks(store.registry.limit_for):
        phase = plan.phase_of(task.id)
        directives.append(
            DispatchDirective(
                task_id=task.id,
                role=task.role,
                instruction_text=render_instruction(task, store.registry),
                can_run_in_parallel=bool(phase is not None and phase.parallel),
            )
        )
    return directives


def find_open_task(plan: RoutingPlan, role: str) -> Task | None:
    name = parse_role_name(role)
    for task in plan.iter_tasks():
        if task.status in OPEN_TASK_STATUSES and task.role.lower() == name:
            return task
    return None


def _all_tasks_done(plan: RoutingPlan) -> bool:
    tasks = list(plan.iter_tasks())
    return bool(tasks) and all(
        task.status in (TaskStatus.COMPLETED, TaskStatus.FAILED) for task in tasks
    )


def apply_outcome(
    store: PlanStateStore,
    outcome: TaskOutcome,
    workspace: str = DEFAULT_WORKSPACE,
) -> OutcomeResult:
    """Record a task outcome reported by the host.

    An outcome naming a task id maps directly onto complete or fail. Without an
    id, the first open task of the reported role is chosen. When every task
    has finished, successfully or not, the plan is closed as completed.
    """
    with store.transaction(workspace) as plan:
        if plan is None:
            return OutcomeResult(task_id=None, status="no_active_plan")

        task_id = outcome.task_id
        if task_id is None and outcome.role:
            match = find_open_task(plan, outcome.role)
            task_id = match.id if match is not None else None
        if task_id is None or plan.get_task(task_id) is None:
            logger.debug("No task matched outcome %s in plan %s", outcome, plan.plan_id)
            return OutcomeResult(task_id=None, status="unmatched", plan=plan)

        if outcome.outcome == "success":
            plan.mark_task_completed(task_id)
        else:
            plan.mark_task_failed(task_id, outcome.error_message or DEFAULT_FAILURE_MESSAGE)

        all_done = _all_tasks_done(plan)
        if all_done:
            plan.mark_completed()
        task = plan.get_task(task_id)
        return OutcomeResult(
            task_id=task_id,
            status=task.status.value if task is not None else "unknown",
            all_done=all_done,
            plan=plan,
        )


def check_dispatch(plan: RoutingPlan | None, role: str) -> DispatchCheck:
    name = parse_role_name(role)
    if plan is None or not plan.is_active:
        return DispatchCheck(valid=True, role=name)
    expected: list[str] = []
    for task in plan.iter_tasks():
        task_role = parse_role_name(task.role)
        if task.status in OPEN_TASK_STATUSES and task_role not in expected:
            expected.append(task_role)
    valid = not expected or not name or name in expected
    if not valid:
        logger.info(
            "Dispatch of %s rejected for plan %s; expected %s", name, plan.plan_id, expected
        )
    return DispatchCheck(valid=valid, role=name, expected_roles=expected, plan_id=plan.plan_id)
