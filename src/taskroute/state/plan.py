from __future__ import annotations

import copy
import logging
from collections import Counter
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import uuid4

from taskroute.models import Phase, Task, TaskStatus, utcnow_iso

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3


class PlanStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PlanStrategy(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


TERMINAL_PLAN_STATUSES = frozenset({PlanStatus.COMPLETED, PlanStatus.FAILED, PlanStatus.CANCELLED})


@dataclass(slots=True)
class RetryState:
    can_retry: bool
    current_retry: int
    max_retries: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "can_retry": self.can_retry,
            "current_retry": self.current_retry,
            "max_retries": self.max_retries,
        }


@dataclass(slots=True)
class PlanSummary:
    has_active_plan: bool
    plan_id: str | None
    status: str
    progress: str
    progress_fraction: float
    completed_count: int = 0
    total_count: int = 0
    failed_count: int = 0
    pending_count: int = 0
    current_retry: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES

    @classmethod
    def empty(cls) -> PlanSummary:
        return cls(
            has_active_plan=False,
            plan_id=None,
            status="none",
            progress="0/0",
            progress_fraction=0.0,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "has_active_plan": self.has_active_plan,
            "plan_id": self.plan_id,
            "status": self.status,
            "progress": self.progress,
            "progress_fraction": self.progress_fraction,
            "completed_count": self.completed_count,
            "total_count": self.total_count,
            "failed_count": self.failed_count,
            "pending_count": self.pending_count,
            "current_retry": self.current_retry,
            "max_retries": self.max_retries,
        }


@dataclass(slots=True)
class RoutingPlan:
    plan_id: str
    created_at: str
    updated_at: str
    original_request: str
    status: PlanStatus
    strategy: PlanStrategy
    phases: list[Phase]
    total_count: int
    completed_count: int = 0
    failed_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    current_retry: int = 0
    pattern: str | None = None
    fail_reason: str | None = None
    task_index: dict[str, tuple[int, int]] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        self.rebuild_index()

    @classmethod
    def build(
        cls,
        phases: list[Phase],
        original_request: str = "",
        *,
        strategy: PlanStrategy | str = PlanStrategy.SEQUENTIAL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        pattern: str | None = None,
        plan_id: str | None = None,
    ) -> RoutingPlan:
        fresh_phases: list[Phase] = []
        for index, phase in enumerate(phases):
            tasks = []
            for task in phase.tasks:
                fresh = copy.deepcopy(task)
                fresh.status = TaskStatus.PENDING
                fresh.started_at = None
                fresh.completed_at = None
                fresh.error = None
                tasks.append(fresh)
            fresh_phases.append(Phase(index=index, parallel=phase.parallel, tasks=tasks))

        now = utcnow_iso()
        return cls(
            plan_id=plan_id or f"route-{uuid4().hex[:12]}",
            created_at=now,
            updated_at=now,
            original_request=original_request,
            status=PlanStatus.PENDING,
            strategy=PlanStrategy(strategy),
            phases=fresh_phases,
            total_count=sum(len(phase.tasks) for phase in fresh_phases),
            max_retries=max(0, int(max_retries)),
            pattern=pattern,
        )

    def rebuild_index(self) -> None:
        index: dict[str, tuple[int, int]] = {}
        for phase_index, phase in enumerate(self.phases):
            for task_index, task in enumerate(phase.tasks):
                if task.id in index:
                    raise ValueError(f"Duplicate task id in plan {self.plan_id}: {task.id}")
                index[task.id] = (phase_index, task_index)
        self.task_index = index

    @property
    def is_active(self) -> bool:
        return self.status not in TERMINAL_PLAN_STATUSES

    @property
    def progress(self) -> str:
        return f"{self.completed_count}/{self.total_count}"

    @property
    def progress_fraction(self) -> float:
        if self.total_count == 0:
            return 0.0
        return round(self.completed_count / self.total_count, 4)

    def iter_tasks(self) -> Iterator[Task]:
        for phase in self.phases:
            yield from phase.tasks

    def get_task(self, task_id: str) -> Task | None:
        location = self.task_index.get(task_id)
        if location is None:
            return None
        phase_index, task_index = location
        return self.phases[phase_index].tasks[task_index]

    def phase_of(self, task_id: str) -> Phase | None:
        location = self.task_index.get(task_id)
        if location is None:
            return None
        return self.phases[location[0]]

    def _transition_target(self, task_id: str) -> Task | None:
        if not self.is_active:
            logger.debug(
                "Ignoring transition for %s: plan %s is %s",
                task_id,
                self.plan_id,
                self.status.value,
            )
            return None
        task = self.get_task(task_id)
        if task is None:
            logger.debug(
                "Ignoring transition for unknown task %s in plan %s", task_id, self.plan_id
            )
        return task

    def _touch_started(self) -> None:
        if self.status == PlanStatus.PENDING:
            self.status = PlanStatus.IN_PROGRESS

    def mark_task_started(self, task_id: str) -> bool:
        task = self._transition_target(task_id)
        if task is None or task.status != TaskStatus.PENDING:
            return False
        task.status = TaskStatus.EXECUTING
        task.started_at = utcnow_iso()
        self._touch_started()
        return True

    def mark_task_completed(self, task_id: str) -> bool:
        task = self._transition_target(task_id)
        if task is None or task.is_terminal:
            return False
        now = utcnow_iso()
        task.status = TaskStatus.COMPLETED
        task.started_at = task.started_at or now
        task.completed_at = now
        self.completed_count += 1
        self._touch_started()
        if self.completed_count >= self.total_count:
            self.status = PlanStatus.COMPLETED
        return True

    def mark_task_failed(self, task_id: str, error: str = "") -> bool:
        task = self._transition_target(task_id)
        if task is None or task.is_terminal:
            return False
        now = utcnow_iso()
        task.status = TaskStatus.FAILED
        task.started_at = task.started_at or now
        task.completed_at = now
        task.error = error
        self.failed_count += 1
        self._touch_started()
        return True

    def mark_completed(self) -> bool:
        if not self.is_active:
            return False
        self.status = PlanStatus.COMPLETED
        return True

    def mark_failed(self, reason: str = "") -> bool:
        if not self.is_active:
            return False
        self.status = PlanStatus.FAILED
        self.fail_reason = reason
        return True

    def cancel(self) -> bool:
        if not self.is_active:
            return False
        self.status = PlanStatus.CANCELLED
        return True

    def increment_retry(self) -> RetryState:
        self.current_retry += 1
        return RetryState(
            can_retry=self.current_retry < self.max_retries,
            current_retry=self.current_retry,
            max_retries=self.max_retries,
        )

    def pending_tasks(self) -> list[Task]:
        if not self.is_active:
            return []
        for phase in self.phases:
            pending = phase.tasks_with_status(TaskStatus.PENDING)
            executing = phase.tasks_with_status(TaskStatus.EXECUTING)
            if not pending and not executing:
                continue
            if self.strategy == PlanStrategy.PARALLEL:
                if not pending:
                    continue
                pending = [task for task in pending if self._dependencies_resolved(task)]
            if phase.parallel:
                return pending
            if executing or not pending:
                return []
            return [pending[0]]
        return []

    def executing_tasks(self) -> list[Task]:
        return [task for task in self.iter_tasks() if task.status == TaskStatus.EXECUTING]

    def executable_tasks(self, limit_for: Callable[[str], int]) -> list[Task]:
        running: Counter[str] = Counter(task.role for task in self.executing_tasks())
        executable: list[Task] = []
        for task in self.pending_tasks():
            if running[task.role] < limit_for(task.role):
                running[task.role] += 1
                executable.append(task)
        return executable

    def tasks_for_role(self, role: str) -> list[Task]:
        return [task for task in self.iter_tasks() if task.role == role]

    def summary(self) -> PlanSummary:
        return PlanSummary(
            has_active_plan=self.is_active,
            plan_id=self.plan_id,
            status=self.status.value,
            progress=self.progress,
            progress_fraction=self.progress_fraction,
            completed_count=self.completed_count,
            total_count=self.total_count,
            failed_count=self.failed_count,
            pending_count=len(self.pending_tasks()),
            current_retry=self.current_retry,
            max_retries=self.max_retries,
        )

    def _dependencies_resolved(self, task: Task) -> bool:
        for dep_id in task.depends_on:
            dependency = self.get_task(dep_id)
            if dependency is not None and not dependency.is_terminal:
                return False
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "original_request": self.original_request,
            "pattern": self.pattern,
            "status": self.status.value,
            "strategy": self.strategy.value,
            "phases": [phase.to_dict() for phase in self.phases],
            "total_count": self.total_count,
            "completed_count": self.completed_count,
            "failed_count": self.failed_count,
            "max_retries": self.max_retries,
            "current_retry": self.current_retry,
            "fail_reason": self.fail_reason,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RoutingPlan:
        phases = [Phase.from_dict(item) for item in payload.get("phases", [])]
        return cls(
            plan_id=str(payload["plan_id"]),
            created_at=str(payload.get("created_at") or utcnow_iso()),
            updated_at=str(payload.get("updated_at") or utcnow_iso()),
            original_request=str(payload.get("original_request", "")),
            status=PlanStatus(payload.get("status", "pending")),
            strategy=PlanStrategy(payload.get("strategy", "sequential")),
            phases=phases,
            total_count=int(payload.get("total_count", sum(len(p.tasks) for p in phases))),
            completed_count=int(payload.get("completed_count", 0)),
            failed_count=int(payload.get("failed_count", 0)),
            max_retries=int(payload.get("max_retries", DEFAULT_MAX_RETRIES)),
            current_retry=int(payload.get("current_retry", 0)),
            pattern=payload.get("pattern"),
            fail_reason=payload.get("fail_reason"),
        )
