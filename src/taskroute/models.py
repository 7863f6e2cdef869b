from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class TaskStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class Complexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.SKIPPED})


@dataclass(slots=True)
class Task:
    id: str
    role: str
    description: str
    inputs: list[str] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    estimated_complexity: Complexity = Complexity.MODERATE
    status: TaskStatus = TaskStatus.PENDING
    started_at: str | None = None
    completed_at: str | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "description": self.description,
            "inputs": list(self.inputs),
            "outputs": list(self.outputs),
            "depends_on": list(self.depends_on),
            "estimated_complexity": self.estimated_complexity.value,
            "status": self.status.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        return cls(
            id=str(payload["id"]),
            role=str(payload["role"]),
            description=str(payload.get("description", "")),
            inputs=[str(item) for item in payload.get("inputs", [])],
            outputs=[str(item) for item in payload.get("outputs", [])],
            depends_on=[str(item) for item in payload.get("depends_on", [])],
            estimated_complexity=Complexity(payload.get("estimated_complexity", "moderate")),
            status=TaskStatus(payload.get("status", "pending")),
            started_at=payload.get("started_at"),
            completed_at=payload.get("completed_at"),
            error=payload.get("error"),
        )


@dataclass(slots=True)
class Phase:
    index: int
    parallel: bool
    tasks: list[Task] = field(default_factory=list)

    def roles(self) -> list[str]:
        return [task.role for task in self.tasks]

    def tasks_with_status(self, status: TaskStatus) -> list[Task]:
        return [task for task in self.tasks if task.status == status]

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "parallel": self.parallel,
            "tasks": [task.to_dict() for task in self.tasks],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Phase:
        return cls(
            index=int(payload["index"]),
            parallel=bool(payload.get("parallel", False)),
            tasks=[Task.from_dict(item) for item in payload.get("tasks", [])],
        )
