from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

PlanStrategyName = Literal["sequential", "parallel"]
PLAN_STRATEGIES = ("sequential", "parallel")
DEFAULT_WORKSPACE = "default"


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"


@dataclass(slots=True)
class SchedulerConfig:
    max_parallel: int = 4


@dataclass(slots=True)
class PlanConfig:
    max_retries: int = 3
    strategy: PlanStrategyName = "sequential"


@dataclass(slots=True)
class DriverConfig:
    max_listed_tasks: int = 5
    escalation_listed_tasks: int = 3


@dataclass(slots=True)
class StateConfig:
    directory: str = ".taskroute/state"
    workspace: str = DEFAULT_WORKSPACE
    lock_timeout_seconds: float = 3.0


@dataclass(slots=True)
class TaskrouteConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    plan: PlanConfig = field(default_factory=PlanConfig)
    driver: DriverConfig = field(default_factory=DriverConfig)
    state: StateConfig = field(default_factory=StateConfig)
    concurrency: dict[str, int] = field(default_factory=dict)

    @classmethod
    def default(cls) -> TaskrouteConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> TaskrouteConfig:
        config = cls(
            project=ProjectConfig(**data.get("project", {})),
            scheduler=SchedulerConfig(**data.get("scheduler", {})),
            plan=PlanConfig(**data.get("plan", {})),
            driver=DriverConfig(**data.get("driver", {})),
            state=StateConfig(**data.get("state", {})),
            concurrency={
                str(role): int(limit) for role, limit in data.get("concurrency", {}).items()
            },
        )
        config.validate()
        return config

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
            },
            "scheduler": {
                "max_parallel": self.scheduler.max_parallel,
            },
            "plan": {
                "max_retries": self.plan.max_retries,
                "strategy": self.plan.strategy,
            },
            "driver": {
                "max_listed_tasks": self.driver.max_listed_tasks,
                "escalation_listed_tasks": self.driver.escalation_listed_tasks,
            },
            "state": {
                "directory": self.state.directory,
                "workspace": self.state.workspace,
                "lock_timeout_seconds": self.state.lock_timeout_seconds,
            },
            "concurrency": dict(self.concurrency),
        }

    def validate(self) -> None:
        if self.scheduler.max_parallel < 1:
            raise ValueError("scheduler.max_parallel must be >= 1.")
        if self.plan.max_retries < 0:
            raise ValueError("plan.max_retries must be >= 0.")
        if self.plan.strategy not in PLAN_STRATEGIES:
            raise ValueError(
                f"Unsupported plan.strategy: {self.plan.strategy!r}. "
                f"Use one of {PLAN_STRATEGIES}."
            )
        if self.driver.max_listed_tasks < 1:
            raise ValueError("driver.max_listed_tasks must be >= 1.")
        if self.driver.escalation_listed_tasks < 1:
            raise ValueError("driver.escalation_listed_tasks must be >= 1.")
        if not self.state.workspace.strip():
            raise ValueError("state.workspace must not be empty.")
        if self.state.lock_timeout_seconds <= 0:
            raise ValueError("state.lock_timeout_seconds must be > 0.")
        for role, limit in self.concurrency.items():
            if limit < 1:
                raise ValueError(f"concurrency.{role} must be >= 1, got {limit}.")

    def state_dir(self, repo_root: Path) -> Path:
        directory = Path(self.state.directory)
        if not directory.is_absolute():
            directory = repo_root / directory
        return directory


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: TaskrouteConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "scheduler", "plan", "driver", "state", "concurrency"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> TaskrouteConfig:
    """Load the config at ``path``, falling back to defaults when it is missing.

    Malformed TOML and out-of-range values both surface as ``ValueError`` so
    callers handle a single error type.
    """
    if not path.exists():
        return TaskrouteConfig.default()
    try:
        raw = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ValueError(f"malformed TOML: {exc}") from exc
    return TaskrouteConfig.from_dict(raw)


def save_config(path: Path, config: TaskrouteConfig) -> None:
    config.validate()
    path.write_text(dumps_toml(config), encoding="utf-8")
