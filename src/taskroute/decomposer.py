from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from taskroute.models import Complexity, Task
from taskroute.patterns import DecompositionStrategy, TaskPattern
from taskroute.roles import RoleRegistry, default_registry

logger = logging.getLogger(__name__)

FILE_PATTERN = re.compile(
    r"[\w./-]+\.(?:jsx|tsx|json|yaml|yml|java|js|ts|py|go|rs|md)\b",
    re.IGNORECASE,
)

RESPONSIBILITY_CHAIN: dict[str, tuple[str, ...]] = {
    "explorer": (),
    "architect": ("explorer",),
    "developer": ("architect",),
    "tester": ("developer",),
    "reviewer": ("developer", "tester"),
}

ROLE_DESCRIPTIONS = {
    "architect": "Design the architecture and API interfaces for the request",
    "developer": "Implement the feature code",
    "tester": "Write and run tests",
    "reviewer": "Review code quality and security",
    "explorer": "Search and analyze the related code",
}

ROLE_OUTPUTS = {
    "architect": ["Architecture design document", "API interface definitions"],
    "developer": ["Implemented code"],
    "tester": ["Test code", "Test report"],
    "reviewer": ["Review report", "Improvement suggestions"],
    "explorer": ["Related file list", "Code analysis"],
}

# (content type, label, marker)
CONTENT_TYPES: tuple[tuple[str, str, re.Pattern[str]], ...] = (
    (
        "overview",
        "overview documentation",
        re.compile(r"\b(?:readme|overview|introduction|getting started)\b|說明文件"),
    ),
    (
        "interface_reference",
        "interface reference",
        re.compile(
            r"\b(?:api (?:docs?|documentation|reference)|reference docs?|interface reference"
            r"|endpoint docs?)\b"
        ),
    ),
    (
        "inline_annotations",
        "inline annotations",
        re.compile(r"\b(?:docstrings?|comments?|annotations?|inline docs?|type hints?)\b|註解"),
    ),
    (
        "tutorial",
        "tutorial",
        re.compile(r"\b(?:tutorials?|walkthroughs?|how-?to|guides?|examples?)\b|教學"),
    ),
    (
        "changelog",
        "changelog",
        re.compile(r"\b(?:changelog|change log|release notes?)\b|變更紀錄"),
    ),
)


@dataclass(slots=True)
class ClassifierHints:
    complexity: Complexity | None = None
    compound_requirement_count: int = 0


def extract_mentioned_files(request: str) -> list[str]:
    files: list[str] = []
    for match in FILE_PATTERN.finditer(request or ""):
        candidate = match.group(0)
        if candidate.startswith("./"):
            candidate = candidate[2:]
        if candidate not in files:
            files.append(candidate)
    return files


def detect_content_types(request: str) -> list[tuple[str, str]]:
    lowered = (request or "").lower()
    return [(name, label) for name, label, marker in CONTENT_TYPES if marker.search(lowered)]


def estimate_complexity(role: str, request: str) -> Complexity:
    length = len(request)
    if length > 200:
        base = Complexity.COMPLEX
    elif length > 50:
        base = Complexity.MODERATE
    else:
        base = Complexity.SIMPLE
    if role == "architect" and base == Complexity.SIMPLE:
        return Complexity.MODERATE
    return base


class Decomposer:
    def __init__(self, registry: RoleRegistry | None = None) -> None:
        self.registry = registry or default_registry()

    def decompose(
        self,
        request: str,
        pattern: TaskPattern,
        hints: ClassifierHints | None = None,
    ) -> list[Task]:
        request = request or ""
        files = extract_mentioned_files(request)
        strategy = pattern.decomposition_strategy

        if not request.strip():
            tasks = self._decompose_single(request, pattern)
        elif strategy == DecompositionStrategy.BY_RESPONSIBILITY:
            tasks = self._decompose_by_responsibility(request, pattern, files)
        elif strategy == DecompositionStrategy.BY_FILE_BOUNDARY:
            tasks = self._decompose_by_file_boundary(request, pattern, files)
        elif strategy == DecompositionStrategy.BY_DEPENDENCY_CHAIN:
            tasks = self._decompose_by_dependency_chain(request, files)
        elif strategy == DecompositionStrategy.BY_CONTENT_TYPE:
            tasks = self._decompose_by_content_type(request, files)
        else:
            tasks = self._decompose_single(request, pattern)

        if not tasks:
            logger.debug("Strategy %s produced no tasks; using single-task plan", strategy.value)
            tasks = self._decompose_single(request, pattern)

        if hints is not None and hints.compound_requirement_count > len(tasks):
            self._pad_compound_requirements(request, tasks, hints.compound_requirement_count)
        return tasks

    def required_roles(self, request: str, pattern: TaskPattern) -> list[str]:
        names = [name for name in pattern.default_role_sequence if name in self.registry]
        for role in self.registry.matching_roles(request):
            if role.name not in names:
                names.append(role.name)
        return sorted(names, key=self.registry.order_of)

    def _decompose_by_responsibility(
        self,
        request: str,
        pattern: TaskPattern,
        files: list[str],
    ) -> list[Task]:
        roles = self.required_roles(request, pattern)
        ids = {role: f"task-{index}" for index, role in enumerate(roles, start=1)}
        tasks: list[Task] = []
        for role in roles:
            predecessors = RESPONSIBILITY_CHAIN.get(role, ())
            tasks.append(
                Task(
                    id=ids[role],
                    role=role,
                    description=ROLE_DESCRIPTIONS.get(role, f"Perform the {role} task"),
                    inputs=[request, *files],
                    outputs=list(ROLE_OUTPUTS.get(role, ["Task completed"])),
                    depends_on=[ids[name] for name in predecessors if name in ids],
                    estimated_complexity=estimate_complexity(role, request),
                )
            )
        return tasks

    def _decompose_by_file_boundary(
        self,
        request: str,
        pattern: TaskPattern,
        files: list[str],
    ) -> list[Task]:
        if not files:
            return self._decompose_by_responsibility(request, pattern, files)

        tasks = [
            Task(
                id=f"task-{index}",
                role="developer",
                description=f"Restructure {path}",
                inputs=[path],
                outputs=[f"{path} (restructured)"],
                estimated_complexity=Complexity.MODERATE,
            )
            for index, path in enumerate(files, start=1)
        ]
        tasks.append(
            Task(
                id=f"task-{len(tasks) + 1}",
                role="reviewer",
                description="Review all restructuring changes",
                inputs=list(files),
                outputs=["Review report"],
                depends_on=[task.id for task in tasks],
                estimated_complexity=Complexity.MODERATE,
            )
        )
        return tasks

    @staticmethod
    def _decompose_by_dependency_chain(request: str, files: list[str]) -> list[Task]:
        return [
            Task(
                id="task-1",
                role="explorer",
                description="Locate the root cause",
                inputs=[request, *files],
                outputs=["Root cause analysis", "Affected file list"],
                estimated_complexity=Complexity.SIMPLE,
            ),
            Task(
                id="task-2",
                role="developer",
                description="Apply the fix",
                inputs=["Root cause analysis"],
                outputs=["Fixed code"],
                depends_on=["task-1"],
                estimated_complexity=Complexity.MODERATE,
            ),
            Task(
                id="task-3",
                role="tester",
                description="Verify the fix",
                inputs=["Fixed code"],
                outputs=["Test results", "Regression report"],
                depends_on=["task-2"],
                estimated_complexity=Complexity.SIMPLE,
            ),
        ]

    @staticmethod
    def _decompose_by_content_type(request: str, files: list[str]) -> list[Task]:
        detected = detect_content_types(request)
        if not detected:
            return [
                Task(
                    id="task-1",
                    role="developer",
                    description="Update the documentation",
                    inputs=[request, *files],
                    outputs=["Updated documentation"],
                    estimated_complexity=estimate_complexity("developer", request),
                )
            ]

        tasks = [
            Task(
                id=f"task-{index}",
                role="developer",
                description=f"Update the {label}",
                inputs=[request, *files],
                outputs=[f"Updated {label}"],
                estimated_complexity=estimate_complexity("developer", request),
            )
            for index, (_name, label) in enumerate(detected, start=1)
        ]
        if len(tasks) > 1:
            tasks.append(
                Task(
                    id=f"task-{len(tasks) + 1}",
                    role="reviewer",
                    description="Review documentation consistency across "
                    + ", ".join(label for _name, label in detected),
                    inputs=[output for task in tasks for output in task.outputs],
                    outputs=["Consistency review report"],
                    depends_on=[task.id for task in tasks],
                    estimated_complexity=Complexity.SIMPLE,
                )
            )
        return tasks

    def _decompose_single(self, request: str, pattern: TaskPattern) -> list[Task]:
        best = self.registry.best_match(request)
        if best is not None:
            role = best.name
        elif pattern.default_role_sequence:
            role = pattern.default_role_sequence[0]
        else:
            role = "explorer"
        return [
            Task(
                id="task-1",
                role=role,
                description=request.strip() or "Handle the request",
                inputs=[request] if request.strip() else [],
                outputs=["Result"],
                estimated_complexity=Complexity.SIMPLE,
            )
        ]

    def _pad_compound_requirements(self, request: str, tasks: list[Task], target: int) -> None:
        design_ids = [task.id for task in tasks if task.role == "architect"]
        taken = {task.id for task in tasks}
        next_number = len(tasks) + 1
        requirement = 1
        while len(tasks) < target:
            task_id = f"task-{next_number}"
            next_number += 1
            if task_id in taken:
                continue
            taken.add(task_id)
            tasks.append(
                Task(
                    id=task_id,
                    role="developer",
                    description=f"Implement remaining requirement {requirement} of the request",
                    inputs=[request],
                    outputs=["Implemented code"],
                    depends_on=list(design_ids),
                    estimated_complexity=estimate_complexity("developer", request),
                )
            )
            requirement += 1
        logger.debug("Padded decomposition to %d tasks for compound requirements", target)


def decompose(
    request: str,
    pattern: TaskPattern,
    hints: ClassifierHints | None = None,
    registry: RoleRegistry | None = None,
) -> list[Task]:
    return Decomposer(registry).decompose(request, pattern, hints)
