from __future__ import annotations

import logging
from collections import Counter

from taskroute.models import Phase, Task
from taskroute.roles import RoleRegistry, default_registry

logger = logging.getLogger(__name__)

MAX_PARALLEL_TASKS = 4


def schedule(
    tasks: list[Task],
    registry: RoleRegistry | None = None,
    max_parallel: int = MAX_PARALLEL_TASKS,
) -> list[Phase]:
    """Level tasks into phases with per-role admission control.

    A task joins the current phase once every dependency sits in an earlier
    phase, while the phase stays within its role's concurrency limit and the
    global ``max_parallel`` ceiling. Tasks are scanned in declared order so the
    result is reproducible. When a scan admits nothing, the remaining tasks
    depend on each other or on unknown ids; they are left out and a warning is
    logged.
    """
    roles = registry or default_registry()
    ceiling = max(1, int(max_parallel))
    assigned: set[str] = set()
    remaining = list(tasks)
    phases: list[Phase] = []

    while remaining:
        admitted: list[Task] = []
        per_role: Counter[str] = Counter()
        for task in remaining:
            if len(admitted) >= ceiling:
                break
            if not all(dep in assigned for dep in task.depends_on):
                continue
            if per_role[task.role] >= roles.limit_for(task.role):
                continue
            admitted.append(task)
            per_role[task.role] += 1

        if not admitted:
            logger.warning(
                "Circular or unresolvable dependency; %d task(s) left unscheduled: %s",
                len(remaining),
                ", ".join(task.id for task in remaining),
            )
            break

        phases.append(Phase(index=len(phases), parallel=len(admitted) > 1, tasks=admitted))
        assigned.update(task.id for task in admitted)
        admitted_ids = {id(task) for task in admitted}
        remaining = [task for task in remaining if id(task) not in admitted_ids]

    return phases


def unscheduled(tasks: list[Task], phases: list[Phase]) -> list[Task]:
    scheduled = {task.id for phase in phases for task in phase.tasks}
    return [task for task in tasks if task.id not in scheduled]
