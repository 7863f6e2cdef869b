from __future__ import annotations

import logging
from dataclasses import dataclass

from taskroute.config import TaskrouteConfig
from taskroute.decomposer import ClassifierHints, Decomposer
from taskroute.models import Phase, Task
from taskroute.patterns import Classification, classify
from taskroute.scheduler import schedule, unscheduled
from taskroute.state import PlanCreation, PlanStateStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PlanBuild:
    classification: Classification
    tasks: list[Task]
    phases: list[Phase]
    unscheduled: list[Task]
    creation: PlanCreation

    @property
    def partial(self) -> bool:
        return bool(self.unscheduled)


def build_plan(
    request: str,
    store: PlanStateStore,
    config: TaskrouteConfig | None = None,
    hints: ClassifierHints | None = None,
    *,
    workspace: str | None = None,
    strategy: str | None = None,
) -> PlanBuild:
    config = config or TaskrouteConfig.default()
    classification = classify(request)
    tasks = Decomposer(store.registry).decompose(request, classification.pattern, hints)
    phases = schedule(tasks, store.registry, max_parallel=config.scheduler.max_parallel)
    left_out = unscheduled(tasks, phases)
    if left_out:
        logger.warning("Plan for %r is partial: %d task(s) unscheduled", request, len(left_out))

    creation = store.create_plan(
        phases,
        request,
        workspace=workspace or config.state.workspace,
        strategy=strategy or config.plan.strategy,
        max_retries=config.plan.max_retries,
        pattern=classification.pattern.name,
    )
    return PlanBuild(
        classification=classification,
        tasks=tasks,
        phases=creation.plan.phases,
        unscheduled=left_out,
        creation=creation,
    )
