from taskroute.state.plan import (
    PlanStatus,
    PlanStrategy,
    PlanSummary,
    RetryState,
    RoutingPlan,
)
from taskroute.state.store import PlanCreation, PlanStateError, PlanStateStore

__all__ = [
    "PlanCreation",
    "PlanStateError",
    "PlanStateStore",
    "PlanStatus",
    "PlanStrategy",
    "PlanSummary",
    "RetryState",
    "RoutingPlan",
]
