from taskroute.roles.architect import ARCHITECT
from taskroute.roles.base import DEFAULT_CONCURRENCY_LIMIT, Role, RoleRegistry
from taskroute.roles.developer import DEVELOPER
from taskroute.roles.explorer import EXPLORER
from taskroute.roles.reviewer import REVIEWER
from taskroute.roles.tester import TESTER

BUILTIN_ROLES = (ARCHITECT, EXPLORER, DEVELOPER, TESTER, REVIEWER)


def default_registry() -> RoleRegistry:
    return RoleRegistry(BUILTIN_ROLES)


__all__ = [
    "ARCHITECT",
    "BUILTIN_ROLES",
    "DEFAULT_CONCURRENCY_LIMIT",
    "DEVELOPER",
    "EXPLORER",
    "REVIEWER",
    "TESTER",
    "Role",
    "RoleRegistry",
    "default_registry",
]
