from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field, replace

from taskroute.matching import count_keywords, normalize

DEFAULT_CONCURRENCY_LIMIT = 2
UNKNOWN_ROLE_ORDER = 1000


@dataclass(frozen=True, slots=True)
class Role:
    name: str
    description: str
    capability_keywords: frozenset[str]
    concurrency_limit: int = 1
    allowed_operation_kinds: frozenset[str] = field(default_factory=frozenset)
    order: int = 100
    instruction: str = "You are a software specialist."

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise ValueError("Role name must not be empty.")
        if self.concurrency_limit < 1:
            raise ValueError(
                f"Role '{self.name}' concurrency_limit must be >= 1, got {self.concurrency_limit}."
            )


class RoleRegistry:
    def __init__(self, roles: Iterable[Role]) -> None:
        self._roles: dict[str, Role] = {}
        for role in roles:
            if role.name in self._roles:
                raise ValueError(f"Duplicate role registered: {role.name}")
            self._roles[role.name] = role

    def __contains__(self, name: object) -> bool:
        return name in self._roles

    def __iter__(self) -> Iterator[Role]:
        return iter(self.ordered())

    def __len__(self) -> int:
        return len(self._roles)

    def get(self, name: str) -> Role | None:
        return self._roles.get(name)

    def names(self) -> list[str]:
        return [role.name for role in self.ordered()]

    def ordered(self) -> list[Role]:
        return sorted(self._roles.values(), key=lambda role: (role.order, role.name))

    def limit_for(self, name: str) -> int:
        role = self._roles.get(name)
        if role is None:
            return DEFAULT_CONCURRENCY_LIMIT
        return role.concurrency_limit

    def order_of(self, name: str) -> int:
        role = self._roles.get(name)
        if role is None:
            return UNKNOWN_ROLE_ORDER
        return role.order

    def limits(self) -> dict[str, int]:
        return {role.name: role.concurrency_limit for role in self.ordered()}

    def matching_roles(self, request: str) -> list[Role]:
        normalized = normalize(request)
        return [
            role
            for role in self.ordered()
            if count_keywords(normalized, role.capability_keywords) > 0
        ]

    def best_match(self, request: str) -> Role | None:
        normalized = normalize(request)
        best: Role | None = None
        best_score = 0
        for role in self.ordered():
            score = count_keywords(normalized, role.capability_keywords)
            if score > best_score:
                best = role
                best_score = score
        return best

    def with_limits(self, overrides: Mapping[str, int]) -> RoleRegistry:
        unknown = sorted(name for name in overrides if name not in self._roles)
        if unknown:
            raise ValueError("Concurrency override for unknown roles: " + ", ".join(unknown))
        return RoleRegistry(
            replace(role, concurrency_limit=int(overrides[role.name]))
            if role.name in overrides
            else role
            for role in self._roles.values()
        )
