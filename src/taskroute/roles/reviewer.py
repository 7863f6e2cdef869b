from __future__ import annotations

from taskroute.roles.base import Role

REVIEWER = Role(
    name="reviewer",
    description="Code review and security specialist",
    capability_keywords=frozenset(
        {"review", "security", "audit", "quality", "審查", "檢視", "評估", "安全"}
    ),
    concurrency_limit=1,
    allowed_operation_kinds=frozenset({"read", "grep", "glob", "bash"}),
    order=50,
    instruction="""
You are the Reviewer specialist.
Find correctness, maintainability, and security issues.
Classify findings as BLOCKER, MAJOR, MINOR, or SUGGESTION.
""".strip(),
)
