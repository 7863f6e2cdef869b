from __future__ import annotations

from taskroute.roles.base import Role

DEVELOPER = Role(
    name="developer",
    description="Code implementation specialist",
    capability_keywords=frozenset(
        {
            "implement",
            "fix",
            "refactor",
            "code",
            "edit",
            "modify",
            "develop",
            "實作",
            "實現",
            "編寫",
            "開發",
            "修改",
            "修復",
        }
    ),
    concurrency_limit=2,
    allowed_operation_kinds=frozenset({"read", "write", "edit", "grep", "glob", "bash"}),
    order=30,
    instruction="""
You are the Developer specialist.
Implement exactly what was designed.
Match repository conventions and keep changes atomic.
""".strip(),
)
