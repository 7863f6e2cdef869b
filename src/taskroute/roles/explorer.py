from __future__ import annotations

from taskroute.roles.base import Role

EXPLORER = Role(
    name="explorer",
    description="Code exploration specialist",
    capability_keywords=frozenset(
        {
            "search",
            "find",
            "explore",
            "analyze",
            "understand",
            "investigate",
            "locate",
            "搜尋",
            "探索",
            "了解",
            "理解",
        }
    ),
    concurrency_limit=3,
    allowed_operation_kinds=frozenset({"read", "grep", "glob"}),
    order=20,
    instruction="""
You are the Explorer specialist.
Locate the relevant code, trace behavior, and report findings with file references.
Do not modify files.
""".strip(),
)
