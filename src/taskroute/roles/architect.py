from __future__ import annotations

from taskroute.roles.base import Role

ARCHITECT = Role(
    name="architect",
    description="Software architecture specialist",
    capability_keywords=frozenset(
        {
            "design",
            "api",
            "architecture",
            "interface",
            "schema",
            "structure",
            "設計",
            "架構",
            "規劃",
            "介面",
            "結構",
        }
    ),
    concurrency_limit=1,
    allowed_operation_kinds=frozenset({"read", "grep", "glob"}),
    order=10,
    instruction="""
You are the Architect specialist.
Analyze requirements, define interfaces and data shapes, and propose an approach.
You produce designs, not code.
""".strip(),
)
