from __future__ import annotations

from taskroute.roles.base import Role

TESTER = Role(
    name="tester",
    description="Testing specialist",
    capability_keywords=frozenset(
        {"test", "tests", "verify", "assert", "spec", "coverage", "測試", "驗證", "檢查"}
    ),
    concurrency_limit=1,
    allowed_operation_kinds=frozenset({"read", "write", "edit", "grep", "glob", "bash"}),
    order=40,
    instruction="""
You are the Tester specialist.
Design and run tests for happy path, edge cases, and failures.
Report clear pass/fail outcomes.
""".strip(),
)
