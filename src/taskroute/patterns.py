from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from taskroute.matching import count_keywords, normalize, tokenize

logger = logging.getLogger(__name__)

PHRASE_BONUS = 2
PHRASE_WINDOW = 4


class DecompositionStrategy(str, Enum):
    BY_RESPONSIBILITY = "by_responsibility"
    BY_DEPENDENCY_CHAIN = "by_dependency_chain"
    BY_FILE_BOUNDARY = "by_file_boundary"
    BY_CONTENT_TYPE = "by_content_type"
    NONE = "none"


@dataclass(frozen=True, slots=True)
class PhraseRule:
    verbs: frozenset[str]
    objects: frozenset[str]

    def matches(self, tokens: list[str]) -> int:
        hits = 0
        for index, token in enumerate(tokens):
            if token not in self.verbs:
                continue
            window = tokens[index + 1 : index + 1 + PHRASE_WINDOW]
            if any(candidate in self.objects for candidate in window):
                hits += 1
        return hits


@dataclass(frozen=True, slots=True)
class TaskPattern:
    name: str
    keywords: frozenset[str]
    decomposition_strategy: DecompositionStrategy
    default_role_sequence: tuple[str, ...]
    phrase_rules: tuple[PhraseRule, ...] = ()

    def score(self, normalized: str, tokens: list[str]) -> int:
        keyword_score = count_keywords(normalized, self.keywords)
        phrase_score = sum(rule.matches(tokens) for rule in self.phrase_rules) * PHRASE_BONUS
        return keyword_score + phrase_score


@dataclass(slots=True)
class Classification:
    pattern: TaskPattern
    score: int
    scores: dict[str, int] = field(default_factory=dict)


NEW_FEATURE = TaskPattern(
    name="new_feature",
    keywords=frozenset(
        {"add", "create", "implement", "build", "introduce", "新增", "添加", "創建", "建立", "實作"}
    ),
    decomposition_strategy=DecompositionStrategy.BY_RESPONSIBILITY,
    default_role_sequence=("architect", "developer", "tester", "reviewer"),
    phrase_rules=(
        PhraseRule(
            verbs=frozenset({"add", "create", "implement", "build", "introduce"}),
            objects=frozenset(
                {
                    "feature",
                    "endpoint",
                    "page",
                    "component",
                    "api",
                    "support",
                    "command",
                    "option",
                    "module",
                    "service",
                    "screen",
                }
            ),
        ),
    ),
)

BUG_FIX = TaskPattern(
    name="bug_fix",
    keywords=frozenset(
        {
            "fix",
            "bug",
            "error",
            "crash",
            "crashes",
            "broken",
            "regression",
            "修復",
            "修正",
            "錯誤",
            "問題",
        }
    ),
    decomposition_strategy=DecompositionStrategy.BY_DEPENDENCY_CHAIN,
    default_role_sequence=("explorer", "developer", "tester"),
    phrase_rules=(
        PhraseRule(
            verbs=frozenset({"fix", "resolve", "repair", "debug"}),
            objects=frozenset(
                {
                    "bug",
                    "crash",
                    "error",
                    "issue",
                    "failure",
                    "exception",
                    "regression",
                    "leak",
                }
            ),
        ),
    ),
)

REFACTOR = TaskPattern(
    name="refactor",
    keywords=frozenset(
        {
            "refactor",
            "rewrite",
            "optimize",
            "restructure",
            "clean up",
            "simplify",
            "重構",
            "重寫",
            "優化",
            "改進",
        }
    ),
    decomposition_strategy=DecompositionStrategy.BY_FILE_BOUNDARY,
    default_role_sequence=("architect", "developer", "reviewer"),
    phrase_rules=(
        PhraseRule(
            verbs=frozenset({"refactor", "restructure", "rewrite", "split", "extract", "simplify"}),
            objects=frozenset(
                {"module", "class", "function", "code", "component", "service", "file", "files"}
            ),
        ),
    ),
)

TESTING = TaskPattern(
    name="testing",
    keywords=frozenset({"test", "tests", "verify", "coverage", "測試", "驗證", "確認"}),
    decomposition_strategy=DecompositionStrategy.BY_RESPONSIBILITY,
    default_role_sequence=("tester", "reviewer"),
    phrase_rules=(
        PhraseRule(
            verbs=frozenset({"add", "write", "improve", "increase", "extend"}),
            objects=frozenset({"test", "tests", "coverage"}),
        ),
    ),
)

DOCUMENTATION = TaskPattern(
    name="documentation",
    keywords=frozenset(
        {
            "doc",
            "docs",
            "documentation",
            "readme",
            "changelog",
            "comment",
            "comments",
            "docstring",
            "docstrings",
            "tutorial",
            "文檔",
            "文件",
            "說明",
            "註解",
        }
    ),
    decomposition_strategy=DecompositionStrategy.BY_CONTENT_TYPE,
    default_role_sequence=("developer",),
    phrase_rules=(
        PhraseRule(
            verbs=frozenset({"update", "write", "add", "improve", "document"}),
            objects=frozenset(
                {
                    "docs",
                    "documentation",
                    "readme",
                    "changelog",
                    "comments",
                    "docstrings",
                    "tutorial",
                    "guide",
                }
            ),
        ),
    ),
)

EXPLORATION = TaskPattern(
    name="exploration",
    keywords=frozenset(
        {
            "find",
            "search",
            "explore",
            "locate",
            "where",
            "understand",
            "explain",
            "找",
            "搜",
            "查",
            "了解",
            "理解",
            "是什麼",
        }
    ),
    decomposition_strategy=DecompositionStrategy.NONE,
    default_role_sequence=("explorer",),
    phrase_rules=(
        PhraseRule(
            verbs=frozenset({"find", "locate", "explain", "show", "search"}),
            objects=frozenset(
                {"where", "usage", "usages", "definition", "callers", "references", "code"}
            ),
        ),
    ),
)

DEFAULT_PATTERN = NEW_FEATURE
PATTERNS: dict[str, TaskPattern] = {
    pattern.name: pattern
    for pattern in (NEW_FEATURE, BUG_FIX, REFACTOR, TESTING, DOCUMENTATION, EXPLORATION)
}


def get_pattern(name: str) -> TaskPattern:
    pattern = PATTERNS.get(name)
    if pattern is None:
        raise ValueError(f"Unknown task pattern: {name!r}. Use one of {sorted(PATTERNS)}.")
    return pattern


def classify(request: str, patterns: dict[str, TaskPattern] | None = None) -> Classification:
    table = PATTERNS if patterns is None else patterns
    if not table:
        raise ValueError("Pattern table must not be empty.")
    normalized = normalize(request)
    tokens = tokenize(normalized)
    scores = {name: pattern.score(normalized, tokens) for name, pattern in table.items()}

    # Fall back to the table's first entry when it has no default pattern.
    fallback = DEFAULT_PATTERN.name if DEFAULT_PATTERN.name in table else next(iter(table))
    best = table[fallback]
    best_score = scores[fallback]
    for name, score in scores.items():
        if score > best_score:
            best = table[name]
            best_score = score

    if best_score == 0:
        logger.debug("No pattern keywords matched; using default pattern %s", best.name)
    return Classification(pattern=best, score=best_score, scores=scores)
