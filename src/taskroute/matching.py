from __future__ import annotations

import re
from collections.abc import Iterable

URL_PATTERN = re.compile(r"\bhttps?://\S+", re.IGNORECASE)
CODE_SPAN_PATTERN = re.compile(r"`[^`]*`")
PATH_PATTERN = re.compile(r"(?:[\w.-]*/)+[\w.-]+|[\w-]+\.[a-z]{1,5}\b", re.IGNORECASE)
WHITESPACE_PATTERN = re.compile(r"\s+")
TOKEN_PATTERN = re.compile(r"[a-z0-9]+(?:[-'][a-z0-9]+)*")


def normalize(text: str) -> str:
    """Lower-case text with URLs, inline code and file paths blanked out."""
    lowered = (text or "").lower()
    lowered = URL_PATTERN.sub(" ", lowered)
    lowered = CODE_SPAN_PATTERN.sub(" ", lowered)
    lowered = PATH_PATTERN.sub(" ", lowered)
    return WHITESPACE_PATTERN.sub(" ", lowered).strip()


def tokenize(normalized: str) -> list[str]:
    return TOKEN_PATTERN.findall(normalized)


def count_keyword(normalized: str, keyword: str) -> int:
    needle = keyword.strip().lower()
    if not needle:
        return 0
    if needle.isascii():
        return len(re.findall(rf"(?<![a-z0-9]){re.escape(needle)}(?![a-z0-9])", normalized))
    # CJK vocabulary has no word boundaries.
    return normalized.count(needle)


def count_keywords(normalized: str, keywords: Iterable[str]) -> int:
    return sum(count_keyword(normalized, keyword) for keyword in keywords)
