from __future__ import annotations

import re


def normalize_text(value: str) -> str:
    return " ".join(value.split()).strip()


def word_count(value: str) -> int:
    return len(re.findall(r"\b[\w'-]+\b", value))


def char_count(value: str) -> int:
    return len(value.strip())


def limit_violations(
    text: str,
    *,
    word_limit: int | None,
    char_limit: int | None,
) -> list[dict[str, object]]:
    """Funder length limits that ``text`` exceeds. Informational only."""
    violations: list[dict[str, object]] = []
    if word_limit is not None:
        words = word_count(text)
        if words > word_limit:
            violations.append({"kind": "WORD_LIMIT", "limit": word_limit, "actual": words})
    if char_limit is not None:
        chars = char_count(text)
        if chars > char_limit:
            violations.append({"kind": "CHAR_LIMIT", "limit": char_limit, "actual": chars})
    return violations
