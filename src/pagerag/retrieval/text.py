"""Small text helpers shared by the retrieval stages."""

from __future__ import annotations

import re
from typing import Iterable, List

_TOKEN_SPLIT = re.compile(r"[^\w]+|_+")


def normalize_tokens(text: str) -> List[str]:
    """Lower-case ``text`` and split it on non-alphanumerics, keeping tokens of 2+ chars."""

    return [token for token in _TOKEN_SPLIT.split(text.lower()) if len(token) >= 2]


def dedupe_terms(terms: Iterable[str]) -> List[str]:
    """Trim, drop empties and de-duplicate while preserving first-seen order."""

    seen: set[str] = set()
    ordered: List[str] = []
    for term in terms:
        cleaned = term.strip()
        if not cleaned or cleaned in seen:
            continue
        seen.add(cleaned)
        ordered.append(cleaned)
    return ordered


def clamp_snippet(text: str, max_chars: int) -> str:
    if max_chars <= 0:
        return ""
    return text[:max_chars]


def canonicalize_for_dedupe(text: str, limit: int = 500) -> str:
    """Lower-cased, whitespace-collapsed prefix used to spot duplicate snippets."""

    return " ".join(text.lower().split())[:limit]
