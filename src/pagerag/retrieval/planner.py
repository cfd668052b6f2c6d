"""Turn a natural-language question into lexical search terms."""

from __future__ import annotations

import json
import re
from typing import Any, List, Mapping, Sequence

import httpx

from pagerag.llm.endpoint import ChatEndpoint, EndpointError, message_content
from pagerag.metrics.observability import get_logger
from pagerag.models import SearchPlan
from pagerag.retrieval.cache import KeywordCache
from pagerag.retrieval.text import dedupe_terms, normalize_tokens

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "to", "of", "in", "on", "for", "with", "at", "by", "from",
        "is", "are", "was", "were", "be", "been", "being",
        "what", "why", "how", "when", "where", "which", "who",
        "explain", "define", "meaning", "does", "do", "did", "can", "could", "should", "would",
    }
)

_STRUCTURAL_PATTERNS = tuple(
    re.compile(pattern)
    for pattern in (
        r"(chapter\s+\d+(?:\.\d+)*)",
        r"(section\s+\d+(?:\.\d+)*)",
        r"(figure\s+\d+(?:\.\d+)*)",
        r"(table\s+\d+(?:\.\d+)*)",
        r"(appendix\s+[a-z])",
    )
)
_COMPACT_CHAPTER = re.compile(r"chapter\s*\d+")
_INTERROGATIVE_PREFIXES = ("what is ", "what's ", "whats ", "tell me about ")

_KEYWORD_SYSTEM_PROMPT = "\n".join(
    [
        "You are a keyword extraction assistant for searching PDF documents.",
        "Your job is to pick 2-5 highly relevant keywords or short phrases from the user's question.",
        "Return ONLY a JSON array of strings, no extra text. Example:",
        '["chapter 3", "chapter 3 title", "section 3"]',
    ]
)

_BROADER_SYSTEM_PROMPT = "\n".join(
    [
        "You are a keyword extraction assistant for searching PDF documents.",
        "Your job is to generate search keywords that maximize recall.",
        "Prefer nouns/proper nouns/technical terms.",
        "Return ONLY a JSON array of strings, no extra text.",
    ]
)

SINGLE_TERM_FALLBACK_LIMIT = 6
LOCAL_FALLBACK_LIMIT = 10


def derived_terms(query: str) -> List[str]:
    """Structural references and a compact form of the question, in lower case."""

    lower = query.strip().lower()
    if not lower:
        return []

    found: List[str] = []
    for pattern in _STRUCTURAL_PATTERNS:
        found.extend(match.group(1).strip() for match in pattern.finditer(lower))

    if not found:
        # catches "chapter3"
        found.extend(re.sub(r"\s+", " ", match.group(0)) for match in _COMPACT_CHAPTER.finditer(lower))

    stripped = lower.replace("?", "")
    for prefix in _INTERROGATIVE_PREFIXES:
        stripped = stripped.replace(prefix, "")
    stripped = stripped.strip()
    if len(stripped) >= 3 and stripped != lower:
        found.append(stripped)

    return dedupe_terms(found)


def fallback_keywords(query: str, max_terms: int) -> List[str]:
    """Distinct non-stop-word tokens from the question."""

    keywords: List[str] = []
    for token in normalize_tokens(query):
        if token in STOP_WORDS or token in keywords:
            continue
        keywords.append(token)
        if len(keywords) >= max_terms:
            break
    return keywords


def _decode_string_array(raw: str) -> List[str] | None:
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if isinstance(decoded, list) and all(isinstance(item, str) for item in decoded):
        return decoded
    return None


def strip_code_fence(raw: str) -> str:
    cleaned = raw.strip()
    if cleaned.startswith("```"):
        newline = cleaned.find("\n")
        cleaned = cleaned[newline + 1 :] if newline != -1 else cleaned[3:]
        closing = cleaned.rfind("```")
        if closing != -1:
            cleaned = cleaned[:closing]
    return cleaned.strip()


def parse_keyword_array(raw: str) -> List[str] | None:
    """Parse a JSON string array out of model output.

    Accepts fenced code blocks and prose around the array; returns ``None``
    when no string array can be recovered.
    """

    cleaned = strip_code_fence(raw)
    parsed = _decode_string_array(cleaned)
    if parsed is not None:
        return parsed
    start = cleaned.find("[")
    end = cleaned.rfind("]")
    if start != -1 and end != -1 and start < end:
        return _decode_string_array(cleaned[start : end + 1])
    return None


def build_search_terms(question: str, keywords: Sequence[str]) -> List[str]:
    """Merge derived phrases, endpoint keywords and the raw question.

    Question-derived phrases lead so a generic keyword (``"chapter"``) never
    drives the search alone.
    """

    terms = dedupe_terms([*derived_terms(question), *keywords, question])
    if len(terms) == 1:
        terms = dedupe_terms([*terms, *fallback_keywords(question, SINGLE_TERM_FALLBACK_LIMIT)])
    return terms


def local_terms(question: str) -> List[str]:
    """Terms derived without any endpoint call."""

    return dedupe_terms([*derived_terms(question), *fallback_keywords(question, LOCAL_FALLBACK_LIMIT)])


class KeywordPlanner:
    """Produces keyword plans with three escalating endpoint strategies."""

    MAX_ATTEMPT = 2

    def __init__(
        self,
        endpoint: ChatEndpoint,
        *,
        cache: KeywordCache | None = None,
        options: Mapping[str, Any] | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._endpoint = endpoint
        self._cache = cache if cache is not None else KeywordCache()
        self._options = dict(options or {})
        self._timeout = timeout
        self._logger = get_logger("planner")

    @property
    def cache(self) -> KeywordCache:
        return self._cache

    def plan(self, question: str, attempt: int = 0) -> List[str]:
        """Ordered, distinct search terms for ``question`` at the given escalation level."""

        suggestion = self.suggest(question, attempt=attempt)
        terms = build_search_terms(question, suggestion.keywords)
        self._logger.info("planner.terms", question=question, attempt=attempt, terms=terms)
        return terms

    def suggest(self, question: str, attempt: int = 0) -> SearchPlan:
        """Keywords from the endpoint; empty on any failure, never raises."""

        if attempt == 0:
            cached = self._cache.get(question)
            if cached is not None:
                return SearchPlan(keywords=cached, attempt=0)

        label = "keywords" if attempt == 0 else f"keywords.broader[{attempt}]"
        try:
            body = self._endpoint.chat(
                self._messages(question, attempt),
                options=self._options,
                timeout=self._timeout,
                label=label,
                retry_without_options=True,
            )
        except (EndpointError, httpx.HTTPError, ValueError) as exc:
            self._logger.warning("planner.endpoint_failed", attempt=attempt, detail=str(exc))
            return SearchPlan(keywords=(), attempt=attempt)

        keywords = self._parse_body(body)
        if keywords is None:
            self._logger.warning("planner.unparsable", attempt=attempt, content=message_content(body))
            return SearchPlan(keywords=(), attempt=attempt)

        self._logger.info("planner.keywords", question=question, attempt=attempt, keywords=keywords)
        if attempt == 0:
            self._cache.set(question, keywords)
        return SearchPlan(keywords=tuple(keywords), attempt=attempt)

    @staticmethod
    def _parse_body(body: Any) -> List[str] | None:
        if isinstance(body, list):
            if not all(isinstance(item, str) for item in body):
                return None
            raw: List[str] | None = body
        else:
            content = message_content(body)
            raw = parse_keyword_array(content) if content is not None else None
        if raw is None:
            return None
        return [item.strip() for item in raw if item.strip()]

    @staticmethod
    def _messages(question: str, attempt: int) -> list[dict[str, str]]:
        if attempt == 0:
            user = "\n".join([f"Question: {question}", "", "Extract 2-5 search keywords or phrases."])
            return [
                {"role": "system", "content": _KEYWORD_SYSTEM_PROMPT},
                {"role": "user", "content": user},
            ]
        if attempt == 1:
            lines = [
                f"Question: {question}",
                "",
                "The previous search returned zero results.",
                "Generate 6-12 broader keywords or short phrases.",
                "Guidelines:",
                "- include alternative spellings and abbreviations",
                "- include shorter variants (single words) and longer phrases",
                "- avoid overly specific quotes",
            ]
        else:
            lines = [
                f"Question: {question}",
                "",
                "The previous broader keyword search still returned zero results.",
                "Generate 8-16 very broad search terms.",
                "Guidelines:",
                "- mostly single words",
                "- include likely synonyms",
                "- include related chapter/section labels (e.g., 'introduction', 'overview') if plausible",
                "- maximize recall",
            ]
        return [
            {"role": "system", "content": _BROADER_SYSTEM_PROMPT},
            {"role": "user", "content": "\n".join(lines)},
        ]
