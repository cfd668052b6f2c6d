"""Snippet relevance decisions: local scoring (fast mode) or remote classification (quality mode)."""

from __future__ import annotations

import json
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Protocol, Sequence

import httpx

from pagerag.llm.endpoint import ChatEndpoint, EndpointError, message_content
from pagerag.metrics.observability import PipelineMetrics, get_logger
from pagerag.models import SearchMatch
from pagerag.retrieval.cache import DecisionCache, decision_key
from pagerag.retrieval.planner import strip_code_fence
from pagerag.retrieval.text import canonicalize_for_dedupe, clamp_snippet, normalize_tokens

_RELEVANCE_SYSTEM_PROMPT = "\n".join(
    [
        "You are a relevance classifier for PDF question answering.",
        "",
        "Your job for each snippet is to decide whether it is relevant to answering the user's question.",
        "",
        "Return ONLY a single JSON object with this shape, no extra text:",
        "{",
        '  "relevant": true/false',
        "}",
    ]
)

PageMatches = Dict[int, List[SearchMatch]]


@dataclass(frozen=True)
class RelevanceConfig:
    """Configuration for both relevance strategies."""

    fast_mode: bool = True
    max_fast_snippets: int = 12
    snippet_max_chars: int = 700
    max_concurrent: int = 3
    min_relevant_before_stop: int = 5


class RelevanceStrategy(Protocol):
    """Filters pooled search matches down to the ones worth showing the model."""

    def select(self, question: str, matches: Sequence[SearchMatch]) -> PageMatches:
        """Return accepted matches grouped by page number."""


def fast_score(question: str, snippet: str) -> float:
    """Token overlap plus an exact-question boost, minus a small length penalty."""

    question_tokens = set(normalize_tokens(question))
    if not question_tokens:
        return 0.0
    snippet_tokens = set(normalize_tokens(snippet))
    if not snippet_tokens:
        return 0.0

    coverage = len(question_tokens & snippet_tokens) / max(1, len(question_tokens))

    boost = 0.0
    compact = question.strip().lower()
    if compact and compact in snippet.lower():
        boost += 0.5

    length_penalty = min(1.0, len(snippet) / 1200.0) * 0.15
    return coverage + boost - length_penalty


class FastRelevanceScorer:
    """Deterministic local ranking; never calls the endpoint."""

    def __init__(self, config: RelevanceConfig | None = None) -> None:
        self._config = config or RelevanceConfig()
        self._logger = get_logger("relevance")

    def rank(self, question: str, matches: Sequence[SearchMatch]) -> List[tuple[SearchMatch, float]]:
        scored = [(match, fast_score(question, match.context)) for match in matches]
        scored.sort(key=lambda item: (-item[1], item[0].page_number, len(item[0].context)))
        return scored

    def select(self, question: str, matches: Sequence[SearchMatch]) -> PageMatches:
        top = self.rank(question, matches)[: self._config.max_fast_snippets]
        seen: set[str] = set()
        accepted: PageMatches = defaultdict(list)
        for match, _score in top:
            canonical = canonicalize_for_dedupe(match.context)
            if not canonical or canonical in seen:
                continue
            seen.add(canonical)
            accepted[match.page_number].append(
                match.with_context(clamp_snippet(match.context, self._config.snippet_max_chars)),
            )
        self._logger.info("relevance.fast", candidates=len(matches), accepted=sum(len(v) for v in accepted.values()))
        return dict(accepted)


def parse_flexible_bool(value: Any) -> bool | None:
    """Interpret booleans, 0/1 numbers and yes/no style strings."""

    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "y", "1"}:
            return True
        if lowered in {"false", "no", "n", "0"}:
            return False
    return None


def _decision_from_body(body: Any) -> bool | None:
    if isinstance(body, Mapping) and "relevant" in body:
        return parse_flexible_bool(body["relevant"])
    content = message_content(body)
    if content is None:
        return None
    cleaned = strip_code_fence(content)
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        cleaned = cleaned[start : end + 1]
    try:
        inner = json.loads(cleaned)
    except json.JSONDecodeError:
        return None
    if isinstance(inner, Mapping) and "relevant" in inner:
        return parse_flexible_bool(inner["relevant"])
    return None


class RelevanceClassifier:
    """Remote binary classifier with memoized, fail-open decisions."""

    def __init__(
        self,
        endpoint: ChatEndpoint,
        *,
        cache: DecisionCache | None = None,
        options: Mapping[str, Any] | None = None,
        timeout: float = 5.0,
    ) -> None:
        self._endpoint = endpoint
        self._cache = cache if cache is not None else DecisionCache()
        self._options = dict(options or {})
        self._timeout = timeout
        self._logger = get_logger("relevance")

    @property
    def cache(self) -> DecisionCache:
        return self._cache

    def is_relevant(self, question: str, snippet: str) -> bool:
        key = decision_key(question, snippet)
        return self._cache.resolve(key, lambda: self.classify(question, snippet))

    def classify(self, question: str, snippet: str) -> bool:
        """One endpoint call; any failure counts as relevant."""

        user = "\n".join(["Question:", question, "", "Snippet:", snippet, "", "Decide relevance."])
        try:
            body = self._endpoint.chat(
                [
                    {"role": "system", "content": _RELEVANCE_SYSTEM_PROMPT},
                    {"role": "user", "content": user},
                ],
                options=self._options,
                timeout=self._timeout,
                label="relevance",
                retry_without_options=True,
            )
        except (EndpointError, httpx.HTTPError, ValueError) as exc:
            PipelineMetrics.record_relevance("fail_open")
            self._logger.warning("relevance.fail_open", detail=str(exc))
            return True

        decision = _decision_from_body(body)
        if decision is None:
            PipelineMetrics.record_relevance("fail_open")
            self._logger.warning("relevance.unparsable", body=body)
            return True
        PipelineMetrics.record_relevance("relevant" if decision else "irrelevant")
        self._logger.info("relevance.decision", relevant=decision)
        return decision


class QualityRelevanceFilter:
    """Classifies matches in batches of bounded concurrency, stopping early once enough are accepted."""

    def __init__(self, classifier: RelevanceClassifier, config: RelevanceConfig | None = None) -> None:
        self._classifier = classifier
        self._config = config or RelevanceConfig(fast_mode=False)
        self._logger = get_logger("relevance")

    @property
    def classifier(self) -> RelevanceClassifier:
        return self._classifier

    def select(self, question: str, matches: Sequence[SearchMatch]) -> PageMatches:
        by_page: PageMatches = defaultdict(list)
        for match in matches:
            by_page[match.page_number].append(match)
        pairs = [match for page in sorted(by_page) for match in by_page[page]]

        target = self._config.min_relevant_before_stop
        batch_size = max(1, self._config.max_concurrent)
        accepted: PageMatches = defaultdict(list)
        total = 0
        classified = 0

        with ThreadPoolExecutor(max_workers=batch_size, thread_name_prefix="relevance") as pool:
            index = 0
            while index < len(pairs) and total < target:
                batch = pairs[index : index + batch_size]
                index += len(batch)
                futures = {
                    pool.submit(self._classifier.is_relevant, question, match.context): match for match in batch
                }
                for future in as_completed(futures):
                    classified += 1
                    if total >= target:
                        continue
                    if future.result():
                        match = futures[future]
                        accepted[match.page_number].append(match)
                        total += 1

        self._logger.info(
            "relevance.quality",
            candidates=len(pairs),
            classified=classified,
            accepted=total,
            early_exit=classified < len(pairs),
        )
        return dict(accepted)
