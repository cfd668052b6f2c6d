"""Question-to-context orchestration."""

from __future__ import annotations

import time
from typing import List, Sequence

from pagerag.indexing.page_index import PageIndex
from pagerag.metrics.observability import PipelineMetrics, get_logger
from pagerag.models import ContextResult, SearchMatch
from pagerag.retrieval.assembler import ContextAssembler
from pagerag.retrieval.cache import ContextCache
from pagerag.retrieval.planner import KeywordPlanner, local_terms
from pagerag.retrieval.relevance import (
    FastRelevanceScorer,
    QualityRelevanceFilter,
    RelevanceConfig,
    RelevanceStrategy,
)
from pagerag.retrieval.search import SearchExecutor


class ContextRetriever:
    """Runs plan, search, relevance and assembly for one question.

    Empty searches escalate through two broader keyword plans and finally a
    purely local plan before giving up with an empty result.
    """

    def __init__(
        self,
        index: PageIndex,
        planner: KeywordPlanner,
        executor: SearchExecutor,
        assembler: ContextAssembler,
        *,
        fast_scorer: RelevanceStrategy | None = None,
        quality_filter: QualityRelevanceFilter | None = None,
        relevance_config: RelevanceConfig | None = None,
        context_cache: ContextCache | None = None,
    ) -> None:
        self._index = index
        self._planner = planner
        self._executor = executor
        self._assembler = assembler
        self._relevance_config = relevance_config or RelevanceConfig()
        self._fast_scorer: RelevanceStrategy = fast_scorer or FastRelevanceScorer(self._relevance_config)
        self._quality_filter = quality_filter
        self._context_cache = context_cache if context_cache is not None else ContextCache()
        self._logger = get_logger("retrieval")

    @property
    def context_cache(self) -> ContextCache:
        return self._context_cache

    def get_context(self, question: str, *, fast_mode: bool | None = None) -> ContextResult:
        normalized = question.strip()
        if not normalized:
            return ContextResult(context="", pages=[])

        fast = self._relevance_config.fast_mode if fast_mode is None else fast_mode
        cache_key = (normalized, fast)
        cached = self._context_cache.get(cache_key)
        if cached is not None:
            self._logger.info("retrieval.cache_hit", question=normalized, fast_mode=fast)
            return cached

        start = time.perf_counter()
        matches, attempts = self._collect_matches(normalized)
        if not matches:
            self._logger.info("retrieval.no_matches", question=normalized, attempts=attempts)
            PipelineMetrics.observe_retrieval(time.perf_counter() - start, attempts, 0)
            return ContextResult(context="", pages=[])

        if fast or self._quality_filter is None:
            accepted = self._fast_scorer.select(normalized, matches)
            context, pages = self._assembler.assemble(accepted, force_snippets_only=True)
        else:
            accepted = self._quality_filter.select(normalized, matches)
            context, pages = self._assembler.assemble(accepted)

        duration = time.perf_counter() - start
        PipelineMetrics.observe_retrieval(duration, attempts, len(context))
        if not pages:
            return ContextResult(context="", pages=[])

        result = ContextResult(context=context, pages=tuple(pages))
        self._context_cache.set(cache_key, result)
        self._logger.info(
            "retrieval.complete",
            question=normalized,
            pages=list(pages),
            chars=len(context),
            fast_mode=fast,
            attempts=attempts,
            duration_seconds=duration,
        )
        return result

    def run_search(self, terms: Sequence[str]) -> List[SearchMatch]:
        matches: List[SearchMatch] = []
        for term in terms:
            matches.extend(self._executor.search(term))
        return matches

    def _collect_matches(self, question: str) -> tuple[List[SearchMatch], int]:
        for attempt in range(KeywordPlanner.MAX_ATTEMPT + 1):
            terms = self._planner.plan(question, attempt=attempt)
            matches = self.run_search(terms)
            if matches:
                return matches, attempt + 1
            self._logger.info("retrieval.escalate", question=question, attempt=attempt, terms=terms)

        matches = self.run_search(local_terms(question))
        return matches, KeywordPlanner.MAX_ATTEMPT + 2

    def clear(self) -> None:
        """Reset document-scoped state; decision cache clearing is scheduled, not awaited."""

        self._index.clear()
        self._planner.cache.clear()
        self._context_cache.clear()
        if self._quality_filter is not None:
            self._quality_filter.classifier.cache.clear_async()

