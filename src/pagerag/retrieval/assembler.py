"""Build the bounded context block from per-page matches."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Mapping, Sequence

from pagerag.indexing.page_index import PageIndex
from pagerag.metrics.observability import get_logger
from pagerag.models import SearchMatch
from pagerag.retrieval.text import clamp_snippet


@dataclass(frozen=True)
class AssemblyConfig:
    """Configuration for context assembly."""

    max_pages: int = 10
    include_full_page: bool = True
    max_context_chars: int = 4000
    snippets_per_page: int = 4
    snippet_max_chars: int = 700


class ContextAssembler:
    """Ranks pages and renders them into a context string within the character budget."""

    def __init__(self, index: PageIndex, config: AssemblyConfig | None = None) -> None:
        self._index = index
        self._config = config or AssemblyConfig()
        self._logger = get_logger("assembler")

    @staticmethod
    def rank_pages(page_matches: Mapping[int, Sequence[SearchMatch]]) -> List[int]:
        """Pages by descending match count, ties broken by ascending page number."""

        return sorted(page_matches, key=lambda page: (-len(page_matches[page]), page))

    def assemble(
        self,
        page_matches: Mapping[int, Sequence[SearchMatch]],
        *,
        force_snippets_only: bool = False,
    ) -> tuple[str, List[int]]:
        candidates = {page: matches for page, matches in page_matches.items() if matches}
        selected = self.rank_pages(candidates)[: self._config.max_pages]
        budget = self._config.max_context_chars
        include_full_page = self._config.include_full_page and not force_snippets_only

        context = ""
        pages: List[int] = []
        for page in selected:
            if len(context) >= budget:
                break
            block = self._render_page(page, candidates[page], include_full_page=include_full_page)
            remaining = budget - len(context)
            if len(block) > remaining:
                context += block[:remaining]
                pages.append(page)
                break
            context += block
            pages.append(page)

        self._logger.info(
            "context.assembled",
            pages=pages,
            chars=len(context),
            full_page=include_full_page,
        )
        return context, pages

    def _render_page(self, page: int, matches: Sequence[SearchMatch], *, include_full_page: bool) -> str:
        parts = [f"[Page {page} - {len(matches)} matches]\n"]
        if include_full_page:
            text = self._index.text(page)
            if text is not None:
                parts.append(text + "\n\n")
        else:
            for number, match in enumerate(matches[: self._config.snippets_per_page], start=1):
                parts.append(f"Snippet {number}: {clamp_snippet(match.context, self._config.snippet_max_chars)}\n")
            parts.append("\n")
        return "".join(parts)
