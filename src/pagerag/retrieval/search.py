"""Lexical search over the page index with surrounding-line context."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List

from pagerag.indexing.document import TextSelection
from pagerag.indexing.page_index import PageIndex
from pagerag.metrics.observability import PipelineMetrics, TimedSection, get_logger
from pagerag.models import SearchMatch


@dataclass(frozen=True)
class SearchConfig:
    """Configuration for lexical search."""

    case_sensitive: bool = False
    whole_words: bool = False
    context_lines: int = 2


def context_window(text: str, start: int, end: int, lines: int) -> str:
    """Text around ``text[start:end]``: the match's line plus ``lines - 1`` lines each side."""

    lines = max(1, lines)

    lower = start
    reached_start = False
    for _ in range(lines):
        cut = text.rfind("\n", 0, lower)
        if cut == -1:
            reached_start = True
            break
        lower = cut
    lower = 0 if reached_start else lower + 1

    upper = end
    for _ in range(lines):
        cut = text.find("\n", upper)
        if cut == -1:
            upper = len(text)
            break
        upper = cut + 1

    return text[lower:upper].strip()


def is_whole_word(text: str, start: int, end: int) -> bool:
    """True when neither neighbour of ``text[start:end]`` is alphanumeric."""

    if start > 0 and text[start - 1].isalnum():
        return False
    if end < len(text) and text[end].isalnum():
        return False
    return True


class SearchExecutor:
    """Runs one search term through the document's native search."""

    def __init__(self, index: PageIndex, config: SearchConfig | None = None) -> None:
        self._index = index
        self._config = config or SearchConfig()
        self._logger = get_logger("search")

    @property
    def config(self) -> SearchConfig:
        return self._config

    def search(
        self,
        term: str,
        *,
        case_sensitive: bool | None = None,
        whole_words: bool | None = None,
    ) -> List[SearchMatch]:
        if not term:
            return []
        document = self._index.document
        if document is None or not self._index.is_indexed:
            self._logger.info("search.skipped", term=term, loaded=document is not None)
            return []

        case_sensitive = self._config.case_sensitive if case_sensitive is None else case_sensitive
        whole_words = self._config.whole_words if whole_words is None else whole_words

        with TimedSection(PipelineMetrics.observe_search) as timer:
            selections = document.find(term, case_sensitive=case_sensitive)
            matches: List[SearchMatch] = []
            for selection in selections:
                match = self._to_match(selection, whole_words=whole_words)
                if match is not None:
                    matches.append(match)
        self._logger.info(
            "search.complete",
            term=term,
            selections=len(selections),
            matches=len(matches),
            duration_seconds=timer.elapsed,
        )
        return matches

    def _to_match(self, selection: TextSelection, *, whole_words: bool) -> SearchMatch | None:
        page_text = self._index.text(selection.page_number) or ""
        match_text = selection.text
        start, end = self._locate(selection, page_text)

        if whole_words and start is not None and not is_whole_word(page_text, start, end):
            return None

        if start is None:
            context = match_text
        else:
            context = context_window(page_text, start, end, self._config.context_lines)
        return SearchMatch(
            page_number=selection.page_number,
            match_text=match_text,
            context=context,
            match_length=len(match_text),
        )

    @staticmethod
    def _locate(selection: TextSelection, page_text: str) -> tuple[int | None, int]:
        if not page_text or not selection.text:
            return None, 0
        if page_text[selection.start : selection.end] == selection.text:
            return selection.start, selection.end
        position = page_text.lower().find(selection.text.lower())
        if position == -1:
            return None, 0
        return position, position + len(selection.text)
