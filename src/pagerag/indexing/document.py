"""Paged document abstraction with native lexical search."""

from __future__ import annotations

import threading
import unicodedata
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence


@dataclass(frozen=True)
class TextSelection:
    """Location of one occurrence returned by a document's native search."""

    page_number: int
    start: int
    end: int
    text: str


class Document(Protocol):
    """Document text provider consumed by the retrieval core."""

    @property
    def page_count(self) -> int:
        """Number of pages in the document."""

    def page_text(self, page_number: int) -> str | None:
        """Full extractable text for a 1-based page number, if any."""

    def find(self, term: str, *, case_sensitive: bool = False) -> Sequence[TextSelection]:
        """Every occurrence of ``term`` across the document, in page order."""


def fold_text(text: str, *, case_sensitive: bool = False) -> tuple[str, list[int]]:
    """Fold ``text`` for matching and return the source offset of every folded char.

    Case-insensitive folding also strips combining marks so that ``"resume"``
    matches ``"résumé"``.
    """

    chars: list[str] = []
    offsets: list[int] = []
    for index, ch in enumerate(text):
        if case_sensitive:
            folded = ch
        else:
            decomposed = unicodedata.normalize("NFD", ch)
            folded = "".join(c for c in decomposed if not unicodedata.combining(c)).casefold()
        for c in folded:
            chars.append(c)
            offsets.append(index)
    return "".join(chars), offsets


class PagedTextDocument:
    """In-memory document made of per-page text; ``None`` marks a page without text."""

    def __init__(self, pages: Sequence[str | None], *, source: str | None = None) -> None:
        self._pages: tuple[str | None, ...] = tuple(pages)
        self.source = source
        self._fold_lock = threading.Lock()
        self._folded: Dict[bool, tuple[Optional[tuple[str, list[int]]], ...]] = {}

    @classmethod
    def from_text(cls, text: str, *, source: str | None = None) -> "PagedTextDocument":
        """Split plain text into pages on form-feed characters."""

        if not text:
            return cls([], source=source)
        return cls(text.split("\f"), source=source)

    @property
    def page_count(self) -> int:
        return len(self._pages)

    def page_text(self, page_number: int) -> str | None:
        if page_number < 1 or page_number > len(self._pages):
            return None
        return self._pages[page_number - 1]

    def find(self, term: str, *, case_sensitive: bool = False) -> Sequence[TextSelection]:
        if not term:
            return []
        needle, _ = fold_text(term, case_sensitive=case_sensitive)
        if not needle:
            return []
        selections: List[TextSelection] = []
        folded_pages = self._folded_pages(case_sensitive)
        for page_number, text in enumerate(self._pages, start=1):
            folded = folded_pages[page_number - 1]
            if folded is None:
                continue
            haystack, offsets = folded
            position = haystack.find(needle)
            while position != -1:
                start = offsets[position]
                end = offsets[position + len(needle) - 1] + 1
                selections.append(TextSelection(page_number=page_number, start=start, end=end, text=text[start:end]))
                position = haystack.find(needle, position + len(needle))
        return selections

    def _folded_pages(self, case_sensitive: bool) -> tuple[Optional[tuple[str, list[int]]], ...]:
        """Folded text per page, computed once for each case mode."""

        with self._fold_lock:
            folded = self._folded.get(case_sensitive)
            if folded is None:
                folded = tuple(
                    fold_text(text, case_sensitive=case_sensitive) if text else None for text in self._pages
                )
                self._folded[case_sensitive] = folded
        return folded
