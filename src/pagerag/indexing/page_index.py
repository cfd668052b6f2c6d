"""Page-number to text index for the currently loaded document."""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from pagerag.indexing.document import Document
from pagerag.metrics.observability import get_logger


class PageIndex:
    """Holds the loaded document and its extracted per-page text.

    Two readiness signals exist. ``is_loaded`` flips as soon as :meth:`load`
    stores the document, so native search works right away. ``is_indexed``
    flips once the background pass has extracted every page's text.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pages: Mapping[int, str] = MappingProxyType({})
        self._document: Optional[Document] = None
        self._generation = 0
        self._indexed = threading.Event()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="page-index")
        self._logger = get_logger("index")

    @property
    def document(self) -> Optional[Document]:
        return self._document

    @property
    def is_loaded(self) -> bool:
        return self._document is not None

    @property
    def is_indexed(self) -> bool:
        return self._indexed.is_set()

    @property
    def page_count(self) -> int:
        document = self._document
        return document.page_count if document is not None else 0

    def __len__(self) -> int:
        return len(self._pages)

    def text(self, page_number: int) -> str | None:
        return self._pages.get(page_number)

    def page_numbers(self) -> list[int]:
        return sorted(self._pages)

    def build(self, pages: Iterable[tuple[int, str | None]]) -> None:
        """Replace the index atomically with the given (page, text) pairs."""

        with self._lock:
            self._generation += 1
            generation = self._generation
        self._publish(generation, _collect(pages))

    def load(self, document: Document) -> Future:
        """Store ``document`` immediately and index its text in the background."""

        with self._lock:
            self._generation += 1
            generation = self._generation
            self._document = document
            self._pages = MappingProxyType({})
            self._indexed.clear()
        self._logger.info("index.document_loaded", page_count=document.page_count)
        return self._executor.submit(self._index_document, generation, document)

    def wait_until_indexed(self, timeout: float | None = None) -> bool:
        return self._indexed.wait(timeout)

    def clear(self) -> None:
        with self._lock:
            self._generation += 1
            self._document = None
            self._pages = MappingProxyType({})
            self._indexed.clear()

    def _index_document(self, generation: int, document: Document) -> None:
        pairs = []
        for page_number in range(1, document.page_count + 1):
            try:
                text = document.page_text(page_number)
            except Exception as exc:  # pragma: no cover - provider specific errors
                self._logger.warning("index.page_failed", page=page_number, detail=str(exc))
                continue
            pairs.append((page_number, text))
        self._publish(generation, _collect(pairs))

    def _publish(self, generation: int, pages: dict[int, str]) -> None:
        with self._lock:
            if generation != self._generation:
                self._logger.info("index.stale_build_dropped", generation=generation)
                return
            self._pages = MappingProxyType(pages)
            self._indexed.set()
        self._logger.info("index.ready", page_count=len(pages))


def _collect(pages: Iterable[tuple[int, str | None]]) -> dict[int, str]:
    collected: dict[int, str] = {}
    for page_number, text in pages:
        if text is None:
            continue
        collected[page_number] = text
    return collected
