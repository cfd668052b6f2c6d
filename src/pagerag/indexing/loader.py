"""Load documents from disk into paged text."""

from __future__ import annotations

import time
from pathlib import Path
from typing import List, Mapping

from langchain_community.document_loaders import PyPDFLoader, TextLoader
from langchain_community.document_loaders.base import BaseLoader

from pagerag.indexing.document import PagedTextDocument
from pagerag.metrics.observability import get_logger


class DocumentLoadError(RuntimeError):
    """Raised when a document cannot be read."""


class UnsupportedFileTypeError(DocumentLoadError):
    """Raised when a document extension is not supported by the loader."""


_LOADERS: Mapping[str, type[BaseLoader]] = {
    ".pdf": PyPDFLoader,
    ".txt": TextLoader,
    ".md": TextLoader,
}

SUPPORTED_EXTENSIONS = tuple(_LOADERS)

_logger = get_logger("loader")


def load_document(path: Path, *, encoding: str = "utf-8") -> PagedTextDocument:
    """Read ``path`` into a :class:`PagedTextDocument`.

    PDFs yield one page per PDF page (pages without extractable text become
    ``None``). Text files are split into pages on form feeds.
    """

    path = Path(path)
    suffix = path.suffix.lower()
    loader_cls = _LOADERS.get(suffix)
    if loader_cls is None:
        raise UnsupportedFileTypeError(f"Unsupported document type: {suffix or '<none>'}")

    start = time.perf_counter()
    try:
        if loader_cls is TextLoader:
            loaded = loader_cls(str(path), encoding=encoding).load()
        else:
            loaded = loader_cls(str(path)).load()
    except Exception as exc:  # pragma: no cover - loader specific errors
        raise DocumentLoadError(f"Failed to load {path}: {exc}") from exc

    if loader_cls is TextLoader:
        text = "".join(item.page_content for item in loaded)
        document = PagedTextDocument.from_text(text, source=str(path))
    else:
        pages: List[str | None] = []
        for item in loaded:
            content = item.page_content
            pages.append(content if content and content.strip() else None)
        document = PagedTextDocument(pages, source=str(path))

    _logger.info(
        "document.loaded",
        path=str(path),
        page_count=document.page_count,
        duration_seconds=time.perf_counter() - start,
    )
    return document
