"""Document loading and page indexing."""

from .document import Document, PagedTextDocument, TextSelection
from .loader import SUPPORTED_EXTENSIONS, DocumentLoadError, UnsupportedFileTypeError, load_document
from .page_index import PageIndex

__all__ = [
    "Document",
    "DocumentLoadError",
    "PageIndex",
    "PagedTextDocument",
    "SUPPORTED_EXTENSIONS",
    "TextSelection",
    "UnsupportedFileTypeError",
    "load_document",
]
