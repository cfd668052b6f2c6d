"""Tests for the page index."""

from __future__ import annotations

import threading

from pagerag.indexing import PagedTextDocument, PageIndex


class SlowDocument(PagedTextDocument):
    """Blocks page extraction until released."""

    def __init__(self, pages):
        super().__init__(pages)
        self.release = threading.Event()

    def page_text(self, page_number: int):
        self.release.wait(5)
        return super().page_text(page_number)


def test_build_replaces_index_and_skips_missing_pages():
    index = PageIndex()
    index.build([(1, "alpha"), (2, None), (3, "gamma")])
    assert index.page_numbers() == [1, 3]
    assert index.text(1) == "alpha"
    assert index.text(2) is None

    index.build([(5, "epsilon")])
    assert index.page_numbers() == [5]
    assert index.text(1) is None


def test_load_marks_document_loaded_before_indexing_finishes():
    index = PageIndex()
    document = SlowDocument(["one", "two"])
    future = index.load(document)

    assert index.is_loaded
    assert index.page_count == 2
    assert not index.is_indexed

    document.release.set()
    future.result(timeout=5)
    assert index.wait_until_indexed(timeout=5)
    assert index.text(2) == "two"


def test_stale_build_does_not_overwrite_newer_document():
    index = PageIndex()
    stale = SlowDocument(["old text"])
    stale_future = index.load(stale)
    fresh_future = index.load(PagedTextDocument(["new text"]))

    stale.release.set()
    stale_future.result(timeout=5)
    fresh_future.result(timeout=5)

    assert index.wait_until_indexed(timeout=5)
    assert index.text(1) == "new text"


def test_clear_resets_everything():
    index = PageIndex()
    index.load(PagedTextDocument(["text"])).result(timeout=5)
    index.clear()
    assert not index.is_loaded
    assert not index.is_indexed
    assert len(index) == 0
