"""Tests for question-to-context retrieval."""

from __future__ import annotations

import json

import httpx

from pagerag.indexing import PagedTextDocument, PageIndex
from pagerag.llm.endpoint import ChatEndpoint, EndpointConfig
from pagerag.retrieval import (
    ContextAssembler,
    ContextRetriever,
    KeywordPlanner,
    QualityRelevanceFilter,
    RelevanceClassifier,
    RelevanceConfig,
    SearchExecutor,
)

PAGES = [
    "Cells contain many organelles.\nThe mitochondria is the powerhouse of the cell.\nIt produces ATP.",
    "Nothing of interest on this page.",
]


class FakeEndpoint:
    """Answers keyword prompts from a per-attempt table and relevance prompts with a fixed verdict."""

    def __init__(self, keywords_by_attempt: dict[int, list[str]], relevant: bool = True) -> None:
        self.keywords_by_attempt = keywords_by_attempt
        self.relevant = relevant
        self.keyword_calls: list[int] = []
        self.relevance_calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        system = payload["messages"][0]["content"]
        user = payload["messages"][1]["content"]
        if "relevance classifier" in system:
            self.relevance_calls += 1
            return httpx.Response(200, json={"message": {"content": json.dumps({"relevant": self.relevant})}})
        if "still returned zero results" in user:
            attempt = 2
        elif "returned zero results" in user:
            attempt = 1
        else:
            attempt = 0
        self.keyword_calls.append(attempt)
        keywords = self.keywords_by_attempt.get(attempt, [])
        return httpx.Response(200, json={"message": {"content": json.dumps(keywords)}})


def _retriever(fake: FakeEndpoint, *, fast_mode: bool = True, pages=PAGES) -> ContextRetriever:
    client = httpx.Client(transport=httpx.MockTransport(fake))
    endpoint = ChatEndpoint(EndpointConfig(base_url="http://ollama.test", retry_backoff_seconds=0.0), client=client)
    index = PageIndex()
    if pages is not None:
        index.load(PagedTextDocument(pages)).result(timeout=5)
    config = RelevanceConfig(fast_mode=fast_mode)
    return ContextRetriever(
        index,
        KeywordPlanner(endpoint),
        SearchExecutor(index),
        ContextAssembler(index),
        quality_filter=QualityRelevanceFilter(RelevanceClassifier(endpoint), config),
        relevance_config=config,
    )


def test_fast_mode_builds_snippet_context():
    fake = FakeEndpoint({0: ["mitochondria"]})
    retriever = _retriever(fake)

    result = retriever.get_context("What is the function of mitochondria?")

    assert list(result.pages) == [1]
    assert result.context.startswith("[Page 1 - 1 matches]\nSnippet 1: ")
    assert "powerhouse" in result.context
    assert fake.keyword_calls == [0]
    assert fake.relevance_calls == 0


def test_quality_mode_includes_full_page():
    fake = FakeEndpoint({0: ["mitochondria"]})
    retriever = _retriever(fake, fast_mode=False)

    result = retriever.get_context("What is the function of mitochondria?")

    assert list(result.pages) == [1]
    assert result.context == f"[Page 1 - 1 matches]\n{PAGES[0]}\n\n"
    assert fake.relevance_calls == 1


def test_quality_mode_with_nothing_relevant_is_empty():
    fake = FakeEndpoint({0: ["mitochondria"]}, relevant=False)
    result = _retriever(fake, fast_mode=False).get_context("What is the function of mitochondria?")
    assert result.context == ""
    assert list(result.pages) == []


def test_escalates_to_broader_keywords():
    fake = FakeEndpoint({0: ["nonexistent"], 1: ["mitochondria"]})
    result = _retriever(fake).get_context("Tell me about the cell power plant")
    assert list(result.pages) == [1]
    assert fake.keyword_calls == [0, 1]


def test_all_attempts_empty_returns_empty_result():
    fake = FakeEndpoint({})
    result = _retriever(fake).get_context("Where is the zebra?")
    assert result.context == ""
    assert list(result.pages) == []
    assert fake.keyword_calls == [0, 1, 2]


def test_local_fallback_finds_matches():
    fake = FakeEndpoint({})
    result = _retriever(fake).get_context("Which organelles exist?")
    assert list(result.pages) == [1]
    assert fake.keyword_calls == [0, 1, 2]


def test_without_document_context_is_empty():
    fake = FakeEndpoint({0: ["mitochondria"]})
    result = _retriever(fake, pages=None).get_context("mitochondria")
    assert result.is_empty


def test_blank_question_skips_everything():
    fake = FakeEndpoint({0: ["mitochondria"]})
    assert _retriever(fake).get_context("   ").is_empty
    assert fake.keyword_calls == []


def test_context_cache_serves_repeat_questions():
    fake = FakeEndpoint({0: ["mitochondria"]})
    retriever = _retriever(fake)
    first = retriever.get_context("What is the function of mitochondria?")
    second = retriever.get_context("  What is the function of mitochondria?  ")
    assert second is first
    assert fake.keyword_calls == [0]


def test_context_cache_is_separate_per_relevance_mode():
    fake = FakeEndpoint({0: ["mitochondria"]}, relevant=False)
    retriever = _retriever(fake)
    question = "What is the function of mitochondria?"

    assert list(retriever.get_context(question, fast_mode=True).pages) == [1]
    assert list(retriever.get_context(question, fast_mode=False).pages) == []
    assert fake.relevance_calls == 1
    assert list(retriever.get_context(question).pages) == [1]


def test_clear_resets_document_state():
    fake = FakeEndpoint({0: ["mitochondria"]})
    retriever = _retriever(fake)
    retriever.get_context("What is the function of mitochondria?")
    retriever.clear()
    assert len(retriever.context_cache) == 0
    assert retriever.get_context("What is the function of mitochondria?").is_empty


def test_match_on_third_page_is_reported():
    fake = FakeEndpoint({0: ["mitochondria"]})
    pages = ["Intro.", "Other stuff.", "The mitochondria is the powerhouse of the cell."]
    result = _retriever(fake, pages=pages).get_context("what is the mitochondria")
    assert list(result.pages) == [3]
    assert "powerhouse of the cell" in result.context


def test_empty_document_tolerates_endpoint_failure():
    def failing(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="no model")

    result = _retriever(failing, pages=[]).get_context("what is the mitochondria")
    assert result.is_empty
    assert list(result.pages) == []


def test_quality_mode_fails_open_when_classifier_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        system = json.loads(request.content)["messages"][0]["content"]
        if "relevance classifier" in system:
            return httpx.Response(500, text="overloaded")
        return httpx.Response(200, json={"message": {"content": '["mitochondria"]'}})

    result = _retriever(handler, fast_mode=False).get_context("What is the function of mitochondria?")
    assert list(result.pages) == [1]
    assert "powerhouse" in result.context


def test_context_never_exceeds_budget():
    fake = FakeEndpoint({0: ["mitochondria"]})
    pages = ["mitochondria line\n" * 300 for _ in range(5)]
    result = _retriever(fake, fast_mode=False, pages=pages).get_context("Where is mitochondria mentioned?")
    assert len(result.context) == 4000
    assert list(result.pages) == [1]
