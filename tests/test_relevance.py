"""Tests for fast scoring and remote relevance classification."""

from __future__ import annotations

import json
import threading
import time

import httpx

from pagerag.llm.endpoint import ChatEndpoint, EndpointConfig
from pagerag.models import SearchMatch
from pagerag.retrieval.relevance import (
    FastRelevanceScorer,
    QualityRelevanceFilter,
    RelevanceClassifier,
    RelevanceConfig,
    fast_score,
    parse_flexible_bool,
)


def _endpoint(handler) -> ChatEndpoint:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return ChatEndpoint(EndpointConfig(base_url="http://ollama.test", retry_backoff_seconds=0.0), client=client)


def _match(page: int, context: str) -> SearchMatch:
    return SearchMatch(page_number=page, match_text="atp", context=context, match_length=3)


def test_fast_score_prefers_coverage_and_exact_question():
    question = "atp synthase"
    assert fast_score(question, "ATP synthase spins.") > fast_score(question, "ATP is energy.")
    assert fast_score(question, "unrelated words") < 0.0 + 1e-9
    assert fast_score("", "anything") == 0.0
    assert fast_score(question, "atp synthase") == fast_score(question, "atp synthase")


def test_fast_select_is_deterministic_and_dedupes():
    matches = [
        _match(2, "ATP  is made\nby ATP synthase"),
        _match(1, "atp is made by atp synthase"),
        _match(3, "Glucose is broken down"),
        _match(4, "   "),
        _match(5, "x" * 900 + " atp synthase"),
    ]
    scorer = FastRelevanceScorer()
    first = scorer.select("atp synthase", matches)
    second = scorer.select("atp synthase", list(reversed(matches)))
    assert first == second
    assert 1 in first and 2 not in first
    assert 4 not in first
    assert all(len(match.context) <= 700 for page in first.values() for match in page)


def test_fast_select_keeps_top_twelve():
    matches = [_match(page, f"atp page {page}") for page in range(1, 21)]
    selected = FastRelevanceScorer().select("atp", matches)
    assert sum(len(v) for v in selected.values()) == 12


def test_parse_flexible_bool():
    assert parse_flexible_bool(True) is True
    assert parse_flexible_bool(0) is False
    assert parse_flexible_bool(" Yes ") is True
    assert parse_flexible_bool("n") is False
    assert parse_flexible_bool("maybe") is None
    assert parse_flexible_bool(None) is None


def test_classifier_reads_fenced_and_top_level_decisions():
    replies = iter(
        [
            {"message": {"content": '```json\n{"relevant": "no"}\n```'}},
            {"relevant": 1},
            {"message": {"content": 'I think {"relevant": false} is right'}},
        ]
    )
    classifier = RelevanceClassifier(_endpoint(lambda request: httpx.Response(200, json=next(replies))))
    assert classifier.classify("q", "a") is False
    assert classifier.classify("q", "b") is True
    assert classifier.classify("q", "c") is False


def test_classifier_fails_open_and_memoizes():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(500, text="overloaded")

    classifier = RelevanceClassifier(_endpoint(handler))
    assert classifier.is_relevant("q", "snippet") is True
    assert classifier.is_relevant("q", "snippet") is True
    assert len(calls) == 1


def test_classifier_retries_without_options_before_failing_open():
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        seen.append(payload)
        if "options" in payload:
            return httpx.Response(400, text="unknown option")
        return httpx.Response(200, json={"message": {"content": "{\"relevant\": false}"}})

    classifier = RelevanceClassifier(_endpoint(handler), options={"temperature": 0.0})
    assert classifier.classify("q", "snippet") is False
    assert [("options" in payload) for payload in seen] == [True, False]


def test_classifier_fails_open_when_retry_without_options_fails():
    seen: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(1)
        return httpx.Response(503, text="busy")

    classifier = RelevanceClassifier(_endpoint(handler), options={"temperature": 0.0})
    assert classifier.classify("q", "snippet") is True
    assert len(seen) == 2


def test_classifier_unparsable_reply_counts_as_relevant():
    classifier = RelevanceClassifier(
        _endpoint(lambda request: httpx.Response(200, json={"message": {"content": "hmm"}})),
    )
    assert classifier.classify("q", "s") is True


def test_quality_filter_stops_after_enough_relevant():
    calls = []
    lock = threading.Lock()

    def handler(request: httpx.Request) -> httpx.Response:
        with lock:
            calls.append(json.loads(request.content))
        return httpx.Response(200, json={"message": {"content": '{"relevant": true}'}})

    matches = [_match(page, f"snippet {page}") for page in range(10, 0, -1)]
    selector = QualityRelevanceFilter(
        RelevanceClassifier(_endpoint(handler)),
        RelevanceConfig(fast_mode=False, max_concurrent=3, min_relevant_before_stop=5),
    )
    accepted = selector.select("q", matches)

    assert sum(len(v) for v in accepted.values()) == 5
    assert len(calls) == 6
    assert set(accepted) <= {1, 2, 3, 4, 5, 6}


def test_quality_filter_limits_concurrency():
    state = {"active": 0, "peak": 0}
    lock = threading.Lock()

    def handler(request: httpx.Request) -> httpx.Response:
        with lock:
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
        time.sleep(0.05)
        with lock:
            state["active"] -= 1
        return httpx.Response(200, json={"message": {"content": '{"relevant": false}'}})

    matches = [_match(page, f"snippet {page}") for page in range(1, 8)]
    selector = QualityRelevanceFilter(
        RelevanceClassifier(_endpoint(handler)),
        RelevanceConfig(fast_mode=False, max_concurrent=3),
    )
    assert selector.select("q", matches) == {}
    assert 1 <= state["peak"] <= 3
