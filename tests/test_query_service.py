"""Tests for query orchestration and reply fallbacks."""

from __future__ import annotations

import json
import threading

import httpx

from pagerag.config import get_settings
from pagerag.indexing import PagedTextDocument, PageIndex
from pagerag.llm.endpoint import ChatEndpoint, EndpointConfig
from pagerag.models import ChatMessage
from pagerag.services.chat import StreamState
from pagerag.services.query import QueryService, build_query_service

PAGE = "Intro line.\nThe mitochondria is the powerhouse of the cell.\nEnd line."


class FakeOllama:
    """Routes keyword, streaming and non-streaming chat requests."""

    def __init__(self, *, stream_body: bytes, once: httpx.Response | None = None) -> None:
        self.stream_body = stream_body
        self.once = once or httpx.Response(200, json={"message": {"content": ""}})
        self.chat_payloads: list[dict] = []
        self.once_calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        system = payload["messages"][0]["content"]
        if "keyword extraction" in system:
            return httpx.Response(200, json={"message": {"content": '["mitochondria"]'}})
        self.chat_payloads.append(payload)
        if payload["stream"]:
            return httpx.Response(200, content=self.stream_body)
        self.once_calls += 1
        return self.once


def _lines(*objects: dict) -> bytes:
    return b"".join(json.dumps(obj).encode("utf-8") + b"\n" for obj in objects)


def _service(fake: FakeOllama, **override) -> QueryService:
    settings = get_settings({"environment": "test", **override})
    endpoint = ChatEndpoint(
        EndpointConfig(base_url="http://ollama.test", retry_backoff_seconds=0.0),
        client=httpx.Client(transport=httpx.MockTransport(fake)),
    )
    index = PageIndex()
    index.load(PagedTextDocument([PAGE])).result(timeout=5)
    return build_query_service(settings, endpoint=endpoint, index=index)


def test_answer_streams_with_retrieved_context():
    fake = FakeOllama(stream_body=_lines({"message": {"content": "It makes ATP."}}, {"done": True}))
    answer = _service(fake).answer("What does the mitochondria do?")

    assert answer.text == "It makes ATP."
    assert answer.streamed is True
    assert list(answer.pages) == [1]
    assert answer.context.startswith("[Page 1 - 1 matches]")
    user_turn = fake.chat_payloads[0]["messages"][-1]["content"]
    assert user_turn.startswith("What does the mitochondria do?\n<context>[Page 1")


def test_prepare_attaches_references():
    fake = FakeOllama(stream_body=b"")
    turn = _service(fake).prepare("What does the mitochondria do?", [ChatMessage(role="assistant", text="Hi")])
    assert len(turn.history) == 2
    assert turn.question.is_user
    assert [ref.page_number for ref in turn.question.references] == [1]


def test_empty_stream_falls_back_to_single_request():
    fake = FakeOllama(
        stream_body=_lines({"done": True}),
        once=httpx.Response(200, json={"message": {"content": "Full answer"}}),
    )
    answer = _service(fake).answer("What does the mitochondria do?")
    assert answer.text == "Full answer"
    assert answer.streamed is False
    assert fake.once_calls == 1


def test_empty_fallback_reply_is_marked():
    fake = FakeOllama(stream_body=b"")
    assert _service(fake).answer("What does the mitochondria do?").text == "(Empty response)"


def test_fallback_failure_is_rendered():
    fake = FakeOllama(stream_body=b"", once=httpx.Response(500, text="out of memory"))
    text = _service(fake).answer("What does the mitochondria do?").text
    assert text.startswith("No response received. Error: ")
    assert "out of memory" in text


def test_stream_failure_is_rendered_inline():
    class Failing(FakeOllama):
        def __call__(self, request: httpx.Request) -> httpx.Response:
            payload = json.loads(request.content)
            if payload["stream"]:
                return httpx.Response(500, text="boom")
            return super().__call__(request)

    fake = Failing(stream_body=b"")
    text = _service(fake).answer("What does the mitochondria do?").text
    assert text.startswith("⚠️ ")
    assert "boom" in text
    assert fake.once_calls == 0


def test_selected_text_used_when_rag_disabled():
    fake = FakeOllama(stream_body=_lines({"message": {"content": "ok"}}, {"done": True}))
    service = _service(fake, use_rag=False)
    chunks = list(service.stream(service.prepare("Explain this", selected_text="  highlighted passage ")))

    assert chunks == ["ok"]
    user_turn = fake.chat_payloads[0]["messages"][-1]["content"]
    assert user_turn == "Explain this\n<context>highlighted passage\n</context>"


def test_rag_disabled_without_selection_sends_no_context():
    fake = FakeOllama(stream_body=_lines({"message": {"content": "ok"}}, {"done": True}))
    answer = _service(fake, use_rag=False).answer("Hello")
    assert answer.context == ""
    assert fake.chat_payloads[0]["messages"][-1]["content"] == "Hello"


class HeldStream(httpx.SyncByteStream):
    """Yields one fragment, then keeps the response open until closed."""

    def __init__(self) -> None:
        self.closed = threading.Event()

    def __iter__(self):
        yield _lines({"message": {"content": "It makes "}})
        self.closed.wait(5)

    def close(self) -> None:
        self.closed.set()


def test_closing_reply_stream_cancels_session():
    held = HeldStream()

    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        if "keyword extraction" in payload["messages"][0]["content"]:
            return httpx.Response(200, json={"message": {"content": '["mitochondria"]'}})
        return httpx.Response(200, stream=held)

    service = _service(handler)
    replies = service.stream(service.prepare("What does the mitochondria do?", []))
    assert next(replies) == "It makes "

    replies.close()

    assert service.chat_client.active_session.state is StreamState.CANCELLED
    assert held.closed.wait(5)
