"""Tests for the FastAPI application."""

from __future__ import annotations

import json
from io import BytesIO

import httpx
from fastapi.testclient import TestClient

from pagerag.api.app import AppDependencies, create_app
from pagerag.config import Settings
from pagerag.indexing import PageIndex
from pagerag.llm.endpoint import ChatEndpoint, EndpointConfig
from pagerag.services.query import build_query_service

DOCUMENT = b"Preface page.\fThe mitochondria is the powerhouse of the cell.\nIt produces ATP."


def fake_ollama(request: httpx.Request) -> httpx.Response:
    payload = json.loads(request.content)
    system = payload["messages"][0]["content"]
    if "keyword extraction" in system:
        return httpx.Response(200, json={"message": {"content": '["mitochondria"]'}})
    if payload["stream"]:
        body = b'{"message":{"content":"It makes "}}\n{"message":{"content":"ATP."}}\n{"done":true}\n'
        return httpx.Response(200, content=body)
    return httpx.Response(200, json={"message": {"content": "unused"}})


def create_test_client(**overrides) -> tuple[TestClient, PageIndex]:
    settings = Settings(environment="test", **overrides)
    endpoint = ChatEndpoint(
        EndpointConfig(base_url="http://ollama.test", retry_backoff_seconds=0.0),
        client=httpx.Client(transport=httpx.MockTransport(fake_ollama)),
    )
    index = PageIndex()
    deps = AppDependencies(index=index, query_service=build_query_service(settings, endpoint=endpoint, index=index))
    app = create_app(settings=settings, dependencies=deps)
    return TestClient(app), index


def _upload(client: TestClient, name: str = "notes.txt", content: bytes = DOCUMENT, **kwargs):
    return client.post("/documents", files={"file": (name, BytesIO(content), "text/plain")}, **kwargs)


def test_upload_then_context_and_status():
    client, index = create_test_client()

    response = _upload(client)
    assert response.status_code == 201, response.text
    assert response.json()["page_count"] == 2
    assert index.wait_until_indexed(timeout=5)

    status_payload = client.get("/index/status").json()
    assert status_payload == {
        "loaded": True,
        "indexed": True,
        "page_count": 2,
        "indexed_pages": 2,
        "source": "notes.txt",
    }

    context = client.post("/context", json={"question": "What does the mitochondria do?"})
    assert context.status_code == 200, context.text
    assert context.json()["pages"] == [2]
    assert context.json()["context"].startswith("[Page 2 - 1 matches]")


def test_chat_streams_server_sent_events():
    client, index = create_test_client()
    _upload(client)
    assert index.wait_until_indexed(timeout=5)

    response = client.post("/chat", json={"question": "What does the mitochondria do?"})
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = [block for block in response.text.split("\n\n") if block]
    assert events[0].startswith("event: context\n")
    assert json.loads(events[0].split("data: ", 1)[1])["pages"] == [2]
    text = "".join(json.loads(block[len("data: ") :]) for block in events[1:-1])
    assert text == "It makes ATP."
    assert events[-1].startswith("event: done")


def test_reset_index_clears_document():
    client, index = create_test_client()
    _upload(client)
    assert client.delete("/index").status_code == 204
    assert client.get("/index/status").json()["loaded"] is False
    assert client.post("/context", json={"question": "mitochondria"}).json() == {"context": "", "pages": []}


def test_upload_rejects_unsupported_and_empty_files():
    client, _ = create_test_client()
    unsupported = _upload(client, name="slides.pptx")
    assert unsupported.status_code == 415
    assert "correlation_id" in unsupported.json()

    empty = _upload(client, content=b"")
    assert empty.status_code == 400


def test_api_key_required_when_configured():
    client, _ = create_test_client(api_key="secret")
    assert _upload(client).status_code == 401
    assert _upload(client, headers={"X-API-Key": "secret"}).status_code == 201


def test_health_endpoints_and_correlation_id():
    client, _ = create_test_client()
    health = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert health.status_code == 200
    assert health.json()["status"] == "ok"
    assert health.headers["X-Correlation-ID"] == "req-123"
    assert client.get("/livez").json() == {"status": "alive"}
    assert client.get("/healthz/ready").json() == {"status": "ready"}
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "pagerag_search_duration_seconds" in metrics.text
