"""HTTP client for the chat-completion generation endpoint."""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence, TypeVar

import httpx

from pagerag.metrics.observability import get_logger

T = TypeVar("T")

UNREACHABLE_LOG_INTERVAL_SECONDS = 10.0


@dataclass(frozen=True)
class EndpointConfig:
    """Connection settings for the generation endpoint."""

    base_url: str = "http://localhost:11434"
    model: str = "ministral-3:3b"
    timeout: float = 60.0
    max_timeout_retries: int = 1
    retry_backoff_seconds: float = 0.15


class EndpointError(RuntimeError):
    """Raised when the endpoint answers with a non-2xx status."""

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"Endpoint error (HTTP {status_code}). {body}".strip())
        self.status_code = status_code
        self.body = body


def with_timeout_retry(
    operation: Callable[[], T],
    *,
    label: str,
    max_retries: int = 1,
    backoff_seconds: float = 0.15,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation``, re-running it after a fixed pause when it times out.

    Only :class:`httpx.TimeoutException` is retried; every other error propagates.
    """

    logger = get_logger("endpoint")
    attempt = 0
    while True:
        try:
            return operation()
        except httpx.TimeoutException:
            attempt += 1
            if attempt > max_retries:
                raise
            logger.warning("endpoint.timeout_retry", label=label, attempt=attempt, backoff_seconds=backoff_seconds)
            sleep(backoff_seconds)


def message_content(body: Any) -> str | None:
    """Extract ``message.content`` from a chat response body."""

    if not isinstance(body, Mapping):
        return None
    message = body.get("message")
    if not isinstance(message, Mapping):
        return None
    content = message.get("content")
    return content if isinstance(content, str) else None


class ChatEndpoint:
    """Thin synchronous wrapper around ``POST {base_url}/api/chat``."""

    def __init__(self, config: EndpointConfig | None = None, client: httpx.Client | None = None) -> None:
        self._config = config or EndpointConfig()
        self._client = client or httpx.Client(timeout=self._config.timeout)
        self._logger = get_logger("endpoint")
        self._unreachable_lock = threading.Lock()
        self._last_unreachable_log: float | None = None

    @property
    def config(self) -> EndpointConfig:
        return self._config

    @property
    def client(self) -> httpx.Client:
        return self._client

    @property
    def chat_url(self) -> str:
        return f"{self._config.base_url.rstrip('/')}/api/chat"

    def build_payload(
        self,
        messages: Sequence[Mapping[str, str]],
        *,
        stream: bool,
        options: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self._config.model,
            "messages": [dict(message) for message in messages],
            "stream": stream,
        }
        if options:
            payload["options"] = dict(options)
        return payload

    def chat(
        self,
        messages: Sequence[Mapping[str, str]],
        *,
        options: Mapping[str, Any] | None = None,
        timeout: float | None = None,
        label: str = "chat",
        retry_without_options: bool = False,
    ) -> Any:
        """Issue a non-streaming chat request and return the decoded JSON body.

        Raises :class:`EndpointError` for non-2xx responses, ``ValueError`` for
        bodies that are not JSON, and ``httpx`` errors for transport failures.
        With ``retry_without_options`` a non-2xx answer to a request carrying
        ``options`` is re-issued once without them.
        """

        payload = self.build_payload(messages, stream=False, options=options)
        try:
            return self._send(payload, timeout=timeout, label=label)
        except EndpointError as exc:
            if not retry_without_options or "options" not in payload:
                raise
            self._logger.warning("endpoint.retry_without_options", label=label, status_code=exc.status_code)
        payload = self.build_payload(messages, stream=False)
        return self._send(payload, timeout=timeout, label=label)

    def _send(self, payload: Mapping[str, Any], *, timeout: float | None, label: str) -> Any:
        effective_timeout = timeout if timeout is not None else self._config.timeout

        def _post() -> httpx.Response:
            return self._client.post(self.chat_url, json=payload, timeout=effective_timeout)

        try:
            response = with_timeout_retry(
                _post,
                label=label,
                max_retries=self._config.max_timeout_retries,
                backoff_seconds=self._config.retry_backoff_seconds,
            )
        except httpx.HTTPError as exc:
            self.note_unreachable(exc, label=label)
            raise
        if not response.is_success:
            self._logger.error(
                "endpoint.http_error",
                label=label,
                status_code=response.status_code,
                body=response.text,
            )
            raise EndpointError(response.status_code, response.text)
        try:
            return response.json()
        except json.JSONDecodeError as exc:
            raise ValueError(f"{label}: response body is not JSON") from exc

    def note_unreachable(self, exc: Exception, *, label: str) -> None:
        """Warn (at most every 10 seconds) that the endpoint cannot be reached."""

        if not isinstance(exc, (httpx.ConnectError, httpx.TimeoutException, httpx.NetworkError)):
            return
        now = time.monotonic()
        with self._unreachable_lock:
            last = self._last_unreachable_log
            if last is not None and now - last < UNREACHABLE_LOG_INTERVAL_SECONDS:
                return
            self._last_unreachable_log = now
        self._logger.warning(
            "endpoint.unreachable",
            label=label,
            base_url=self._config.base_url,
            detail=str(exc),
        )

    def ping(self) -> str:
        """Ask the configured model to reply ``OK``; returns the raw reply."""

        body = self.chat(
            [
                {"role": "system", "content": "You are a helpful assistant."},
                {"role": "user", "content": "Reply with exactly: OK"},
            ],
            options={"temperature": 0.0, "num_predict": 16},
            timeout=min(max(5.0, self._config.timeout), 60.0),
            label="ping",
        )
        return message_content(body) or ""

    def close(self) -> None:
        self._client.close()
