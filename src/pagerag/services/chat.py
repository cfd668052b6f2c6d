"""Streaming chat client for the generation endpoint."""

from __future__ import annotations

import json
import queue
import socket
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, List, Mapping, Sequence, Union

import httpx

from pagerag.llm.endpoint import ChatEndpoint, EndpointError, message_content
from pagerag.metrics.observability import PipelineMetrics, get_logger
from pagerag.models import ChatMessage

SYSTEM_PROMPT = """\
You are the reading assistant for the document the user currently has open, usually a textbook or a research paper.

Your main job is to help the user understand and work with that document:
- Answer questions about its content (definitions, explanations, theorems, proofs, examples, figures, tables).
- Help them locate relevant chapters, sections, appendices and references using the provided context.
- Clarify concepts, walk through derivations step by step, and relate ideas across the document when helpful.

## Using the provided context
- A user turn may end with a `<context>` block containing excerpts from the document.
- Treat `<context>` as the primary source of truth about this document and prefer it over general knowledge.
- When the question depends on notation, definitions or assumptions shown in `<context>`, answer from those details.

## When context is missing or incomplete
- If `<context>` is empty or insufficient, say so briefly.
- You may then answer from general knowledge, clearly labelled as such, suggest where in the document to look,
  or propose a follow-up question that would let you be more specific.

## Style
- Be concise and structured; prefer short paragraphs and bullet points.
- Use LaTeX-style math inside Markdown when helpful, e.g. `$e^{i\\pi} + 1 = 0$`.
- Describe figures in words when needed.
- If a question is ambiguous, ask a short clarifying question instead of guessing.
- For quick references ("definition of X", "statement of theorem 3.1") give the key information first.

If the user asks something unrelated to the document, help as a general assistant and ignore `<context>` unless it is relevant.
"""


class ChatError(RuntimeError):
    """Raised when a non-streaming chat request fails."""


@dataclass(frozen=True)
class ChatConfig:
    """Configuration for chat requests."""

    max_history_messages: int = 10
    timeout: float = 60.0
    flush_interval_seconds: float = 0.05
    retry_backoff_seconds: float = 0.2
    max_timeout_retries: int = 1
    options: Mapping[str, Any] = field(default_factory=dict)


class PromptBuilder:
    """Renders the system prompt and the trailing conversation window."""

    def __init__(self, system_prompt: str = SYSTEM_PROMPT, max_history_messages: int = 10) -> None:
        self._system_prompt = system_prompt
        self._max_history = max(1, max_history_messages)

    def build_messages(self, history: Sequence[ChatMessage]) -> List[dict[str, str]]:
        messages = [{"role": "system", "content": self._system_prompt}]
        for message in list(history)[-self._max_history :]:
            content = message.text
            if message.context:
                content += f"\n<context>{message.context}\n</context>"
            messages.append({"role": "user" if message.is_user else "assistant", "content": content})
        return messages


class StreamState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class StreamChunk:
    text: str


@dataclass(frozen=True)
class StreamCompleted:
    text: str
    fragments: int


@dataclass(frozen=True)
class StreamFailed:
    message: str


StreamEvent = Union[StreamChunk, StreamCompleted, StreamFailed]

_END = object()


class StreamSession:
    """One in-flight streaming request.

    Events are delivered over a channel read with :meth:`events`: zero or more
    :class:`StreamChunk` items followed by exactly one :class:`StreamCompleted`
    or :class:`StreamFailed`. A cancelled session ends its channel without a
    terminal event and drops anything not yet consumed.
    """

    def __init__(self, endpoint: ChatEndpoint, payload: Mapping[str, Any], config: ChatConfig) -> None:
        self._endpoint = endpoint
        self._payload = dict(payload)
        self._config = config
        self._state = StreamState.IDLE
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._buffer: List[str] = []
        self._delivered: List[str] = []
        self._received_any = False
        self._timer: threading.Timer | None = None
        self._response: httpx.Response | None = None
        self._thread = threading.Thread(target=self._run, name="chat-stream", daemon=True)
        self._logger = get_logger("chat")

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def text(self) -> str:
        return "".join(self._delivered)

    def start(self) -> None:
        with self._lock:
            if self._state is not StreamState.IDLE:
                return
            self._state = StreamState.STREAMING
        self._thread.start()

    def events(self, timeout: float | None = None) -> Iterator[StreamEvent]:
        """Yield events until the session ends; ``queue.Empty`` on ``timeout``."""

        while True:
            item = self._queue.get(timeout=timeout)
            if item is _END:
                self._queue.put(_END)
                return
            yield item

    def join(self, timeout: float | None = None) -> None:
        if self._thread.is_alive():
            self._thread.join(timeout)

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def cancel(self) -> None:
        with self._lock:
            if self._state not in (StreamState.IDLE, StreamState.STREAMING):
                return
            self._state = StreamState.CANCELLED
            self._stop.set()
            self._cancel_timer()
            self._buffer.clear()
            self._drain()
            self._queue.put(_END)
            response = self._response
        if response is not None:
            self._abort_transfer(response)
        self._logger.info("chat.stream.cancelled", delivered_chars=len(self.text))

    def _run(self) -> None:
        started = time.perf_counter()
        attempt = 0
        while True:
            try:
                self._stream_attempt()
            except httpx.TimeoutException as exc:
                if self._stop.is_set():
                    return
                # retried only before any fragment has arrived
                if attempt < self._config.max_timeout_retries and not self._received_any:
                    attempt += 1
                    self._logger.warning(
                        "chat.stream.retry",
                        attempt=attempt,
                        backoff_seconds=self._config.retry_backoff_seconds,
                    )
                    if self._stop.wait(self._config.retry_backoff_seconds):
                        return
                    continue
                self._fail(f"Chat stream failed: {exc}")
                return
            except EndpointError as exc:
                self._fail(str(exc))
                return
            except Exception as exc:
                if self._stop.is_set():
                    # transport closed by cancel()
                    self._logger.debug("chat.stream.aborted", detail=str(exc))
                    return
                self._fail(f"Chat stream failed: {exc}")
                return
            if self._stop.is_set():
                return
            self._finish()
            PipelineMetrics.observe_stream(time.perf_counter() - started)
            return

    def _stream_attempt(self) -> None:
        with self._endpoint.client.stream(
            "POST",
            self._endpoint.chat_url,
            json=self._payload,
            timeout=self._config.timeout,
        ) as response:
            with self._lock:
                if self._state is not StreamState.STREAMING:
                    return
                self._response = response
            if not response.is_success:
                body = response.read().decode("utf-8", errors="replace")
                self._logger.error("chat.stream.http_error", status_code=response.status_code, body=body)
                raise EndpointError(response.status_code, body)
            for line in response.iter_lines():
                if self._stop.is_set():
                    return
                if self._consume_line(line):
                    return

    def _consume_line(self, line: str) -> bool:
        line = line.strip()
        if not line:
            return False
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            return False
        if not isinstance(payload, dict):
            return False
        content = message_content(payload)
        if content:
            self._append(content)
        return bool(payload.get("done"))

    def _append(self, content: str) -> None:
        with self._lock:
            if self._state is not StreamState.STREAMING:
                return
            self._buffer.append(content)
            self._received_any = True
            if self._timer is None:
                self._timer = threading.Timer(self._config.flush_interval_seconds, self._flush_due)
                self._timer.daemon = True
                self._timer.start()

    def _flush_due(self) -> None:
        with self._lock:
            self._timer = None
            if self._state is StreamState.STREAMING:
                self._flush_locked()

    def _flush_locked(self) -> None:
        if not self._buffer:
            return
        chunk = "".join(self._buffer)
        self._buffer.clear()
        self._delivered.append(chunk)
        self._queue.put(StreamChunk(chunk))

    def _finish(self) -> None:
        with self._lock:
            if self._state is not StreamState.STREAMING:
                return
            self._cancel_timer()
            self._flush_locked()
            self._state = StreamState.COMPLETED
            self._queue.put(StreamCompleted(text="".join(self._delivered), fragments=len(self._delivered)))
            self._queue.put(_END)
        self._logger.info("chat.stream.completed", chars=len(self.text))

    def _fail(self, message: str) -> None:
        with self._lock:
            if self._state is not StreamState.STREAMING:
                return
            self._cancel_timer()
            self._flush_locked()
            self._state = StreamState.FAILED
            self._queue.put(StreamFailed(message))
            self._queue.put(_END)
        self._logger.error("chat.stream.failed", detail=message)

    def _abort_transfer(self, response: httpx.Response) -> None:
        """Shut the socket down so a worker blocked in a read wakes up, then close."""

        network_stream = response.extensions.get("network_stream")
        sock = network_stream.get_extra_info("socket") if network_stream is not None else None
        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError as exc:
                self._logger.debug("chat.stream.shutdown_failed", detail=str(exc))
        response.close()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _drain(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return


class StreamingChatClient:
    """Issues chat requests; at most one streaming session is active at a time."""

    def __init__(
        self,
        endpoint: ChatEndpoint,
        config: ChatConfig | None = None,
        prompt_builder: PromptBuilder | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._config = config or ChatConfig()
        self._prompt_builder = prompt_builder or PromptBuilder(max_history_messages=self._config.max_history_messages)
        self._lock = threading.Lock()
        self._active: StreamSession | None = None

    @property
    def active_session(self) -> StreamSession | None:
        return self._active

    def send_message_stream(self, history: Sequence[ChatMessage]) -> StreamSession:
        """Cancel any running session, then start streaming a reply to ``history``."""

        payload = self._endpoint.build_payload(
            self._prompt_builder.build_messages(history),
            stream=True,
            options=self._config.options,
        )
        with self._lock:
            if self._active is not None:
                self._active.cancel()
            session = StreamSession(self._endpoint, payload, self._config)
            self._active = session
            session.start()
        return session

    def cancel_streaming(self) -> None:
        with self._lock:
            if self._active is not None:
                self._active.cancel()

    def send_message_once(self, history: Sequence[ChatMessage]) -> str:
        """Non-streaming request used when a stream produced nothing."""

        try:
            body = self._endpoint.chat(
                self._prompt_builder.build_messages(history),
                options=self._config.options,
                timeout=min(max(5.0, self._config.timeout), 60.0),
                label="chat.once",
            )
        except (EndpointError, httpx.HTTPError, ValueError) as exc:
            raise ChatError(str(exc) or exc.__class__.__name__) from exc
        return message_content(body) or ""
