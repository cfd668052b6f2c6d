"""Query orchestration combining retrieval and streamed generation."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Generator, Iterator, Sequence

from pagerag.config import Settings, get_settings
from pagerag.indexing.page_index import PageIndex
from pagerag.llm.endpoint import ChatEndpoint, EndpointConfig
from pagerag.metrics.observability import get_logger
from pagerag.models import Answer, ChatMessage, ContextResult, PageReference
from pagerag.retrieval.assembler import AssemblyConfig, ContextAssembler
from pagerag.retrieval.cache import ContextCache
from pagerag.retrieval.planner import KeywordPlanner
from pagerag.retrieval.relevance import (
    FastRelevanceScorer,
    QualityRelevanceFilter,
    RelevanceClassifier,
    RelevanceConfig,
)
from pagerag.retrieval.search import SearchConfig, SearchExecutor
from pagerag.retrieval.service import ContextRetriever
from pagerag.services.chat import (
    ChatConfig,
    ChatError,
    PromptBuilder,
    StreamChunk,
    StreamCompleted,
    StreamFailed,
    StreamingChatClient,
)

EMPTY_RESPONSE_TEXT = "(Empty response)"


@dataclass(frozen=True)
class PreparedTurn:
    """Conversation ready to send: prior turns plus the new user message."""

    history: Sequence[ChatMessage]
    context: ContextResult = field(default_factory=lambda: ContextResult(context="", pages=()))

    @property
    def question(self) -> ChatMessage:
        return self.history[-1]


class QueryService:
    """Orchestrates retrieval and generation for incoming questions."""

    def __init__(
        self,
        retriever: ContextRetriever,
        chat_client: StreamingChatClient,
        *,
        use_rag: bool = True,
    ) -> None:
        self._retriever = retriever
        self._chat = chat_client
        self._use_rag = use_rag
        self._logger = get_logger("query")

    @property
    def retriever(self) -> ContextRetriever:
        return self._retriever

    @property
    def chat_client(self) -> StreamingChatClient:
        return self._chat

    def prepare(
        self,
        question: str,
        history: Sequence[ChatMessage] = (),
        *,
        selected_text: str | None = None,
        fast_mode: bool | None = None,
    ) -> PreparedTurn:
        """Attach context to ``question``: retrieval when RAG is on, else the caller's selection."""

        question = question.strip()
        if self._use_rag:
            result = self._retriever.get_context(question, fast_mode=fast_mode)
        elif selected_text and selected_text.strip():
            result = ContextResult(context=selected_text.strip(), pages=())
        else:
            result = ContextResult(context="", pages=())

        message = ChatMessage(
            role="user",
            text=question,
            context=result.context or None,
            references=tuple(PageReference(page_number=page) for page in result.pages),
        )
        self._logger.info(
            "query.prepared",
            question=question,
            context_chars=len(result.context),
            pages=list(result.pages),
            use_rag=self._use_rag,
        )
        return PreparedTurn(history=(*history, message), context=result)

    def stream(self, turn: PreparedTurn) -> Generator[str, None, None]:
        """Yield answer text as it arrives; cancelled sessions simply stop yielding."""

        for text, _streamed in self._reply(turn):
            yield text

    def answer(
        self,
        question: str,
        history: Sequence[ChatMessage] = (),
        *,
        selected_text: str | None = None,
        fast_mode: bool | None = None,
    ) -> Answer:
        start = time.perf_counter()
        turn = self.prepare(question, history, selected_text=selected_text, fast_mode=fast_mode)
        parts: list[str] = []
        streamed = False
        for text, from_stream in self._reply(turn):
            parts.append(text)
            streamed = streamed or from_stream
        latency_ms = (time.perf_counter() - start) * 1000
        return Answer(
            text="".join(parts),
            context=turn.context.context,
            pages=tuple(turn.context.pages),
            latency_ms=latency_ms,
            streamed=streamed,
        )

    def cancel(self) -> None:
        self._chat.cancel_streaming()

    def _reply(self, turn: PreparedTurn) -> Iterator[tuple[str, bool]]:
        session = self._chat.send_message_stream(turn.history)
        fragments = 0
        try:
            for event in session.events():
                if isinstance(event, StreamChunk):
                    fragments += 1
                    yield event.text, True
                elif isinstance(event, StreamFailed):
                    prefix = "\n\n" if fragments else ""
                    yield f"{prefix}⚠️ {event.message}", False
                elif isinstance(event, StreamCompleted) and event.fragments == 0:
                    self._logger.info("query.stream_empty", question=turn.question.text)
                    yield self._fallback(turn), False
        finally:
            # no-op once the session has ended; stops it if the consumer went away
            session.cancel()

    def _fallback(self, turn: PreparedTurn) -> str:
        try:
            full = self._chat.send_message_once(turn.history)
        except ChatError as exc:
            self._logger.error("query.fallback_failed", detail=str(exc))
            return f"No response received. Error: {exc}"
        return full or EMPTY_RESPONSE_TEXT


def build_query_service(
    settings: Settings | None = None,
    *,
    endpoint: ChatEndpoint | None = None,
    index: PageIndex | None = None,
) -> QueryService:
    """Wire the retrieval pipeline and chat client from settings."""

    settings = settings or get_settings()
    endpoint = endpoint or ChatEndpoint(
        EndpointConfig(
            base_url=settings.ollama_base_url,
            model=settings.chat_model,
            timeout=settings.chat_timeout,
        ),
    )
    index = index or PageIndex()
    relevance_config = RelevanceConfig(
        fast_mode=settings.fast_mode,
        min_relevant_before_stop=settings.min_relevant_snippets_before_stop,
    )
    retriever = ContextRetriever(
        index,
        KeywordPlanner(
            endpoint,
            options=settings.options_for("keywords"),
            timeout=settings.keyword_timeout,
        ),
        SearchExecutor(
            index,
            SearchConfig(
                case_sensitive=settings.search_case_sensitive,
                whole_words=settings.search_whole_words,
                context_lines=settings.search_context_lines,
            ),
        ),
        ContextAssembler(
            index,
            AssemblyConfig(
                max_pages=settings.max_pages_display,
                include_full_page=settings.include_page_context,
                max_context_chars=settings.max_context_chars,
            ),
        ),
        fast_scorer=FastRelevanceScorer(relevance_config),
        quality_filter=QualityRelevanceFilter(
            RelevanceClassifier(
                endpoint,
                options=settings.options_for("relevance"),
                timeout=settings.relevance_timeout,
            ),
            relevance_config,
        ),
        relevance_config=relevance_config,
        context_cache=ContextCache(ttl_seconds=settings.context_cache_ttl_seconds),
    )
    chat_config = ChatConfig(
        max_history_messages=settings.max_chat_history_messages,
        timeout=settings.chat_timeout,
        options=settings.options_for("chat"),
    )
    chat_client = StreamingChatClient(
        endpoint,
        chat_config,
        PromptBuilder(max_history_messages=settings.max_chat_history_messages),
    )
    return QueryService(retriever, chat_client, use_rag=settings.use_rag)
