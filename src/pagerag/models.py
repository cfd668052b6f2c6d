"""Shared domain models used across the pagerag pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal, Sequence


@dataclass(frozen=True)
class SearchMatch:
    """One lexical hit inside the indexed document."""

    page_number: int
    match_text: str
    context: str
    match_length: int

    def with_context(self, context: str) -> "SearchMatch":
        return SearchMatch(
            page_number=self.page_number,
            match_text=self.match_text,
            context=context,
            match_length=self.match_length,
        )


@dataclass(frozen=True)
class SearchPlan:
    """Keywords suggested by the generation endpoint for one question."""

    keywords: Sequence[str] = ()
    attempt: int = 0


@dataclass(frozen=True)
class ContextResult:
    """Final retrieval output attached to a user question."""

    context: str
    pages: Sequence[int]
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_empty(self) -> bool:
        return not self.context


@dataclass(frozen=True)
class PageReference:
    """Page cited by a chat turn."""

    page_number: int
    text: str = ""
    relevance_score: float = 1.0


@dataclass(frozen=True)
class ChatMessage:
    """A single conversation turn as seen by the chat client."""

    role: Literal["user", "assistant"]
    text: str
    context: str | None = None
    references: Sequence[PageReference] = ()

    @property
    def is_user(self) -> bool:
        return self.role == "user"


@dataclass(frozen=True)
class Answer:
    """Complete answer produced for a question."""

    text: str
    context: str
    pages: Sequence[int]
    latency_ms: float
    streamed: bool = True
