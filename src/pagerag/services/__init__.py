"""Service layer orchestrations for pagerag."""

from .chat import (
    ChatConfig,
    ChatError,
    PromptBuilder,
    StreamChunk,
    StreamCompleted,
    StreamFailed,
    StreamingChatClient,
    StreamSession,
    StreamState,
)
from .query import PreparedTurn, QueryService, build_query_service

__all__ = [
    "ChatConfig",
    "ChatError",
    "PreparedTurn",
    "PromptBuilder",
    "QueryService",
    "StreamChunk",
    "StreamCompleted",
    "StreamFailed",
    "StreamSession",
    "StreamState",
    "StreamingChatClient",
    "build_query_service",
]
