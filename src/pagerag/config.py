"""Runtime configuration for the pagerag services."""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

GenerationTask = Literal["chat", "keywords", "relevance"]


class GenerationOptions(BaseModel):
    """Sampling options forwarded to the generation endpoint."""

    model_config = ConfigDict(frozen=True)

    temperature: Optional[float] = None
    top_p: Optional[float] = None
    num_predict: Optional[int] = None

    def as_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(
        env_prefix="pagerag_",
        env_file=".env",
        env_nested_delimiter="__",
        case_sensitive=False,
        frozen=True,
    )

    environment: Literal["dev", "test", "prod"] = "dev"

    # Generation endpoint
    ollama_base_url: str = "http://localhost:11434"
    chat_model: str = "ministral-3:3b"
    chat_timeout: float = Field(default=60.0, ge=1.0)
    keyword_timeout: float = Field(default=10.0, gt=0.0)
    relevance_timeout: float = Field(default=5.0, gt=0.0)

    chat_options: GenerationOptions = GenerationOptions()
    keyword_options: GenerationOptions = GenerationOptions()
    relevance_options: GenerationOptions = GenerationOptions()

    # Chat
    use_rag: bool = True
    max_chat_history_messages: int = Field(default=10, ge=1)

    # Search
    search_case_sensitive: bool = False
    search_whole_words: bool = False
    search_context_lines: int = Field(default=2, ge=1)

    # Context assembly
    fast_mode: bool = True
    max_pages_display: int = Field(default=10, ge=1)
    include_page_context: bool = True
    max_context_chars: int = Field(default=4000, ge=0)
    min_relevant_snippets_before_stop: int = Field(default=5, ge=1)
    context_cache_ttl_seconds: float = 600.0

    # API
    api_key: str | None = None  # if set, required in X-API-Key header
    max_upload_size_mb: int = 50

    def options_for(self, task: GenerationTask) -> dict[str, Any]:
        """Return the ``options`` payload for a generation task (empty when unset)."""

        if task == "chat":
            return self.chat_options.as_payload()
        if task == "keywords":
            return self.keyword_options.as_payload()
        return self.relevance_options.as_payload()


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
