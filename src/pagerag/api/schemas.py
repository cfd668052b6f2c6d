"""Pydantic models for the pagerag API."""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class DocumentLoadResponse(BaseModel):
    filename: str = Field(..., description="Name of the uploaded document")
    page_count: int = Field(..., ge=0, description="Number of pages in the document")
    indexing: bool = Field(..., description="True while page text is still being indexed")


class IndexStatusResponse(BaseModel):
    loaded: bool
    indexed: bool
    page_count: int
    indexed_pages: int
    source: Optional[str] = None


class ContextRequest(BaseModel):
    question: str = Field(..., min_length=1, description="End-user question to retrieve context for")
    fast_mode: Optional[bool] = Field(
        default=None,
        description="Override the configured relevance mode for this request",
    )


class ContextResponse(BaseModel):
    context: str
    pages: List[int]


class ChatTurn(BaseModel):
    role: Literal["user", "assistant"]
    text: str
    context: Optional[str] = None


class ChatRequest(BaseModel):
    question: str = Field(..., min_length=1, description="End-user question to answer")
    history: List[ChatTurn] = Field(default_factory=list, description="Earlier conversation turns")
    selected_text: Optional[str] = Field(
        default=None,
        description="Context to attach when retrieval is disabled",
    )
    fast_mode: Optional[bool] = None
