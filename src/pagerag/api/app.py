"""FastAPI application exposing pagerag services."""

from __future__ import annotations

import json
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator
from uuid import uuid4

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from pagerag.api.schemas import (
    ChatRequest,
    ContextRequest,
    ContextResponse,
    DocumentLoadResponse,
    IndexStatusResponse,
)
from pagerag.config import Settings, get_settings
from pagerag.indexing import DocumentLoadError, PageIndex, UnsupportedFileTypeError, load_document
from pagerag.indexing.loader import SUPPORTED_EXTENSIONS
from pagerag.llm.endpoint import ChatEndpoint, EndpointConfig
from pagerag.metrics.observability import bind_correlation_id, clear_correlation_id, configure_logging, get_logger
from pagerag.models import ChatMessage
from pagerag.services.query import QueryService, build_query_service


@dataclass(frozen=True)
class AppDependencies:
    index: PageIndex
    query_service: QueryService


def _build_dependencies(settings: Settings) -> AppDependencies:
    endpoint = ChatEndpoint(
        EndpointConfig(
            base_url=settings.ollama_base_url,
            model=settings.chat_model,
            timeout=settings.chat_timeout,
        ),
    )
    index = PageIndex()
    query_service = build_query_service(settings, endpoint=endpoint, index=index)
    return AppDependencies(index=index, query_service=query_service)


def _sse(data: object, event: str | None = None) -> str:
    prefix = f"event: {event}\n" if event else ""
    return f"{prefix}data: {json.dumps(data)}\n\n"


def create_app(*, settings: Settings | None = None, dependencies: AppDependencies | None = None) -> FastAPI:
    settings = settings or get_settings()
    deps = dependencies or _build_dependencies(settings)

    configure_logging()
    logger = get_logger("api")
    app = FastAPI(title="pagerag API", version="0.1.0")
    app.state.dependencies = deps

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Request-ID", uuid4().hex)
        request.state.correlation_id = correlation_id
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    def require_api_key(request: Request) -> None:
        expected = settings.api_key
        if not expected:
            return
        provided = request.headers.get("X-API-Key")
        if provided != expected:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")

    @app.exception_handler(DocumentLoadError)
    async def handle_load_error(request: Request, exc: DocumentLoadError) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        logger.error("document.load_error", correlation_id=correlation_id, detail=str(exc))
        code = (
            status.HTTP_415_UNSUPPORTED_MEDIA_TYPE
            if isinstance(exc, UnsupportedFileTypeError)
            else status.HTTP_422_UNPROCESSABLE_ENTITY
        )
        return JSONResponse(status_code=code, content={"detail": str(exc), "correlation_id": correlation_id})

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        logger.error("unhandled.error", correlation_id=correlation_id, detail=str(exc))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal Server Error", "correlation_id": correlation_id},
        )

    def get_dependencies(request: Request) -> AppDependencies:
        return request.app.state.dependencies

    def get_index(dep: AppDependencies = Depends(get_dependencies)) -> PageIndex:
        return dep.index

    def get_query_service(dep: AppDependencies = Depends(get_dependencies)) -> QueryService:
        return dep.query_service

    @app.post("/documents", response_model=DocumentLoadResponse, status_code=status.HTTP_201_CREATED)
    async def upload_document(
        file: UploadFile = File(...),
        service: QueryService = Depends(get_query_service),
        index: PageIndex = Depends(get_index),
        _auth: None = Depends(require_api_key),
    ) -> DocumentLoadResponse:
        filename = file.filename or f"upload-{uuid4().hex}"
        suffix = Path(filename).suffix.lower()
        if suffix not in SUPPORTED_EXTENSIONS:
            await file.close()
            raise UnsupportedFileTypeError(f"Unsupported document type: {suffix or '<none>'}")

        limit = settings.max_upload_size_mb * 1024 * 1024
        with tempfile.TemporaryDirectory() as tmpdir:
            destination = Path(tmpdir) / Path(filename).name
            bytes_written = 0
            with destination.open("wb") as out_f:
                while True:
                    chunk = await file.read(1024 * 1024)
                    if not chunk:
                        break
                    out_f.write(chunk)
                    bytes_written += len(chunk)
                    if bytes_written > limit:
                        await file.close()
                        raise HTTPException(
                            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                            detail=f"File too large (>{settings.max_upload_size_mb}MB): {filename}",
                        )
            await file.close()
            if bytes_written == 0:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"File is empty: {filename}")
            document = load_document(destination)
            document.source = filename

        # a new document invalidates every cache tied to the previous one
        service.cancel()
        service.retriever.clear()
        index.load(document)
        logger.info("document.uploaded", filename=filename, page_count=document.page_count)
        return DocumentLoadResponse(filename=filename, page_count=document.page_count, indexing=not index.is_indexed)

    @app.get("/index/status", response_model=IndexStatusResponse)
    async def index_status(index: PageIndex = Depends(get_index)) -> IndexStatusResponse:
        document = index.document
        return IndexStatusResponse(
            loaded=index.is_loaded,
            indexed=index.is_indexed,
            page_count=index.page_count,
            indexed_pages=len(index),
            source=getattr(document, "source", None),
        )

    @app.delete("/index", status_code=status.HTTP_204_NO_CONTENT)
    async def reset_index(
        service: QueryService = Depends(get_query_service),
        _auth: None = Depends(require_api_key),
    ) -> Response:
        service.cancel()
        service.retriever.clear()
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/context", response_model=ContextResponse)
    def retrieve_context(
        payload: ContextRequest,
        service: QueryService = Depends(get_query_service),
        _auth: None = Depends(require_api_key),
    ) -> ContextResponse:
        result = service.retriever.get_context(payload.question, fast_mode=payload.fast_mode)
        return ContextResponse(context=result.context, pages=list(result.pages))

    @app.post("/chat")
    def chat(
        payload: ChatRequest,
        service: QueryService = Depends(get_query_service),
        _auth: None = Depends(require_api_key),
    ) -> Response:
        history = [ChatMessage(role=turn.role, text=turn.text, context=turn.context) for turn in payload.history]
        turn = service.prepare(
            payload.question,
            history,
            selected_text=payload.selected_text,
            fast_mode=payload.fast_mode,
        )

        def iter_sse() -> Iterator[str]:
            replies = service.stream(turn)
            try:
                yield _sse({"pages": list(turn.context.pages), "chars": len(turn.context.context)}, event="context")
                for text in replies:
                    yield _sse(text)
                yield _sse({}, event="done")
            finally:
                replies.close()

        return StreamingResponse(iter_sse(), media_type="text/event-stream")

    @app.get("/metrics")
    async def metrics() -> Response:
        payload = generate_latest()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        from pagerag import __version__

        return {"status": "ok", "version": __version__, "environment": settings.environment}

    @app.head("/healthz")
    async def healthcheck_head() -> Response:
        return Response(status_code=status.HTTP_200_OK)

    @app.get("/livez")
    async def liveness() -> dict[str, str]:
        return {"status": "alive"}

    @app.get("/healthz/ready")
    async def readiness(index: PageIndex = Depends(get_index)) -> dict[str, str]:
        if index.is_loaded and not index.is_indexed:
            return {"status": "indexing"}
        return {"status": "ready"}

    return app


app = create_app()
