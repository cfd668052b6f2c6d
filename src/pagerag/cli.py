"""Command line entrypoint for asking questions about a local document."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Sequence

import httpx

from pagerag.config import Settings, get_settings
from pagerag.indexing import DocumentLoadError, PageIndex, load_document
from pagerag.llm.endpoint import ChatEndpoint, EndpointConfig, EndpointError
from pagerag.services.query import QueryService, build_query_service

INDEX_TIMEOUT_SECONDS = 120.0


def _endpoint(settings: Settings) -> ChatEndpoint:
    return ChatEndpoint(
        EndpointConfig(
            base_url=settings.ollama_base_url,
            model=settings.chat_model,
            timeout=settings.chat_timeout,
        ),
    )


def _settings_from_args(args: argparse.Namespace) -> Settings:
    override: dict[str, object] = {}
    if getattr(args, "mode", None):
        override["fast_mode"] = args.mode == "fast"
    if getattr(args, "no_rag", False):
        override["use_rag"] = False
    return get_settings(override or None)


def _open_service(args: argparse.Namespace) -> QueryService:
    settings = _settings_from_args(args)
    index = PageIndex()
    service = build_query_service(settings, endpoint=_endpoint(settings), index=index)
    index.load(load_document(args.document))
    if not index.wait_until_indexed(INDEX_TIMEOUT_SECONDS):
        raise DocumentLoadError(f"Timed out indexing {args.document}")
    return service


def run_ask(args: argparse.Namespace) -> int:
    service = _open_service(args)
    if args.no_stream:
        answer = service.answer(args.question, selected_text=args.selected_text)
        print(answer.text)
        if answer.pages:
            print(f"\nPages: {', '.join(str(page) for page in answer.pages)}", file=sys.stderr)
        return 0

    turn = service.prepare(args.question, selected_text=args.selected_text)
    try:
        for text in service.stream(turn):
            sys.stdout.write(text)
            sys.stdout.flush()
    except KeyboardInterrupt:
        service.cancel()
        return 130
    sys.stdout.write("\n")
    if turn.context.pages:
        print(f"Pages: {', '.join(str(page) for page in turn.context.pages)}", file=sys.stderr)
    return 0


def run_context(args: argparse.Namespace) -> int:
    service = _open_service(args)
    result = service.retriever.get_context(args.question)
    if args.json:
        print(json.dumps({"context": result.context, "pages": list(result.pages)}, indent=2))
    else:
        print(result.context)
        print(f"Pages: {list(result.pages)}", file=sys.stderr)
    return 0 if result.pages else 1


def run_ping(args: argparse.Namespace) -> int:
    endpoint = _endpoint(get_settings())
    try:
        reply = endpoint.ping()
    except (EndpointError, httpx.HTTPError, ValueError) as exc:
        print(f"Endpoint check failed: {exc}", file=sys.stderr)
        return 1
    finally:
        endpoint.close()
    print(reply.strip())
    return 0


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Ask questions about a PDF or text document.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    ask = subparsers.add_parser("ask", help="Answer a question about a document")
    ask.add_argument("document", type=Path, help="Path to a .pdf, .txt or .md document")
    ask.add_argument("question", help="Question to answer")
    mode = ask.add_mutually_exclusive_group()
    mode.add_argument("--fast", dest="mode", action="store_const", const="fast", help="Local relevance scoring")
    mode.add_argument("--quality", dest="mode", action="store_const", const="quality", help="Remote relevance checks")
    ask.add_argument("--no-stream", action="store_true", help="Print the answer only once it is complete")
    ask.add_argument("--no-rag", action="store_true", help="Skip retrieval and use --selected-text as context")
    ask.add_argument("--selected-text", default=None, help="Context to attach when retrieval is disabled")
    ask.set_defaults(handler=run_ask)

    context = subparsers.add_parser("context", help="Print the retrieved context for a question")
    context.add_argument("document", type=Path, help="Path to a .pdf, .txt or .md document")
    context.add_argument("question", help="Question to retrieve context for")
    mode = context.add_mutually_exclusive_group()
    mode.add_argument("--fast", dest="mode", action="store_const", const="fast")
    mode.add_argument("--quality", dest="mode", action="store_const", const="quality")
    context.add_argument("--json", action="store_true", help="Emit JSON instead of plain text")
    context.set_defaults(handler=run_context)

    ping = subparsers.add_parser("ping", help="Check that the generation endpoint answers")
    ping.set_defaults(handler=run_ping)
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    try:
        return args.handler(args)
    except DocumentLoadError as exc:
        print(f"Could not load document: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    sys.exit(main())
