"""Observability helpers for pagerag."""

from __future__ import annotations

import logging
import time

import structlog
from prometheus_client import Counter, Histogram

_logger_configured = False


def configure_logging(level: int = logging.INFO) -> None:
    global _logger_configured  # noqa: PLW0603 - module-level guard
    if _logger_configured:
        return
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _logger_configured = True


def bind_correlation_id(correlation_id: str) -> None:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.clear_contextvars()


def get_logger(name: str = "pagerag") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


class PipelineMetrics:
    """Prometheus metrics for pipeline stages."""

    search_latency = Histogram(
        "pagerag_search_duration_seconds",
        "Time spent running one lexical search term.",
        buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0),
    )
    keyword_attempts = Histogram(
        "pagerag_keyword_attempts",
        "Keyword plan attempts used before search produced hits.",
        buckets=(0, 1, 2, 3, 4),
    )
    relevance_calls = Counter(
        "pagerag_relevance_calls_total",
        "Remote relevance classifications by outcome.",
        ["outcome"],
    )
    context_chars = Histogram(
        "pagerag_context_chars",
        "Characters in assembled context blocks.",
        buckets=(0, 500, 1000, 2000, 4000, 8000, 16000),
    )
    retrieval_latency = Histogram(
        "pagerag_retrieval_duration_seconds",
        "Time spent building the context for a question.",
        buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0),
    )
    stream_latency = Histogram(
        "pagerag_stream_duration_seconds",
        "Time from stream start to completion.",
        buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0),
    )

    @classmethod
    def observe_search(cls, duration_seconds: float) -> None:
        cls.search_latency.observe(duration_seconds)

    @classmethod
    def observe_retrieval(cls, duration_seconds: float, attempts: int, context_chars: int) -> None:
        cls.retrieval_latency.observe(duration_seconds)
        cls.keyword_attempts.observe(attempts)
        cls.context_chars.observe(context_chars)

    @classmethod
    def record_relevance(cls, outcome: str) -> None:
        cls.relevance_calls.labels(outcome=outcome).inc()

    @classmethod
    def observe_stream(cls, duration_seconds: float) -> None:
        cls.stream_latency.observe(duration_seconds)


class TimedSection:
    """Context manager capturing elapsed time for metrics."""

    def __init__(self, callback) -> None:
        self._callback = callback
        self._start = 0.0
        self.elapsed = 0.0

    def __enter__(self) -> "TimedSection":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: D401
        self.elapsed = time.perf_counter() - self._start
        self._callback(self.elapsed)


__all__ = [
    "PipelineMetrics",
    "TimedSection",
    "bind_correlation_id",
    "clear_correlation_id",
    "configure_logging",
    "get_logger",
]
