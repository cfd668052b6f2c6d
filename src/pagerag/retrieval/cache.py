"""In-process memoization layers for the retrieval pipeline."""

from __future__ import annotations

import hashlib
import threading
import time
from concurrent.futures import Future
from typing import Callable, Dict, Hashable, Sequence

from pagerag.models import ContextResult


class KeywordCache:
    """Endpoint-suggested keywords keyed by the exact question text."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._storage: Dict[str, tuple[str, ...]] = {}

    def get(self, question: str) -> tuple[str, ...] | None:
        with self._lock:
            return self._storage.get(question)

    def set(self, question: str, keywords: Sequence[str]) -> None:
        with self._lock:
            self._storage[question] = tuple(keywords)

    def clear(self) -> None:
        with self._lock:
            self._storage.clear()

    def __len__(self) -> int:
        return len(self._storage)


class ContextCache:
    """Assembled context per (question, mode) key, valid for ``ttl_seconds``."""

    def __init__(self, ttl_seconds: float = 600.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._storage: Dict[Hashable, tuple[ContextResult, float]] = {}

    def get(self, key: Hashable) -> ContextResult | None:
        with self._lock:
            entry = self._storage.get(key)
            if entry is None:
                return None
            result, stored_at = entry
            if self._clock() - stored_at >= self._ttl:
                del self._storage[key]
                return None
            return result

    def set(self, key: Hashable, result: ContextResult) -> None:
        with self._lock:
            self._storage[key] = (result, self._clock())

    def clear(self) -> None:
        with self._lock:
            self._storage.clear()

    def __len__(self) -> int:
        return len(self._storage)


def decision_key(question: str, snippet: str) -> str:
    """Stable memoization key for one (question, snippet) pair."""

    return hashlib.sha256(f"{question}\n---\n{snippet}".encode("utf-8")).hexdigest()


class DecisionCache:
    """Relevance decisions shared by concurrent classification workers.

    :meth:`resolve` is single-flight: concurrent callers asking for the same
    key wait for the first caller's computation instead of repeating it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._storage: Dict[str, bool] = {}
        self._pending: Dict[str, Future] = {}

    def get(self, key: str) -> bool | None:
        with self._lock:
            return self._storage.get(key)

    def set(self, key: str, value: bool) -> None:
        with self._lock:
            self._storage[key] = value

    def resolve(self, key: str, compute: Callable[[], bool]) -> bool:
        with self._lock:
            if key in self._storage:
                return self._storage[key]
            pending = self._pending.get(key)
            owner = pending is None
            if owner:
                pending = Future()
                self._pending[key] = pending
        if not owner:
            return pending.result()
        try:
            value = compute()
        except BaseException as exc:
            with self._lock:
                self._pending.pop(key, None)
            pending.set_exception(exc)
            raise
        with self._lock:
            self._storage[key] = value
            self._pending.pop(key, None)
        pending.set_result(value)
        return value

    def clear(self) -> None:
        with self._lock:
            self._storage.clear()

    def clear_async(self) -> threading.Thread:
        """Schedule :meth:`clear` without waiting for it."""

        worker = threading.Thread(target=self.clear, name="decision-cache-clear", daemon=True)
        worker.start()
        return worker

    def __len__(self) -> int:
        return len(self._storage)
