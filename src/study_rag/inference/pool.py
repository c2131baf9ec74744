"""Bounded connection pool and short-lived response cache for inference calls."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import time
from collections import deque
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from study_rag.config import PoolConfig
from study_rag.errors import ConnectionUnavailable, InferenceTimeout, MalformedResponse
from study_rag.inference.client import InferenceBackend

logger = logging.getLogger(__name__)

_DOCUMENT_SIGNAL = re.compile(r"document[:\s]*(\d+)", flags=re.IGNORECASE)
_CHAPTER_SIGNAL = re.compile(r"chapter[:\s]*(\d+)", flags=re.IGNORECASE)


def extract_document_signal(prompt: str) -> tuple[int | None, int | None]:
    """Pull a ``document N`` / ``chapter N`` reference out of prompt text."""
    document = _DOCUMENT_SIGNAL.search(prompt)
    chapter = _CHAPTER_SIGNAL.search(prompt)
    return (
        int(document.group(1)) if document else None,
        int(chapter.group(1)) if chapter else None,
    )


def response_fingerprint(
    prompt: str, *, model: str, temperature: float, max_tokens: int
) -> str:
    document_id, chapter = extract_document_signal(prompt)
    digest = hashlib.sha256(prompt.encode("utf-8")).hexdigest()[:16]
    return "|".join(
        [
            model,
            f"{temperature:.2f}",
            str(max_tokens),
            f"doc={document_id}",
            f"ch={chapter}",
            digest,
            prompt[:500],
        ]
    )


def default_max_tokens(prompt: str) -> int:
    if len(prompt) < 1000:
        return 800
    if len(prompt) < 3000:
        return 1200
    return 2000


@dataclass(slots=True)
class _CachedResponse:
    text: str
    created_at: float
    document_id: int | None
    chapter: int | None


class ResponseCache:
    """In-memory TTL cache of generated text, trimmed by evicting the oldest entry."""

    def __init__(
        self,
        *,
        ttl_seconds: float = 1800.0,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, _CachedResponse] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if self._clock() - entry.created_at > self.ttl_seconds:
            del self._entries[key]
            self.misses += 1
            return None
        self.hits += 1
        return entry.text

    def put(self, key: str, text: str, *, prompt: str) -> None:
        self._entries.pop(key, None)
        if len(self._entries) >= self.max_entries:
            oldest = next(iter(self._entries))
            del self._entries[oldest]
        document_id, chapter = extract_document_signal(prompt)
        self._entries[key] = _CachedResponse(
            text=text, created_at=self._clock(), document_id=document_id, chapter=chapter
        )

    def invalidate_document(self, document_id: int, chapter: int | None = None) -> int:
        """Drop entries whose prompt referenced the document (and chapter, if given)."""
        doomed = [
            key
            for key, entry in self._entries.items()
            if entry.document_id == document_id and (chapter is None or entry.chapter == chapter)
        ]
        for key in doomed:
            del self._entries[key]
        if doomed:
            logger.info("Invalidated %d cached responses for document %s", len(doomed), document_id)
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> dict[str, float | int]:
        total = self.hits + self.misses
        return {
            "size": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total if total else 0.0,
        }


@dataclass(slots=True)
class ConnectionHandle:
    handle_id: int
    host: str
    requests_served: int = 0


class InferencePool:
    """Fixed-size set of connection handles in front of one inference host.

    Acquisition suspends on a semaphore instead of polling. A call that loses
    its race against the timeout keeps its handle until the underlying request
    actually finishes, so a timed-out slot is not immediately reusable.
    """

    def __init__(
        self,
        backend: InferenceBackend,
        config: PoolConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backend = backend
        self.config = config or PoolConfig()
        self._idle: deque[ConnectionHandle] = deque(
            ConnectionHandle(handle_id=i, host=self.config.base_url)
            for i in range(self.config.pool_size)
        )
        self._slots = asyncio.Semaphore(self.config.pool_size)
        self.response_cache = ResponseCache(
            ttl_seconds=self.config.response_cache_ttl_seconds,
            max_entries=self.config.response_cache_max_entries,
            clock=clock,
        )

    @property
    def active(self) -> int:
        return self.config.pool_size - len(self._idle)

    async def acquire(self) -> ConnectionHandle:
        if self._slots.locked():
            logger.debug("All %d inference connections busy, waiting", self.config.pool_size)
        await self._slots.acquire()
        return self._idle.popleft()

    def release(self, handle: ConnectionHandle) -> None:
        handle.requests_served += 1
        self._idle.append(handle)
        self._slots.release()

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[ConnectionHandle]:
        handle = await self.acquire()
        try:
            yield handle
        finally:
            self.release(handle)

    async def generate(
        self,
        model: str,
        prompt: str,
        *,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        timeout_ms: float | None = None,
        use_cache: bool = True,
    ) -> str:
        if len(prompt) > self.config.max_prompt_chars:
            prompt = prompt[: self.config.max_prompt_chars]
        budget = max_tokens or default_max_tokens(prompt)
        key = response_fingerprint(prompt, model=model, temperature=temperature, max_tokens=budget)
        if use_cache:
            cached = self.response_cache.get(key)
            if cached is not None:
                logger.debug("Response cache hit for %s", model)
                return cached

        options = {
            "temperature": temperature,
            "num_predict": budget,
            "top_p": 0.85,
            "repeat_penalty": 1.05,
            "num_ctx": min(2048, len(prompt) // 4 + budget),
        }
        text = await self._run(
            model, lambda: self.backend.generate(model, prompt, options=options), timeout_ms
        )
        if use_cache:
            self.response_cache.put(key, text, prompt=prompt)
        return text

    async def chat(
        self,
        model: str,
        messages: list[dict[str, str]],
        *,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout_ms: float | None = None,
    ) -> str:
        options = {
            "temperature": temperature,
            "num_predict": max_tokens,
            "top_p": 0.9,
            "repeat_penalty": 1.1,
        }
        return await self._run(
            model, lambda: self.backend.chat(model, messages, options=options), timeout_ms
        )

    async def stream_chat(
        self,
        model: str,
        messages: list[dict[str, str]],
        *,
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> AsyncIterator[str]:
        options = {
            "temperature": temperature,
            "num_predict": max_tokens,
            "top_p": 0.9,
            "repeat_penalty": 1.1,
        }
        async with self.connection():
            async for piece in self.backend.stream_chat(model, messages, options=options):
                yield piece

    async def embeddings(self, model: str, text: str, *, timeout_ms: float | None = None) -> list[float]:
        return await self._run(model, lambda: self.backend.embeddings(model, text), timeout_ms)

    async def check_connection(self) -> bool:
        try:
            await self.backend.list_models()
        except (ConnectionUnavailable, MalformedResponse) as exc:
            logger.warning("Inference service at %s is unreachable: %s", self.config.base_url, exc)
            return False
        return True

    def clear_cache_for_document(self, document_id: int, chapter: int | None = None) -> int:
        return self.response_cache.invalidate_document(document_id, chapter)

    def clear_response_cache(self) -> None:
        self.response_cache.clear()

    def stats(self) -> dict[str, Any]:
        return {
            "pool": {
                "total": self.config.pool_size,
                "active": self.active,
                "available": len(self._idle),
            },
            "cache": self.response_cache.stats(),
        }

    async def _run(
        self,
        model: str,
        call: Callable[[], Any],
        timeout_ms: float | None,
    ) -> Any:
        handle = await self.acquire()
        task = asyncio.ensure_future(call())
        task.add_done_callback(lambda finished: self._finish(handle, finished))
        if timeout_ms is None:
            return await asyncio.shield(task)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            logger.warning("Inference call on %s exceeded %.0fms", model, timeout_ms)
            raise InferenceTimeout(model, timeout_ms) from None

    def _finish(self, handle: ConnectionHandle, task: asyncio.Future[Any]) -> None:
        self.release(handle)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Inference call on handle %d failed: %s", handle.handle_id, task.exception())
