"""Content-addressed embedding cache backed by sqlite."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import sqlite3
import time
from collections.abc import Callable
from typing import Any, Protocol

from study_rag.cache.store import CacheStore
from study_rag.config import EmbeddingCacheConfig
from study_rag.errors import CacheWriteFailure
from study_rag.obs.tracing import Timer
from study_rag.types import EmbeddingResult

logger = logging.getLogger(__name__)

_TABLE = "embedding_cache"


class EmbeddingProvider(Protocol):
    async def embed(self, text: str, *, model: str) -> list[float]: ...


def content_hash(text: str) -> str:
    return hashlib.sha256(text.strip().lower().encode("utf-8")).hexdigest()


class EmbeddingCache:
    """Maps (normalized text, model) to a vector, generating on miss.

    Concurrent misses for the same key share one inference call. Before each
    insert an eviction sweep removes the least-recently-accessed share of
    entries once the table is at capacity.
    """

    def __init__(
        self,
        store: CacheStore,
        provider: EmbeddingProvider,
        config: EmbeddingCacheConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.provider = provider
        self.config = config or EmbeddingCacheConfig()
        self._clock = clock
        self._in_flight: dict[tuple[str, str], asyncio.Future[list[float]]] = {}
        self.hits = 0
        self.misses = 0

    @property
    def model(self) -> str:
        return self.config.model

    async def get_embedding(
        self,
        text: str,
        *,
        document_id: int | None = None,
        chapter: int | None = None,
        paragraph: int | None = None,
        user_id: int | None = None,
    ) -> EmbeddingResult:
        text_hash = content_hash(text)
        with Timer() as timer:
            vector = await asyncio.to_thread(self._lookup_one, text_hash)
            if vector is None:
                vector, hit = await self._resolve_miss(text, text_hash, user_id)
            else:
                hit = True
        if hit:
            self.hits += 1
        else:
            self.misses += 1
        logger.debug(
            "Embedding %s for doc=%s chapter=%s paragraph=%s in %.1fms",
            "hit" if hit else "miss",
            document_id,
            chapter,
            paragraph,
            timer.elapsed_ms,
        )
        return EmbeddingResult(vector=vector, cache_hit=hit, latency_ms=timer.elapsed_ms)

    async def get_embeddings(
        self, texts: list[str], *, user_id: int | None = None
    ) -> list[EmbeddingResult]:
        """Batch lookup; cached and fresh vectors come back in input order."""
        if not texts:
            return []
        hashes = [content_hash(text) for text in texts]
        batch = self.config.batch_size
        found: dict[str, list[float]] = {}
        with Timer() as timer:
            unique_hashes = list(dict.fromkeys(hashes))
            for start in range(0, len(unique_hashes), batch):
                found.update(await asyncio.to_thread(self._lookup_many, unique_hashes[start : start + batch]))

            missing = [(h, texts[hashes.index(h)]) for h in unique_hashes if h not in found]
            fresh: set[str] = set()
            for start in range(0, len(missing), batch):
                for text_hash, text in missing[start : start + batch]:
                    vector, shared = await self._resolve_miss(text, text_hash, user_id)
                    found[text_hash] = vector
                    if not shared:
                        fresh.add(text_hash)

        results: list[EmbeddingResult] = []
        counted_fresh: set[str] = set()
        for text_hash in hashes:
            hit = text_hash not in fresh or text_hash in counted_fresh
            counted_fresh.add(text_hash)
            if hit:
                self.hits += 1
            else:
                self.misses += 1
            results.append(
                EmbeddingResult(
                    vector=list(found[text_hash]),
                    cache_hit=hit,
                    latency_ms=timer.elapsed_ms / len(texts),
                )
            )
        logger.debug(
            "Batch embeddings: %d texts, %d generated, %.1fms", len(texts), len(fresh), timer.elapsed_ms
        )
        return results

    def stats(self) -> dict[str, float | int]:
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "total_requests": total,
            "hit_rate": self.hits / total if total else 0.0,
        }

    def info(self) -> dict[str, Any]:
        with self.store.connect() as conn:
            rows = conn.execute(
                f"SELECT model, COUNT(*) FROM {_TABLE} GROUP BY model ORDER BY model"
            ).fetchall()
        breakdown = {str(model): int(count) for model, count in rows}
        return {"total_entries": sum(breakdown.values()), "models": breakdown}

    def clear(self) -> int:
        removed = self.store.clear(_TABLE)
        self.hits = 0
        self.misses = 0
        return removed

    async def _resolve_miss(
        self, text: str, text_hash: str, user_id: int | None
    ) -> tuple[list[float], bool]:
        """Generate and persist a vector; returns (vector, shared_with_other_caller)."""
        key = (text_hash, self.model)
        pending = self._in_flight.get(key)
        if pending is not None:
            return list(await asyncio.shield(pending)), True

        task = asyncio.ensure_future(self._generate_and_store(text, text_hash, user_id))
        self._in_flight[key] = task
        task.add_done_callback(lambda _done: self._in_flight.pop(key, None))
        return list(await asyncio.shield(task)), False

    async def _generate_and_store(self, text: str, text_hash: str, user_id: int | None) -> list[float]:
        vector = await self.provider.embed(text, model=self.model)
        try:
            await asyncio.to_thread(self._insert, text_hash, vector, user_id)
        except CacheWriteFailure:
            logger.exception("Could not persist embedding %s", text_hash[:12])
        return vector

    def _lookup_one(self, text_hash: str) -> list[float] | None:
        return self._lookup_many([text_hash]).get(text_hash)

    def _lookup_many(self, hashes: list[str]) -> dict[str, list[float]]:
        if not hashes:
            return {}
        placeholders = ", ".join("?" for _ in hashes)
        now = self._clock()
        with self.store.connect() as conn:
            rows = conn.execute(
                f"SELECT text_hash, embedding FROM {_TABLE} "
                f"WHERE model = ? AND text_hash IN ({placeholders})",
                (self.model, *hashes),
            ).fetchall()
            conn.executemany(
                f"UPDATE {_TABLE} SET last_accessed_at = ?, access_count = access_count + 1 "
                "WHERE model = ? AND text_hash = ?",
                [(now, self.model, row[0]) for row in rows],
            )
        return {str(text_hash): json.loads(payload) for text_hash, payload in rows}

    def _insert(self, text_hash: str, vector: list[float], user_id: int | None) -> None:
        self.store.evict_least_recent(
            _TABLE,
            capacity=self.config.max_entries,
            fraction=self.config.eviction_fraction,
        )
        now = self._clock()
        try:
            with self.store.connect() as conn:
                conn.execute(
                    f"INSERT INTO {_TABLE} "
                    "(user_id, text_hash, model, embedding, created_at, last_accessed_at, access_count) "
                    "VALUES (?, ?, ?, ?, ?, ?, 1) ON CONFLICT (text_hash, model) DO NOTHING",
                    (user_id, text_hash, self.model, json.dumps(vector), now, now),
                )
        except sqlite3.Error as exc:
            raise CacheWriteFailure(f"Embedding insert failed: {exc}") from exc
