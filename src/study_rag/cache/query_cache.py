"""Two-tier (exact, then fuzzy) cache of final ranked result sets."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import sqlite3
import time
from collections.abc import Callable
from typing import Any

from study_rag.cache.store import CacheStore
from study_rag.config import QueryCacheConfig
from study_rag.errors import CacheWriteFailure
from study_rag.retrieval.similarity import normalize_query, word_overlap_similarity
from study_rag.types import CachedResult, QueryParams, SearchContext

logger = logging.getLogger(__name__)

_TABLE = "query_result_cache"
_MODEL_TAG = "semantic-search"
_COLUMNS = "id, query_text, result, metadata"


def query_cache_key(query: str, context: SearchContext, params: QueryParams) -> str:
    payload = {
        "query": normalize_query(query),
        "userId": context.user_id,
        "documentId": context.document_id,
        "chapter": context.chapter,
        "params": params.normalized(),
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()


class QueryResultCache:
    """Stores trimmed result sets per (query, user, context, parameters).

    Lookups try the exact key first. On a miss, recent entries of the same
    user are compared by word overlap: same-context entries first with the
    regular threshold, then any context with the stricter cross-document
    threshold. Hits never modify the stored payload.
    """

    def __init__(
        self,
        store: CacheStore,
        config: QueryCacheConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.config = config or QueryCacheConfig()
        self._clock = clock
        self.hits = 0
        self.misses = 0
        self.fuzzy_matches = 0

    @property
    def ttl_seconds(self) -> float:
        return self.config.ttl_hours * 3600.0

    async def get(
        self, query: str, context: SearchContext, params: QueryParams
    ) -> CachedResult | None:
        key = query_cache_key(query, context, params)
        exact = await asyncio.to_thread(self._fetch_exact, key)
        if exact is not None:
            self.hits += 1
            logger.debug("Query cache exact hit for %r", query)
            return exact

        fuzzy = await asyncio.to_thread(self._fetch_fuzzy, normalize_query(query), context)
        if fuzzy is not None:
            self.fuzzy_matches += 1
            logger.info(
                "Query cache fuzzy hit %r -> %r (%.2f)", query, fuzzy.query_text, fuzzy.similarity
            )
            return fuzzy

        self.misses += 1
        logger.debug("Query cache miss for %r", query)
        return None

    async def put(
        self,
        query: str,
        context: SearchContext,
        params: QueryParams,
        results: list[dict[str, Any]],
        *,
        extra: dict[str, Any] | None = None,
    ) -> bool:
        """Store results; failures are logged and reported as ``False``."""
        try:
            await asyncio.to_thread(self._write, query, context, params, results, extra or {})
        except CacheWriteFailure:
            logger.exception("Could not store query results for %r", query)
            return False
        return True

    async def invalidate_context(self, user_id: int, document_id: int | None = None) -> int:
        return await asyncio.to_thread(self._delete_for_user, user_id, document_id)

    async def invalidate_document(self, document_id: int, chapter: int | None = None) -> int:
        """Drop entries of every user whose stored context is the given document."""
        return await asyncio.to_thread(self._delete_for_document, document_id, chapter)

    def clear(self) -> int:
        removed = self.store.clear(_TABLE)
        self.hits = self.misses = self.fuzzy_matches = 0
        return removed

    def clear_for_user(self, user_id: int) -> int:
        return self._delete_for_user(user_id, None)

    def purge_expired(self) -> int:
        cutoff = self._clock() - self.ttl_seconds
        try:
            with self.store.connect() as conn:
                cursor = conn.execute(f"DELETE FROM {_TABLE} WHERE created_at < ?", (cutoff,))
        except sqlite3.Error as exc:
            raise CacheWriteFailure(f"TTL purge failed: {exc}") from exc
        if cursor.rowcount:
            logger.info("Purged %d expired query cache entries", cursor.rowcount)
        return cursor.rowcount

    def stats(self) -> dict[str, float | int]:
        total = self.hits + self.misses + self.fuzzy_matches
        return {
            "hits": self.hits,
            "misses": self.misses,
            "fuzzy_matches": self.fuzzy_matches,
            "total_requests": total,
            "hit_rate": (self.hits + self.fuzzy_matches) / total if total else 0.0,
        }

    def info(self, top: int = 10) -> dict[str, Any]:
        with self.store.connect() as conn:
            rows = conn.execute(f"SELECT metadata FROM {_TABLE}").fetchall()
            top_rows = conn.execute(
                f"SELECT query_text, access_count FROM {_TABLE} ORDER BY access_count DESC, id ASC LIMIT ?",
                (top,),
            ).fetchall()
        counts = [int(json.loads(row[0]).get("stored_result_count", 0)) for row in rows]
        return {
            "total_entries": len(rows),
            "average_result_count": sum(counts) / len(counts) if counts else 0.0,
            "top_queries": [{"query": text, "access_count": count} for text, count in top_rows],
        }

    def _fetch_exact(self, key: str) -> CachedResult | None:
        cutoff = self._clock() - self.ttl_seconds
        with self.store.connect() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM {_TABLE} WHERE query_hash = ? AND created_at >= ?",
                (key, cutoff),
            ).fetchone()
            if row is None:
                return None
            self._touch(conn, row[0])
        return _to_cached(row, source="exact", similarity=1.0)

    def _fetch_fuzzy(self, normalized: str, context: SearchContext) -> CachedResult | None:
        cutoff = self._clock() - self.ttl_seconds
        with self.store.connect() as conn:
            recent = conn.execute(
                f"SELECT {_COLUMNS} FROM {_TABLE} WHERE user_id = ? AND created_at >= ? "
                "ORDER BY last_accessed_at DESC, id DESC LIMIT ?",
                (context.user_id, cutoff, self.config.same_document_candidates),
            ).fetchall()

            same_context = [
                row for row in recent if _stored_context(row) == (context.document_id, context.chapter)
            ]
            match = _best_match(normalized, same_context, self.config.fuzzy_threshold)
            if match is None:
                others = recent[: self.config.cross_document_candidates]
                match = _best_match(normalized, others, self.config.cross_document_threshold)
            if match is None:
                return None
            row, similarity = match
            self._touch(conn, row[0])
        return _to_cached(row, source="fuzzy", similarity=similarity)

    def _touch(self, conn: sqlite3.Connection, row_id: int) -> None:
        conn.execute(
            f"UPDATE {_TABLE} SET last_accessed_at = ?, access_count = access_count + 1 WHERE id = ?",
            (self._clock(), row_id),
        )

    def _write(
        self,
        query: str,
        context: SearchContext,
        params: QueryParams,
        results: list[dict[str, Any]],
        extra: dict[str, Any],
    ) -> None:
        self.store.evict_least_recent(
            _TABLE, capacity=self.config.max_entries, fraction=self.config.eviction_fraction
        )
        self.purge_expired()

        stored = results[: self.config.max_stored_results]
        metadata = {
            "original_result_count": len(results),
            "stored_result_count": len(stored),
            "was_truncated": len(results) > len(stored),
            "document_id": context.document_id,
            "chapter": context.chapter,
            "params": params.normalized(),
            **extra,
        }
        now = self._clock()
        try:
            with self.store.connect() as conn:
                conn.execute(
                    f"INSERT INTO {_TABLE} (user_id, query_hash, query_text, embedding, model, "
                    "result, metadata, created_at, last_accessed_at, access_count) "
                    "VALUES (?, ?, ?, NULL, ?, ?, ?, ?, ?, 1) "
                    "ON CONFLICT (query_hash) DO UPDATE SET result = excluded.result, "
                    "metadata = excluded.metadata, created_at = excluded.created_at, "
                    "last_accessed_at = excluded.last_accessed_at",
                    (
                        context.user_id,
                        query_cache_key(query, context, params),
                        query[:500],
                        _MODEL_TAG,
                        json.dumps(stored),
                        json.dumps(metadata),
                        now,
                        now,
                    ),
                )
        except (sqlite3.Error, TypeError, ValueError) as exc:
            raise CacheWriteFailure(f"Query cache insert failed: {exc}") from exc

    def _delete_for_user(self, user_id: int, document_id: int | None) -> int:
        with self.store.connect() as conn:
            if document_id is None:
                cursor = conn.execute(f"DELETE FROM {_TABLE} WHERE user_id = ?", (user_id,))
                return cursor.rowcount
            rows = conn.execute(
                f"SELECT id, metadata FROM {_TABLE} WHERE user_id = ?", (user_id,)
            ).fetchall()
            doomed = [(row_id,) for row_id, metadata in rows if json.loads(metadata).get("document_id") == document_id]
            conn.executemany(f"DELETE FROM {_TABLE} WHERE id = ?", doomed)
        logger.info("Invalidated %d cached queries for user %s document %s", len(doomed), user_id, document_id)
        return len(doomed)

    def _delete_for_document(self, document_id: int, chapter: int | None) -> int:
        with self.store.connect() as conn:
            rows = conn.execute(f"SELECT id, metadata FROM {_TABLE}").fetchall()
            doomed = []
            for row_id, raw in rows:
                metadata = json.loads(raw)
                if metadata.get("document_id") != document_id:
                    continue
                if chapter is not None and metadata.get("chapter") not in (None, chapter):
                    continue
                doomed.append((row_id,))
            conn.executemany(f"DELETE FROM {_TABLE} WHERE id = ?", doomed)
        return len(doomed)


def _stored_context(row: tuple[Any, ...]) -> tuple[Any, Any]:
    metadata = json.loads(row[3])
    return metadata.get("document_id"), metadata.get("chapter")


def _best_match(
    normalized: str, rows: list[tuple[Any, ...]], threshold: float
) -> tuple[tuple[Any, ...], float] | None:
    best: tuple[tuple[Any, ...], float] | None = None
    for row in rows:
        similarity = word_overlap_similarity(normalized, row[1])
        if similarity >= threshold and (best is None or similarity > best[1]):
            best = (row, similarity)
    return best


def _to_cached(row: tuple[Any, ...], *, source: str, similarity: float) -> CachedResult:
    _, query_text, result, metadata = row
    return CachedResult(
        results=json.loads(result),
        source=source,
        similarity=similarity,
        query_text=query_text,
        metadata=json.loads(metadata),
    )
