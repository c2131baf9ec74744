"""SQLite persistence shared by the embedding and query result caches."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from study_rag.errors import CacheWriteFailure

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS embedding_cache (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER,
        text_hash TEXT NOT NULL,
        model TEXT NOT NULL,
        embedding TEXT NOT NULL,
        created_at REAL NOT NULL,
        last_accessed_at REAL NOT NULL,
        access_count INTEGER NOT NULL DEFAULT 1,
        UNIQUE (text_hash, model)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_embedding_cache_hash ON embedding_cache (text_hash)",
    "CREATE INDEX IF NOT EXISTS idx_embedding_cache_accessed ON embedding_cache (last_accessed_at)",
    """
    CREATE TABLE IF NOT EXISTS query_result_cache (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        query_hash TEXT NOT NULL UNIQUE,
        query_text TEXT NOT NULL,
        embedding TEXT,
        model TEXT NOT NULL,
        result TEXT NOT NULL,
        metadata TEXT NOT NULL,
        created_at REAL NOT NULL,
        last_accessed_at REAL NOT NULL,
        access_count INTEGER NOT NULL DEFAULT 1
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_query_result_cache_hash ON query_result_cache (query_hash)",
    "CREATE INDEX IF NOT EXISTS idx_query_result_cache_user ON query_result_cache (user_id, last_accessed_at)",
)

_TABLES = ("embedding_cache", "query_result_cache")


class CacheStore:
    """Owns the sqlite file and the two cache tables.

    Each operation opens its own connection, so calls may run on worker
    threads. There is no cross-process coordination; one writer is assumed.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        with self.connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.path)
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def count(self, table: str) -> int:
        _check_table(table)
        with self.connect() as conn:
            row = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()
        return int(row[0])

    def evict_least_recent(self, table: str, *, capacity: int, fraction: float) -> int:
        """Delete the least-recently-accessed ``fraction`` once ``capacity`` is reached."""
        _check_table(table)
        try:
            with self.connect() as conn:
                total = int(conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])
                if total < capacity:
                    return 0
                doomed = max(1, int(capacity * fraction))
                conn.execute(
                    f"DELETE FROM {table} WHERE id IN ("
                    f"SELECT id FROM {table} ORDER BY last_accessed_at ASC, id ASC LIMIT ?)",
                    (doomed,),
                )
        except sqlite3.Error as exc:
            raise CacheWriteFailure(f"Eviction on {table} failed: {exc}") from exc
        logger.info("Evicted %d least-recently-used rows from %s", doomed, table)
        return doomed

    def clear(self, table: str) -> int:
        _check_table(table)
        try:
            with self.connect() as conn:
                cursor = conn.execute(f"DELETE FROM {table}")
        except sqlite3.Error as exc:
            raise CacheWriteFailure(f"Clearing {table} failed: {exc}") from exc
        return cursor.rowcount


def _check_table(table: str) -> None:
    if table not in _TABLES:
        raise ValueError(f"Unknown cache table: {table}")
