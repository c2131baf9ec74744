import asyncio
import itertools

from study_rag.cache.embedding_cache import EmbeddingCache, content_hash
from study_rag.cache.store import CacheStore
from study_rag.config import EmbeddingCacheConfig
from study_rag.errors import CacheWriteFailure


class CountingProvider:
    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.texts: list[str] = []

    async def embed(self, text: str, *, model: str) -> list[float]:
        self.texts.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        return [float(len(text)), 1.0, 0.5]


def _cache(tmp_path, provider: CountingProvider, max_entries: int = 100) -> EmbeddingCache:
    ticks = itertools.count(1)
    return EmbeddingCache(
        CacheStore(tmp_path / "cache.db"),
        provider,
        EmbeddingCacheConfig(max_entries=max_entries),
        clock=lambda: float(next(ticks)),
    )


def _stored_hashes(cache: EmbeddingCache) -> set[str]:
    with cache.store.connect() as conn:
        return {row[0] for row in conn.execute("SELECT text_hash FROM embedding_cache")}


def test_second_lookup_is_a_hit_with_identical_vector(tmp_path) -> None:
    provider = CountingProvider()
    cache = _cache(tmp_path, provider)

    async def _run():
        first = await cache.get_embedding("Faith and grace", document_id=1, chapter=2, paragraph=3)
        second = await cache.get_embedding("  FAITH and grace ")
        return first, second

    first, second = asyncio.run(_run())

    assert first.cache_hit is False
    assert second.cache_hit is True
    assert second.vector == first.vector
    assert provider.texts == ["Faith and grace"]
    assert cache.stats()["hits"] == 1
    assert cache.stats()["misses"] == 1


def test_insert_past_capacity_evicts_least_recently_accessed(tmp_path) -> None:
    provider = CountingProvider()
    cache = _cache(tmp_path, provider, max_entries=10)
    texts = [f"passage number {i}" for i in range(11)]

    async def _run() -> None:
        for text in texts[:10]:
            await cache.get_embedding(text)
        # Touch the oldest entry so it becomes recently used.
        await cache.get_embedding(texts[0])
        await cache.get_embedding(texts[10])

    asyncio.run(_run())

    stored = _stored_hashes(cache)
    assert cache.store.count("embedding_cache") == 9
    assert content_hash(texts[0]) in stored
    assert content_hash(texts[1]) not in stored
    assert content_hash(texts[2]) not in stored
    assert content_hash(texts[10]) in stored


def test_sweep_at_capacity_leaves_eighty_percent(tmp_path) -> None:
    cache = _cache(tmp_path, CountingProvider(), max_entries=1000)

    async def _fill() -> None:
        for i in range(10):
            await cache.get_embedding(f"entry {i} text")

    asyncio.run(_fill())
    removed = cache.store.evict_least_recent("embedding_cache", capacity=10, fraction=0.2)

    assert removed == 2
    assert cache.store.count("embedding_cache") == 8


def test_batch_keeps_input_order_and_only_embeds_misses(tmp_path) -> None:
    provider = CountingProvider()
    cache = _cache(tmp_path, provider)
    texts = ["alpha passage", "beta passage text", "alpha passage", "gamma"]

    async def _run():
        await cache.get_embedding("beta passage text")
        return await cache.get_embeddings(texts)

    results = asyncio.run(_run())

    assert [result.vector[0] for result in results] == [13.0, 17.0, 13.0, 5.0]
    assert [result.cache_hit for result in results] == [False, True, True, False]
    assert provider.texts == ["beta passage text", "alpha passage", "gamma"]


def test_concurrent_misses_share_one_inference_call(tmp_path) -> None:
    provider = CountingProvider(delay=0.05)
    cache = _cache(tmp_path, provider)

    async def _run():
        return await asyncio.gather(*(cache.get_embedding("same text") for _ in range(3)))

    results = asyncio.run(_run())

    assert provider.texts == ["same text"]
    assert sum(1 for result in results if result.cache_hit) == 2
    assert all(result.vector == results[0].vector for result in results)


def test_write_failure_still_returns_vector(tmp_path, monkeypatch) -> None:
    cache = _cache(tmp_path, CountingProvider())

    def _broken(*args, **kwargs):
        raise CacheWriteFailure("disk full")

    monkeypatch.setattr(cache.store, "evict_least_recent", _broken)
    result = asyncio.run(cache.get_embedding("unstorable"))

    assert result.vector == [10.0, 1.0, 0.5]
    assert cache.store.count("embedding_cache") == 0


def test_info_and_clear(tmp_path) -> None:
    cache = _cache(tmp_path, CountingProvider())
    asyncio.run(cache.get_embeddings(["one passage", "two passage"]))

    assert cache.info()["total_entries"] == 2
    assert cache.clear() == 2
    assert cache.stats()["total_requests"] == 0
