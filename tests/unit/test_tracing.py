import pytest

from study_rag.obs.tracing import TraceStore


def _record(store: TraceStore, index: int):
    return store.create_record(
        user_id=1,
        query=f"question {index}",
        answer="Based on the context, faith is trust.",
        source_ids=[],
        excerpts=["Faith is trust."],
        confidence=0.8,
        cache_source=None,
        model="llama3.2:3b",
        degraded=False,
        latency_ms=float(index),
    )


def test_trace_store_drops_oldest_records_past_capacity() -> None:
    store = TraceStore(max_records=3)
    records = [_record(store, index) for index in range(5)]

    assert [record.query for record in store.list_recent()] == ["question 2", "question 3", "question 4"]
    with pytest.raises(KeyError):
        store.get(records[0].trace_id)
    assert store.get(records[4].trace_id) is records[4]
    summary = store.summary()
    assert summary["total_requests"] == 3
    assert summary["avg_latency_ms"] == pytest.approx(3.0)
