"""Request tracing and groundedness estimation for answered queries."""

from __future__ import annotations

import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

_TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]", flags=re.UNICODE)
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")


@dataclass(slots=True)
class TraceRecord:
    trace_id: str
    timestamp_utc: str
    user_id: int
    query: str
    answer: str
    source_ids: list[str]
    confidence: float
    cache_source: str | None
    model: str | None
    degraded: bool
    latency_ms: float
    groundedness: float


class GroundednessEvaluator:
    """Share of answer sentences supported by at least one excerpt.

    A sentence counts as supported when the fraction of its word tokens found
    in some excerpt reaches ``min_overlap``. Punctuation tokens are ignored.
    """

    def __init__(self, min_overlap: float = 0.35) -> None:
        self.min_overlap = min_overlap

    def score(self, answer: str, excerpts: list[str]) -> float:
        sentences = [s.strip() for s in _SENTENCE_SPLIT.split(answer) if s.strip()]
        if not sentences:
            return 1.0
        if not excerpts:
            return 0.0

        excerpt_tokens = [set(_words(excerpt)) for excerpt in excerpts]
        supported = 0
        for sentence in sentences:
            tokens = set(_words(sentence))
            if not tokens:
                supported += 1
                continue
            if any(len(tokens & other) / len(tokens) >= self.min_overlap for other in excerpt_tokens):
                supported += 1
        return supported / len(sentences)


class TraceStore:
    """In-memory trace storage backing the API's observability endpoints."""

    def __init__(
        self, groundedness_evaluator: GroundednessEvaluator | None = None, *, max_records: int = 1000
    ) -> None:
        self.max_records = max_records
        # Insertion ordered, so the first key is the oldest trace.
        self._records: dict[str, TraceRecord] = {}
        self._groundedness = groundedness_evaluator or GroundednessEvaluator()

    def create_record(
        self,
        *,
        user_id: int,
        query: str,
        answer: str,
        source_ids: list[str],
        excerpts: list[str],
        confidence: float,
        cache_source: str | None,
        model: str | None,
        degraded: bool,
        latency_ms: float,
    ) -> TraceRecord:
        record = TraceRecord(
            trace_id=str(uuid.uuid4()),
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            user_id=user_id,
            query=query,
            answer=answer,
            source_ids=source_ids,
            confidence=confidence,
            cache_source=cache_source,
            model=model,
            degraded=degraded,
            latency_ms=latency_ms,
            groundedness=self._groundedness.score(answer, excerpts),
        )
        self._records[record.trace_id] = record
        while len(self._records) > self.max_records:
            del self._records[next(iter(self._records))]
        return record

    def get(self, trace_id: str) -> TraceRecord:
        record = self._records.get(trace_id)
        if record is None:
            raise KeyError(f"Trace not found: {trace_id}")
        return record

    def list_recent(self, limit: int = 20) -> list[TraceRecord]:
        return list(self._records.values())[-limit:]

    def summary(self) -> dict[str, float | int]:
        records = list(self._records.values())
        total = len(records)
        if total == 0:
            return {
                "total_requests": 0,
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "avg_confidence": 0.0,
                "avg_groundedness": 0.0,
                "cache_hit_ratio": 0.0,
                "degraded_ratio": 0.0,
            }

        latencies = sorted(record.latency_ms for record in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))
        cached = sum(1 for record in records if record.cache_source is not None)
        degraded = sum(1 for record in records if record.degraded)
        return {
            "total_requests": total,
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
            "avg_confidence": sum(record.confidence for record in records) / total,
            "avg_groundedness": sum(record.groundedness for record in records) / total,
            "cache_hit_ratio": cached / total,
            "degraded_ratio": degraded / total,
        }


class Timer:
    """Context timer for inference calls and whole requests."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0

    def running_ms(self) -> float:
        return (time.perf_counter() - self._start) * 1000.0


def _words(text: str) -> list[str]:
    return [token.lower() for token in _TOKEN_PATTERN.findall(text) if token[0].isalnum()]
