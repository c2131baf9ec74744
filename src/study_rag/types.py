"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class Document:
    """A user document as seen by retrieval."""

    doc_id: int
    user_id: int
    title: str
    content: str


@dataclass(slots=True)
class Annotation:
    note_id: int
    user_id: int
    document_id: int
    note: str
    chapter: int | None = None


@dataclass(slots=True)
class Memory:
    memory_id: int
    user_id: int
    category: str
    content: str


@dataclass(slots=True)
class SearchContext:
    """Who is asking and what they are currently reading."""

    user_id: int
    document_id: int | None = None
    chapter: int | None = None
    preferred_topics: list[str] = field(default_factory=list)


@dataclass(slots=True)
class QueryParams:
    """Parameter set that participates in the query-cache key."""

    include_memories: bool = True
    include_annotations: bool = True
    semantic_expansion: bool = True
    use_embeddings: bool = True
    max_results: int = 10
    relevance_threshold: float = 0.7

    def normalized(self) -> dict[str, Any]:
        return {
            "includeMemories": bool(self.include_memories),
            "includeAnnotations": bool(self.include_annotations),
            "semanticExpansion": bool(self.semantic_expansion),
            "useEmbeddings": bool(self.use_embeddings),
            "maxResults": int(self.max_results),
            "relevanceThreshold": float(self.relevance_threshold),
        }


@dataclass(slots=True)
class RetrievalResult:
    """One ranked excerpt produced by the hybrid retriever."""

    source_id: str
    source_type: str
    excerpt: str
    relevance_score: float
    semantic_similarity: float
    contextual_relevance: float
    title: str = ""
    document_id: int | None = None
    chapter: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "source_type": self.source_type,
            "excerpt": self.excerpt,
            "relevance_score": self.relevance_score,
            "semantic_similarity": self.semantic_similarity,
            "contextual_relevance": self.contextual_relevance,
            "title": self.title,
            "document_id": self.document_id,
            "chapter": self.chapter,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "RetrievalResult":
        return cls(
            source_id=str(payload["source_id"]),
            source_type=str(payload.get("source_type", "document")),
            excerpt=str(payload.get("excerpt", "")),
            relevance_score=float(payload.get("relevance_score", 0.0)),
            semantic_similarity=float(payload.get("semantic_similarity", 0.0)),
            contextual_relevance=float(payload.get("contextual_relevance", 0.0)),
            title=str(payload.get("title", "")),
            document_id=payload.get("document_id"),
            chapter=payload.get("chapter"),
        )


@dataclass(slots=True)
class RAGResponse:
    """Answer returned to the caller."""

    answer: str
    sources: list[RetrievalResult]
    confidence: float
    related_questions: list[str] = field(default_factory=list)
    cross_references: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    cache_source: str | None = None
    model: str | None = None
    degraded: bool = False
    trace_id: str | None = None


@dataclass(slots=True)
class CachedResult:
    """A query-cache hit."""

    results: list[dict[str, Any]]
    source: str
    similarity: float
    query_text: str
    metadata: dict[str, Any]


@dataclass(slots=True)
class EmbeddingResult:
    vector: list[float]
    cache_hit: bool
    latency_ms: float


@dataclass(slots=True)
class InferenceResult:
    """Text produced by a routed inference call."""

    text: str
    model: str
    latency_ms: float
    fallback_used: bool = False
