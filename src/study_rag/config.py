"""Configuration models for the study RAG engine."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PoolConfig(BaseModel):
    """Configures the inference connection pool and its response cache."""

    base_url: str = "http://localhost:11434"
    pool_size: int = Field(default=3, ge=1)
    response_cache_ttl_seconds: float = Field(default=1800.0, gt=0.0)
    response_cache_max_entries: int = Field(default=1000, ge=1)
    max_prompt_chars: int = Field(default=2000, ge=100)


class EmbeddingCacheConfig(BaseModel):
    """Configures the persistent embedding cache."""

    model: str = "nomic-embed-text:v1.5"
    max_entries: int = Field(default=10_000, ge=1)
    eviction_fraction: float = Field(default=0.2, gt=0.0, le=1.0)
    batch_size: int = Field(default=10, ge=1)


class QueryCacheConfig(BaseModel):
    """Configures the exact + fuzzy query result cache."""

    max_entries: int = Field(default=10_000, ge=1)
    ttl_hours: float = Field(default=24.0, gt=0.0)
    eviction_fraction: float = Field(default=0.2, gt=0.0, le=1.0)
    fuzzy_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    cross_document_threshold: float = Field(default=0.9, ge=0.0, le=1.0)
    same_document_candidates: int = Field(default=50, ge=1)
    cross_document_candidates: int = Field(default=30, ge=1)
    max_stored_results: int = Field(default=10, ge=1)


class RetrievalConfig(BaseModel):
    """Configures hybrid retrieval thresholds and limits."""

    min_relevance: float = Field(default=0.4, ge=0.0, le=1.0)
    fallback_threshold: float = Field(default=0.1, ge=0.0, le=1.0)
    current_document_similarity: float = Field(default=0.3, ge=-1.0, le=1.0)
    other_document_similarity: float = Field(default=0.4, ge=-1.0, le=1.0)
    current_document_boost: float = Field(default=1.2, ge=1.0)
    strong_local_score: float = Field(default=0.7, ge=0.0, le=1.0)
    max_results: int = Field(default=20, ge=1)
    max_candidate_documents: int = Field(default=20, ge=1)
    document_group_size: int = Field(default=3, ge=1)
    early_exit_results: int = Field(default=10, ge=1)
    excerpt_chars: int = Field(default=500, ge=50)
    relevant_excerpt_chars: int = Field(default=300, ge=50)


class OrchestratorConfig(BaseModel):
    """Configures answer assembly, confidence, and the retrieval budget."""

    max_sources: int = Field(default=5, ge=1)
    cached_sources: int = Field(default=8, ge=1)
    max_context_chars: int = Field(default=4000, ge=100)
    generation_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    generation_timeout_seconds: float = Field(default=35.0, gt=0.0)
    max_rag_calls: int = Field(default=3, ge=1)
    enable_related_questions: bool = True
    enable_cross_references: bool = True


class Settings(BaseSettings):
    """Environment-driven configuration surface (prefix ``STUDY_RAG_``)."""

    model_config = SettingsConfigDict(
        env_prefix="STUDY_RAG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    inference_url: str = "http://localhost:11434"
    database_path: Path = Path("study_rag.db")
    log_level: str = "INFO"

    pool_size: int = Field(default=3, ge=1)
    response_cache_ttl_seconds: float = 1800.0
    response_cache_max_entries: int = 1000

    embedding_model: str = "nomic-embed-text:v1.5"
    embedding_cache_size: int = Field(default=10_000, ge=1)
    query_cache_size: int = Field(default=10_000, ge=1)
    query_cache_ttl_hours: float = 24.0
    fuzzy_threshold: float = 0.8
    cross_document_threshold: float = 0.9

    min_relevance: float = 0.4
    semantic_threshold: float = 0.5
    fallback_threshold: float = 0.1
    max_sources: int = Field(default=5, ge=1)
    max_rag_calls: int = Field(default=3, ge=1)
    max_trace_records: int = Field(default=1000, ge=1)

    def pool_config(self) -> PoolConfig:
        return PoolConfig(
            base_url=self.inference_url,
            pool_size=self.pool_size,
            response_cache_ttl_seconds=self.response_cache_ttl_seconds,
            response_cache_max_entries=self.response_cache_max_entries,
        )

    def embedding_cache_config(self) -> EmbeddingCacheConfig:
        return EmbeddingCacheConfig(
            model=self.embedding_model, max_entries=self.embedding_cache_size
        )

    def query_cache_config(self) -> QueryCacheConfig:
        return QueryCacheConfig(
            max_entries=self.query_cache_size,
            ttl_hours=self.query_cache_ttl_hours,
            fuzzy_threshold=self.fuzzy_threshold,
            cross_document_threshold=self.cross_document_threshold,
        )

    def retrieval_config(self) -> RetrievalConfig:
        return RetrievalConfig(
            min_relevance=self.min_relevance,
            fallback_threshold=self.fallback_threshold,
        )

    def orchestrator_config(self) -> OrchestratorConfig:
        return OrchestratorConfig(
            max_sources=self.max_sources,
            generation_threshold=self.semantic_threshold,
            max_rag_calls=self.max_rag_calls,
        )
