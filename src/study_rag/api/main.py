"""FastAPI entrypoint for query, search, cache, model and trace endpoints."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from study_rag.agent.orchestrator import RAGOrchestrator, RAGQuery
from study_rag.agent.parsing import StructuredOutputParser
from study_rag.agent.prompts import model_repair
from study_rag.cache.embedding_cache import EmbeddingCache
from study_rag.cache.query_cache import QueryResultCache
from study_rag.cache.store import CacheStore
from study_rag.config import Settings
from study_rag.errors import CircuitOpen, ConnectionUnavailable, StudyRagError
from study_rag.inference.client import InferenceBackend, OllamaClient
from study_rag.inference.pool import InferencePool
from study_rag.models.registry import ModelRegistry
from study_rag.models.router import ModelRouter
from study_rag.obs.log import configure_logging
from study_rag.obs.tracing import TraceStore
from study_rag.retrieval.concept_index import ConceptIndex
from study_rag.retrieval.hybrid import HybridRetriever
from study_rag.retrieval.sources import DocumentSource, InMemoryDocumentSource
from study_rag.types import Document, QueryParams, SearchContext

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Components:
    backend: InferenceBackend
    source: DocumentSource
    pool: InferencePool
    router: ModelRouter
    store: CacheStore
    embedding_cache: EmbeddingCache
    query_cache: QueryResultCache
    concept_index: ConceptIndex
    retriever: HybridRetriever
    traces: TraceStore
    orchestrator: RAGOrchestrator


def build_components(
    settings: Settings,
    *,
    backend: InferenceBackend | None = None,
    source: DocumentSource | None = None,
) -> Components:
    backend = backend or OllamaClient(settings.inference_url)
    source = source or InMemoryDocumentSource()
    pool = InferencePool(backend, settings.pool_config())
    router = ModelRouter(ModelRegistry(endpoint=settings.inference_url), pool)
    parser = StructuredOutputParser(repair=model_repair(router))
    store = CacheStore(settings.database_path)
    embedding_cache = EmbeddingCache(store, router, settings.embedding_cache_config())
    query_cache = QueryResultCache(store, settings.query_cache_config())
    concept_index = ConceptIndex(source, router, parser)
    retriever = HybridRetriever(
        source,
        embedding_cache,
        router,
        concept_index,
        settings.retrieval_config(),
        parser,
    )
    traces = TraceStore(max_records=settings.max_trace_records)
    orchestrator = RAGOrchestrator(
        retriever,
        router,
        query_cache,
        trace_store=traces,
        config=settings.orchestrator_config(),
        parser=parser,
    )
    return Components(
        backend=backend,
        source=source,
        pool=pool,
        router=router,
        store=store,
        embedding_cache=embedding_cache,
        query_cache=query_cache,
        concept_index=concept_index,
        retriever=retriever,
        traces=traces,
        orchestrator=orchestrator,
    )


class QueryRequest(BaseModel):
    query: str = Field(min_length=1)
    user_id: int
    document_id: int | None = None
    chapter: int | None = None
    include_memories: bool = True
    include_annotations: bool = True
    max_results: int = Field(default=10, ge=1, le=20)
    preferred_topics: list[str] = Field(default_factory=list)
    use_embeddings: bool = True


class SearchRequest(BaseModel):
    query: str = Field(min_length=1)
    user_id: int
    document_id: int | None = None
    chapter: int | None = None
    max_results: int = Field(default=5, ge=1, le=20)
    use_embeddings: bool = True


class InvalidateRequest(BaseModel):
    user_id: int | None = None
    document_id: int | None = None
    chapter: int | None = None


class DocumentRequest(BaseModel):
    doc_id: int
    user_id: int
    title: str = Field(min_length=1)
    content: str


_settings = Settings()
configure_logging(_settings.log_level)
_components = build_components(_settings)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    try:
        await _components.router.refresh_available()
        await _components.concept_index.build()
    except StudyRagError as exc:
        logger.warning("Startup warm-up incomplete: %s", exc)
    yield
    if isinstance(_components.backend, OllamaClient):
        await _components.backend.aclose()


app = FastAPI(title="Study RAG Engine", version="0.1.0", lifespan=lifespan)


@app.get("/health")
async def health() -> dict[str, Any]:
    reachable = await _components.pool.check_connection()
    return {
        "status": "ok" if reachable else "degraded",
        "inference_reachable": reachable,
        "available_models": sorted(_components.router.available),
        "pool": _components.pool.stats(),
        "embedding_cache": _components.embedding_cache.stats(),
        "query_cache": _components.query_cache.stats(),
        "concept_terms": len(_components.concept_index),
    }


@app.post("/query")
async def query(request: QueryRequest) -> dict[str, Any]:
    orchestrator = _components.orchestrator
    orchestrator.reset_call_budget()
    try:
        response = await orchestrator.answer(RAGQuery(**request.model_dump()))
    except ConnectionUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except Exception as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return asdict(response)


@app.post("/search")
async def search(request: SearchRequest) -> dict[str, Any]:
    context = SearchContext(
        user_id=request.user_id, document_id=request.document_id, chapter=request.chapter
    )
    params = QueryParams(max_results=request.max_results, use_embeddings=request.use_embeddings)
    orchestrator = _components.orchestrator
    orchestrator.reset_call_budget()
    try:
        results = await orchestrator.retrieve(request.query, context, params)
    except CircuitOpen as exc:
        raise HTTPException(status_code=429, detail=str(exc)) from exc
    except ConnectionUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"items": [result.to_dict() for result in results]}


@app.post("/documents")
async def add_document(request: DocumentRequest) -> dict[str, Any]:
    source = _components.source
    if not isinstance(source, InMemoryDocumentSource):
        raise HTTPException(status_code=405, detail="Document source is read-only")
    document = Document(**request.model_dump())
    source.add_document(document)
    concepts = await _components.concept_index.extract_concepts(document)
    _components.concept_index.add(document.doc_id, concepts)
    invalidated = await _components.orchestrator.invalidate_document(document.doc_id)
    return {"doc_id": document.doc_id, "concepts": concepts, "invalidated": invalidated}


@app.get("/cache/stats")
def cache_stats() -> dict[str, Any]:
    return {
        "embedding": {**_components.embedding_cache.stats(), **_components.embedding_cache.info()},
        "query": {**_components.query_cache.stats(), **_components.query_cache.info()},
        "responses": _components.pool.response_cache.stats(),
    }


@app.post("/cache/invalidate")
async def invalidate_cache(request: InvalidateRequest) -> dict[str, Any]:
    if request.document_id is not None and request.user_id is None:
        return await _components.orchestrator.invalidate_document(request.document_id, request.chapter)
    if request.user_id is None:
        raise HTTPException(status_code=422, detail="user_id or document_id is required")
    removed = await _components.query_cache.invalidate_context(request.user_id, request.document_id)
    return {"queries": removed}


@app.delete("/cache")
def clear_cache() -> dict[str, Any]:
    _components.pool.clear_response_cache()
    return {
        "embeddings": _components.embedding_cache.clear(),
        "queries": _components.query_cache.clear(),
    }


@app.get("/models/performance")
def model_performance() -> dict[str, Any]:
    return _components.router.performance_report()


@app.get("/models/timeouts")
def model_timeouts() -> dict[str, Any]:
    return _components.router.timeout_report()


@app.post("/concepts/rebuild")
async def rebuild_concepts() -> dict[str, Any]:
    terms = await _components.concept_index.rebuild()
    return {"terms": terms}


@app.get("/traces")
def traces(limit: int = 20) -> dict[str, Any]:
    records = [asdict(record) for record in _components.traces.list_recent(limit=limit)]
    return {"items": records}


@app.get("/traces/{trace_id}")
def trace_detail(trace_id: str) -> dict[str, Any]:
    try:
        record = _components.traces.get(trace_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return asdict(record)


@app.get("/metrics")
def metrics() -> dict[str, Any]:
    return _components.traces.summary()
