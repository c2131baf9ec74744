"""Top-level coordinator: query cache, retrieval, generation and grounding."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any

from study_rag.agent.fallback import (
    DEFAULT_RELATED_QUESTIONS,
    DEGRADED_CONFIDENCE,
    FAILURE_SUGGESTIONS,
    NO_RESULTS_SUGGESTIONS,
    NOTHING_FOUND_CONFIDENCE,
    TEMPLATE_CONFIDENCE,
    WEAK_RESULTS_CONFIDENCE,
    failure_answer,
    no_results_answer,
    template_answer,
)
from study_rag.agent.grounding import confidence_score, strip_unsupported_claims
from study_rag.agent.parsing import StructuredOutputParser
from study_rag.agent.prompts import RELATED_QUESTIONS_PROMPT, render_answer_prompt
from study_rag.cache.query_cache import QueryResultCache, query_cache_key
from study_rag.config import OrchestratorConfig
from study_rag.errors import CircuitOpen, ConnectionUnavailable, MalformedResponse, StudyRagError
from study_rag.models.router import ModelRouter
from study_rag.obs.tracing import Timer, TraceStore
from study_rag.retrieval.hybrid import HybridRetriever
from study_rag.types import CachedResult, QueryParams, RAGResponse, RetrievalResult, SearchContext

logger = logging.getLogger(__name__)

CACHED_ANSWER_CONFIDENCE = 0.8


@dataclass(slots=True)
class RAGQuery:
    """One question from a reader, with what they are currently reading."""

    query: str
    user_id: int
    document_id: int | None = None
    chapter: int | None = None
    include_memories: bool = True
    include_annotations: bool = True
    max_results: int = 10
    preferred_topics: list[str] = field(default_factory=list)
    use_embeddings: bool = True

    def context(self) -> SearchContext:
        return SearchContext(
            user_id=self.user_id,
            document_id=self.document_id,
            chapter=self.chapter,
            preferred_topics=list(self.preferred_topics),
        )

    def params(self) -> QueryParams:
        return QueryParams(
            include_memories=self.include_memories,
            include_annotations=self.include_annotations,
            use_embeddings=self.use_embeddings,
            max_results=self.max_results,
        )


def rag_score(result: RetrievalResult, context: SearchContext) -> float:
    score = result.relevance_score
    excerpt = result.excerpt.lower()
    if any(topic.lower() in excerpt for topic in context.preferred_topics if topic):
        score += 0.1
    if result.source_type in ("note", "memory"):
        score += 0.05
    if context.document_id is not None and result.document_id == context.document_id:
        score += 0.15
    return min(1.0, score)


def build_context(sources: list[RetrievalResult], max_chars: int = 4000) -> str:
    blocks: list[str] = []
    used = 0
    for source in sources:
        label = source.title or source.source_type
        block = f"[{label}] {source.excerpt}"
        if used + len(block) > max_chars:
            remaining = max_chars - used
            if remaining > 100:
                blocks.append(block[:remaining])
            break
        blocks.append(block)
        used += len(block) + 2
    return "\n\n".join(blocks)


def cross_references(sources: list[RetrievalResult], limit: int = 3) -> list[str]:
    """Titles of sources from documents other than the top source's."""
    if not sources:
        return []
    anchor = sources[0].document_id
    refs: list[str] = []
    for source in sources[1:]:
        if source.document_id is None or source.document_id == anchor:
            continue
        label = source.title or f"Document {source.document_id}"
        if label not in refs:
            refs.append(label)
        if len(refs) >= limit:
            break
    return refs


class RAGOrchestrator:
    """Answers reader questions, degrading instead of failing.

    Each request walks CHECK_CACHE, then RETRIEVE, RANK, GENERATE,
    GROUND_CHECK and STORE on a miss. Retrieval errors fall back to a
    keyword-only search, generation errors to a template answer built from
    the excerpts. Concurrent identical requests share one computation.
    ``rag_call_count`` bounds retrieval rounds until ``reset_call_budget``.
    """

    def __init__(
        self,
        retriever: HybridRetriever,
        router: ModelRouter,
        query_cache: QueryResultCache,
        *,
        trace_store: TraceStore | None = None,
        config: OrchestratorConfig | None = None,
        parser: StructuredOutputParser | None = None,
    ) -> None:
        self.retriever = retriever
        self.router = router
        self.query_cache = query_cache
        self.trace_store = trace_store or TraceStore()
        self.config = config or OrchestratorConfig()
        self.parser = parser or StructuredOutputParser()
        self.rag_call_count = 0
        self._in_flight: dict[str, asyncio.Future[RAGResponse]] = {}

    def reset_call_budget(self) -> None:
        self.rag_call_count = 0

    async def answer(self, request: RAGQuery) -> RAGResponse:
        context, params = request.context(), request.params()
        key = query_cache_key(request.query, context, params)
        pending = self._in_flight.get(key)
        if pending is not None:
            logger.debug("Joining in-flight request for %r", request.query)
            return await asyncio.shield(pending)

        task = asyncio.ensure_future(self._answer_and_trace(request, context, params))
        self._in_flight[key] = task
        task.add_done_callback(lambda _done: self._in_flight.pop(key, None))
        return await asyncio.shield(task)

    async def retrieve(
        self, query: str, context: SearchContext, params: QueryParams | None = None
    ) -> list[RetrievalResult]:
        """One budgeted retrieval round."""
        if self.rag_call_count >= self.config.max_rag_calls:
            raise CircuitOpen(
                f"Retrieval budget of {self.config.max_rag_calls} calls exhausted for this task"
            )
        self.rag_call_count += 1
        return await self.retriever.search(query, context, params)

    def rank(self, results: list[RetrievalResult], context: SearchContext) -> list[RetrievalResult]:
        scored = [dataclasses.replace(r, relevance_score=rag_score(r, context)) for r in results]
        return sorted(scored, key=lambda r: r.relevance_score, reverse=True)

    async def related_questions(self, query: str, answer: str) -> list[str]:
        prompt = RELATED_QUESTIONS_PROMPT.format(query=query, answer=answer[:800])
        try:
            reply = await self.router.execute_task("quick-classification", prompt)
        except StudyRagError as exc:
            logger.warning("Related question generation failed: %s", exc)
            return list(DEFAULT_RELATED_QUESTIONS)
        questions = await self.parser.parse(reply.text, list[str], default=[])
        questions = [q.strip() for q in questions if isinstance(q, str) and q.strip()]
        return questions[:3] or list(DEFAULT_RELATED_QUESTIONS)

    async def invalidate_document(self, document_id: int, chapter: int | None = None) -> dict[str, int]:
        """Drop cached responses and query results tied to a changed document."""
        responses = self.router.pool.clear_cache_for_document(document_id, chapter)
        queries = await self.query_cache.invalidate_document(document_id, chapter)
        logger.info(
            "Invalidated document %s (chapter %s): %d responses, %d queries",
            document_id,
            chapter,
            responses,
            queries,
        )
        return {"responses": responses, "queries": queries}

    async def _answer_and_trace(
        self, request: RAGQuery, context: SearchContext, params: QueryParams
    ) -> RAGResponse:
        with Timer() as timer:
            response = await self._respond(request, context, params)
        record = self.trace_store.create_record(
            user_id=request.user_id,
            query=request.query,
            answer=response.answer,
            source_ids=[source.source_id for source in response.sources],
            excerpts=[source.excerpt for source in response.sources],
            confidence=response.confidence,
            cache_source=response.cache_source,
            model=response.model,
            degraded=response.degraded,
            latency_ms=timer.elapsed_ms,
        )
        response.trace_id = record.trace_id
        logger.info(
            "Answered %r in %.0fms (confidence %.2f, cache %s, degraded %s)",
            request.query,
            timer.elapsed_ms,
            response.confidence,
            response.cache_source,
            response.degraded,
        )
        return response

    async def _respond(
        self, request: RAGQuery, context: SearchContext, params: QueryParams
    ) -> RAGResponse:
        query = request.query
        cached = await self.query_cache.get(query, context, params)
        if cached is not None:
            return self._from_cache(query, cached)

        degraded = False
        try:
            results = await self.retrieve(query, context, params)
        except StudyRagError as exc:
            logger.warning("Retrieval failed for %r, using keyword search: %s", query, exc)
            degraded = True
            try:
                results = await self.retriever.simple_search(query, context, limit=self.config.max_sources)
            except StudyRagError:
                logger.exception("Keyword search failed for %r", query)
                return self._failure(query)

        ranked = self.rank(results, context)
        sources = ranked[: self.config.max_sources]
        if not sources:
            return RAGResponse(
                answer=no_results_answer(query),
                sources=[],
                confidence=NOTHING_FOUND_CONFIDENCE,
                related_questions=list(DEFAULT_RELATED_QUESTIONS),
                suggestions=list(NO_RESULTS_SUGGESTIONS),
                degraded=degraded,
            )

        context_text = build_context(sources, self.config.max_context_chars)
        model: str | None = None
        if degraded:
            answer, confidence = template_answer(query, sources), DEGRADED_CONFIDENCE
        elif sources[0].relevance_score > self.config.generation_threshold:
            try:
                answer, confidence, model = await self._generate(query, context, context_text)
            except ConnectionUnavailable:
                logger.exception("Inference host unavailable while answering %r", query)
                return self._failure(query, sources)
            except StudyRagError as exc:
                logger.warning("Generation failed for %r, using template answer: %s", query, exc)
                answer, confidence, degraded = template_answer(query, sources), TEMPLATE_CONFIDENCE, True
        else:
            answer, confidence = template_answer(query, sources), WEAK_RESULTS_CONFIDENCE

        related = list(DEFAULT_RELATED_QUESTIONS)
        if model is not None and self.config.enable_related_questions:
            related = await self.related_questions(query, answer)
        refs = cross_references(sources) if self.config.enable_cross_references else []

        response = RAGResponse(
            answer=answer,
            sources=sources,
            confidence=confidence,
            related_questions=related,
            cross_references=refs,
            model=model,
            degraded=degraded,
        )
        if not degraded:
            await self.query_cache.put(
                query,
                context,
                params,
                [result.to_dict() for result in ranked[: self.config.cached_sources]],
                extra=self._stored_answer(response),
            )
        return response

    async def _generate(self, query: str, context: SearchContext, context_text: str) -> tuple[str, float, str]:
        title = None
        if context.document_id is not None:
            document = await self.retriever.source.get_document(context.document_id)
            title = document.title if document is not None else None
        prompt = render_answer_prompt(query, context_text, title)
        # The budget covers the primary attempt and its one fallback.
        result = await self.router.execute_task(
            "text-analysis", prompt, budget_ms=self.config.generation_timeout_seconds * 1000.0
        )
        answer = strip_unsupported_claims(result.text)
        if not answer:
            raise MalformedResponse("Model returned an empty answer", result.text)
        return answer, confidence_score(answer, context_text), result.model

    def _from_cache(self, query: str, cached: CachedResult) -> RAGResponse:
        sources = [RetrievalResult.from_dict(item) for item in cached.results][: self.config.max_sources]
        stored = cached.metadata
        answer = stored.get("answer") or template_answer(query, sources)
        return RAGResponse(
            answer=answer,
            sources=sources,
            confidence=float(stored.get("confidence", CACHED_ANSWER_CONFIDENCE)),
            related_questions=list(stored.get("related_questions") or DEFAULT_RELATED_QUESTIONS),
            cross_references=list(stored.get("cross_references") or cross_references(sources)),
            cache_source=cached.source,
            model=stored.get("model"),
        )

    def _failure(self, query: str, sources: list[RetrievalResult] | None = None) -> RAGResponse:
        return RAGResponse(
            answer=failure_answer(query),
            sources=sources or [],
            confidence=0.0,
            suggestions=list(FAILURE_SUGGESTIONS),
            degraded=True,
        )

    @staticmethod
    def _stored_answer(response: RAGResponse) -> dict[str, Any]:
        return {
            "answer": response.answer,
            "confidence": response.confidence,
            "related_questions": response.related_questions,
            "cross_references": response.cross_references,
            "model": response.model,
        }
