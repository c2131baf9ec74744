"""Hybrid retriever: embedding similarity first, keyword + model relevance as fallback."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from study_rag.agent.parsing import StructuredOutputParser
from study_rag.agent.prompts import INTENT_PROMPT, RELEVANCE_PROMPT, QueryIntent, RelevanceJudgement
from study_rag.cache.embedding_cache import EmbeddingCache
from study_rag.config import RetrievalConfig
from study_rag.errors import StudyRagError
from study_rag.retrieval.concept_index import ConceptIndex
from study_rag.retrieval.excerpts import Excerpt, create_excerpts, extract_relevant_excerpt, plain_text
from study_rag.retrieval.similarity import cosine_similarity, meaningful_words
from study_rag.retrieval.sources import DocumentSource
from study_rag.types import Document, QueryParams, RetrievalResult, SearchContext

if TYPE_CHECKING:
    from study_rag.models.router import ModelRouter

logger = logging.getLogger(__name__)

_MAX_JUDGED_NOTES = 5
_MAX_JUDGED_MEMORIES = 5


def rank(results: list[RetrievalResult]) -> list[RetrievalResult]:
    """Sort by relevance, then raw similarity; stable for equal scores."""
    return sorted(results, key=lambda r: (r.relevance_score, r.semantic_similarity), reverse=True)


def dedupe(results: list[RetrievalResult]) -> list[RetrievalResult]:
    best: dict[str, RetrievalResult] = {}
    for result in results:
        kept = best.get(result.source_id)
        if kept is None or result.relevance_score > kept.relevance_score:
            best[result.source_id] = result
    return list(best.values())


def overlap_score(query: str, text: str) -> float:
    """Share of meaningful query words present in ``text``."""
    terms = meaningful_words(query)
    if not terms:
        return 0.0
    lowered = text.lower()
    return sum(1 for term in terms if term in lowered) / len(terms)


def keyword_score(terms: list[str], title: str, content: str) -> float:
    if not terms:
        return 0.0
    title_hits = sum(1 for term in terms if term in title.lower())
    content_hits = sum(1 for term in terms if term in content.lower())
    return min((title_hits * 2 + content_hits) / (len(terms) * 3) + 0.1, 1.0)


class HybridRetriever:
    """Ranks excerpts from a user's documents, notes and memories.

    The embedding route scores every excerpt of up to ``max_candidate_documents``
    documents by cosine similarity, the open document first and with a lower
    bar. When embeddings are disabled, fail, or find nothing, the keyword route
    narrows candidates through the concept index, matches terms, and asks a
    model for a relevance judgement, falling back to plain word overlap.
    """

    def __init__(
        self,
        source: DocumentSource,
        embedding_cache: EmbeddingCache,
        router: ModelRouter | None = None,
        concept_index: ConceptIndex | None = None,
        config: RetrievalConfig | None = None,
        parser: StructuredOutputParser | None = None,
    ) -> None:
        self.source = source
        self.embedding_cache = embedding_cache
        self.router = router
        self.concept_index = concept_index
        self.config = config or RetrievalConfig()
        self.parser = parser or StructuredOutputParser()
        self.embedding_searches = 0
        self.keyword_searches = 0

    async def search(
        self, query: str, context: SearchContext, params: QueryParams | None = None
    ) -> list[RetrievalResult]:
        params = params or QueryParams()
        semantic_context = await self.expand_query(query, context, enabled=params.semantic_expansion)

        results: list[RetrievalResult] = []
        if params.use_embeddings:
            try:
                results = await self.search_with_embeddings(query, context)
            except StudyRagError as exc:
                logger.warning("Embedding search failed, using keyword route: %s", exc)
        if results:
            self.embedding_searches += 1
        else:
            self.keyword_searches += 1
            results = await self.search_by_keyword(query, context, semantic_context)

        if params.include_annotations:
            results.extend(await self.search_annotations(query, context, semantic_context))
        if params.include_memories:
            results.extend(await self.search_memories(query, context, semantic_context))

        limit = min(params.max_results, self.config.max_results)
        ranked = rank(dedupe(results))[:limit]
        logger.info("Retrieved %d results for %r (user %s)", len(ranked), query, context.user_id)
        return ranked

    async def expand_query(self, query: str, context: SearchContext, *, enabled: bool = True) -> list[str]:
        """Query words plus model-suggested related concepts and preferred topics."""
        terms = sorted(meaningful_words(query))
        if enabled and self.router is not None:
            intent = await self._analyse_intent(self.router, query, context)
            terms.extend(intent.semantic_context)
            terms.extend(intent.expanded_terms)
        terms.extend(context.preferred_topics)
        return list(dict.fromkeys(term.strip().lower() for term in terms if term.strip()))

    async def search_with_embeddings(self, query: str, context: SearchContext) -> list[RetrievalResult]:
        query_vector = (await self.embedding_cache.get_embedding(query, user_id=context.user_id)).vector
        documents = await self.source.list_documents(context.user_id, limit=self.config.max_candidate_documents)

        current: Document | None = None
        if context.document_id is not None:
            current = next((doc for doc in documents if doc.doc_id == context.document_id), None)
            if current is None:
                current = await self.source.get_document(context.document_id)
            if current is not None and current.user_id != context.user_id:
                current = None
        others = [doc for doc in documents if current is None or doc.doc_id != current.doc_id]

        results: list[RetrievalResult] = []
        if current is not None:
            results.extend(
                await self._score_document(
                    current,
                    query_vector,
                    context,
                    threshold=self.config.current_document_similarity,
                    boost=self.config.current_document_boost,
                )
            )

        group_size = self.config.document_group_size
        for start in range(0, len(others), group_size):
            if len(results) >= self.config.early_exit_results:
                logger.debug("Early exit after %d embedding results", len(results))
                break
            group = others[start : start + group_size]
            scored = await asyncio.gather(
                *(
                    self._score_document(
                        doc,
                        query_vector,
                        context,
                        threshold=self.config.other_document_similarity,
                        boost=1.0,
                    )
                    for doc in group
                )
            )
            for document_results in scored:
                results.extend(document_results)
        return rank(results)

    async def search_by_keyword(
        self, query: str, context: SearchContext, semantic_context: list[str]
    ) -> list[RetrievalResult]:
        """Current document first; a strong local hit short-circuits the library search."""
        local: list[RetrievalResult] = []
        if context.document_id is not None:
            current = await self.source.get_document(context.document_id)
            if current is not None and current.user_id == context.user_id:
                local = await self._judge_documents([current], query, semantic_context)
        if local and max(result.relevance_score for result in local) > self.config.strong_local_score:
            return rank(local)

        boost = self.config.current_document_boost
        for result in local:
            result.relevance_score = min(1.0, result.relevance_score * boost)

        candidate_ids = self._candidate_ids(semantic_context)
        documents = await self.source.search_documents(
            context.user_id, query, document_ids=candidate_ids, limit=self.config.max_candidate_documents
        )
        if not documents and candidate_ids is not None:
            documents = await self.source.search_documents(
                context.user_id, query, limit=self.config.max_candidate_documents
            )
        library = [doc for doc in documents if doc.doc_id != context.document_id]
        library_results = await self._judge_documents(library, query, semantic_context)
        return rank(dedupe(local + library_results))

    async def search_annotations(
        self, query: str, context: SearchContext, semantic_context: list[str]
    ) -> list[RetrievalResult]:
        notes = await self.source.search_annotations(context.user_id, query, limit=_MAX_JUDGED_NOTES)
        results: list[RetrievalResult] = []
        for note in notes:
            semantic, contextual = await self.judge(query, semantic_context, note.note)
            result = _result(
                f"note_{note.note_id}",
                "note",
                note.note[: self.config.relevant_excerpt_chars],
                semantic,
                contextual,
                document_id=note.document_id,
                chapter=note.chapter,
            )
            if result.relevance_score >= self.config.min_relevance:
                results.append(result)
        return results

    async def search_memories(
        self, query: str, context: SearchContext, semantic_context: list[str]
    ) -> list[RetrievalResult]:
        memories = await self.source.search_memories(context.user_id, query, limit=_MAX_JUDGED_MEMORIES)
        results: list[RetrievalResult] = []
        for memory in memories:
            semantic, contextual = await self.judge(query, semantic_context, memory.content)
            result = _result(
                f"memory_{memory.memory_id}",
                "memory",
                memory.content[: self.config.relevant_excerpt_chars],
                semantic,
                contextual,
                title=memory.category,
            )
            if result.relevance_score >= self.config.min_relevance:
                results.append(result)
        return results

    async def simple_search(self, query: str, context: SearchContext, limit: int = 5) -> list[RetrievalResult]:
        """Keyword-only scoring with no model calls, for degraded operation."""
        terms = sorted(meaningful_words(query))[:10]
        documents = await self.source.search_documents(
            context.user_id, query, limit=self.config.max_candidate_documents
        )
        results: list[RetrievalResult] = []
        for doc in documents:
            text = plain_text(doc.content)
            score = keyword_score(terms, doc.title, text)
            if score <= self.config.fallback_threshold:
                continue
            results.append(
                _result(
                    f"doc_{doc.doc_id}",
                    "document",
                    extract_relevant_excerpt(text, query, self.config.relevant_excerpt_chars),
                    score,
                    score,
                    title=doc.title,
                    document_id=doc.doc_id,
                )
            )
        return rank(results)[:limit]

    async def judge(self, query: str, semantic_context: list[str], content: str) -> tuple[float, float]:
        """(semantic, contextual) relevance from the model, or word overlap if it fails."""
        if self.router is not None:
            prompt = RELEVANCE_PROMPT.format(
                query=query,
                semantic_context=", ".join(semantic_context[:10]),
                content=content[:1000],
            )
            try:
                reply = await self.router.execute_task("semantic-search", prompt)
            except StudyRagError as exc:
                logger.warning("Relevance scoring failed, using word overlap: %s", exc)
            else:
                judgement = await self.parser.parse(reply.text, RelevanceJudgement, default=None)
                if judgement is not None:
                    return judgement.semantic_similarity, judgement.contextual_relevance

        score = overlap_score(query, content)
        return score, score * 0.8

    def _candidate_ids(self, semantic_context: list[str]) -> list[int] | None:
        if self.concept_index is None or not self.concept_index.built:
            return None
        ids = self.concept_index.candidates(semantic_context)
        return ids or None

    async def _analyse_intent(self, router: ModelRouter, query: str, context: SearchContext) -> QueryIntent:
        prompt = INTENT_PROMPT.format(query=query, topics=", ".join(context.preferred_topics) or "none")
        try:
            reply = await router.execute_task("quick-classification", prompt)
        except StudyRagError as exc:
            logger.warning("Query intent analysis failed: %s", exc)
            return QueryIntent(semantic_context=list(context.preferred_topics))
        return await self.parser.parse(
            reply.text, QueryIntent, default=QueryIntent(semantic_context=list(context.preferred_topics))
        )

    async def _judge_documents(
        self, documents: list[Document], query: str, semantic_context: list[str]
    ) -> list[RetrievalResult]:
        results: list[RetrievalResult] = []
        for doc in documents:
            text = plain_text(doc.content)
            excerpt = extract_relevant_excerpt(text, query, self.config.relevant_excerpt_chars)
            semantic, contextual = await self.judge(query, semantic_context, excerpt)
            result = _result(
                f"doc_{doc.doc_id}",
                "document",
                excerpt,
                semantic,
                contextual,
                title=doc.title,
                document_id=doc.doc_id,
            )
            if result.relevance_score >= self.config.min_relevance:
                results.append(result)
        return results

    async def _score_document(
        self,
        document: Document,
        query_vector: list[float],
        context: SearchContext,
        *,
        threshold: float,
        boost: float,
    ) -> list[RetrievalResult]:
        excerpts: list[Excerpt] = create_excerpts(document.content, self.config.excerpt_chars)
        if not excerpts:
            return []
        embedded = await self.embedding_cache.get_embeddings(
            [excerpt.text for excerpt in excerpts], user_id=context.user_id
        )
        results: list[RetrievalResult] = []
        for position, (excerpt, embedding) in enumerate(zip(excerpts, embedded)):
            similarity = cosine_similarity(query_vector, embedding.vector)
            if similarity < threshold:
                continue
            boosted = min(1.0, similarity * boost)
            results.append(
                RetrievalResult(
                    source_id=f"doc_{document.doc_id}_p{excerpt.paragraph}_{position}",
                    source_type="document",
                    excerpt=excerpt.text,
                    relevance_score=boosted,
                    semantic_similarity=similarity,
                    contextual_relevance=boosted,
                    title=document.title,
                    document_id=document.doc_id,
                    chapter=excerpt.chapter,
                )
            )
        return results


def _result(
    source_id: str,
    source_type: str,
    excerpt: str,
    semantic: float,
    contextual: float,
    *,
    title: str = "",
    document_id: int | None = None,
    chapter: int | None = None,
) -> RetrievalResult:
    return RetrievalResult(
        source_id=source_id,
        source_type=source_type,
        excerpt=excerpt,
        relevance_score=semantic * 0.6 + contextual * 0.4,
        semantic_similarity=semantic,
        contextual_relevance=contextual,
        title=title,
        document_id=document_id,
        chapter=chapter,
    )
