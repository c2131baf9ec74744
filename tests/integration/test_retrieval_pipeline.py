import asyncio
import math

import pytest

from study_rag.cache.embedding_cache import EmbeddingCache
from study_rag.cache.store import CacheStore
from study_rag.config import RetrievalConfig
from study_rag.inference.pool import InferencePool
from study_rag.models.registry import ModelRegistry
from study_rag.models.router import ModelRouter
from study_rag.retrieval.concept_index import ConceptIndex
from study_rag.retrieval.hybrid import HybridRetriever
from study_rag.retrieval.sources import InMemoryDocumentSource
from study_rag.types import Annotation, Document, Memory, QueryParams, SearchContext

QUERY = "What is the role of faith?"

DOCUMENTS = [
    Document(
        1,
        1,
        "Letters on Faith",
        "Faith is trust in what is hoped for. Faith and hope belong together in these letters.\n\n"
        "Grace is given freely, and grace shapes faith.\n\n"
        "Grace, grace, and more grace is offered; faith receives it.",
    ),
    Document(2, 1, "Physics Primer", "Energy and force describe motion. Physics studies energy in every system."),
    Document(3, 1, "Empire History", "The history of the empire is long. The empire fell after centuries of history."),
    Document(4, 2, "Another Reader", "Faith faith faith everywhere in this other reader's text."),
    Document(5, 1, "Faith in Practice", "Practising faith every day builds steady trust."),
]
NOTE = Annotation(1, 1, 1, "My note: faith needs daily practice")
MEMORY = Memory(1, 1, "insight", "Reader is studying faith in the letters")

KEYWORD_ONLY = QueryParams(use_embeddings=False, include_annotations=False, include_memories=False)


def _retriever(tmp_path, backend, documents=None, *, config=None, with_index=False) -> HybridRetriever:
    source = InMemoryDocumentSource(documents or DOCUMENTS, [NOTE], [MEMORY])
    router = ModelRouter(ModelRegistry(), InferencePool(backend))
    cache = EmbeddingCache(CacheStore(tmp_path / "retrieval.db"), router)
    index = ConceptIndex(source) if with_index else None
    if index is not None:
        asyncio.run(index.build())
    return HybridRetriever(source, cache, router, index, config or RetrievalConfig())


def _with_relevance(backend, reply: str) -> None:
    original = backend.reply
    backend.reply = lambda model, prompt: reply if "Rate how relevant" in prompt else original(model, prompt)


def test_embedding_search_prefers_current_document(tmp_path, fake_backend) -> None:
    retriever = _retriever(tmp_path, fake_backend)
    context = SearchContext(user_id=1, document_id=1)

    results = asyncio.run(retriever.search(QUERY, context, QueryParams()))

    documents = {result.source_id: result for result in results if result.source_type == "document"}
    assert set(documents) == {"doc_5_p0_0", "doc_1_p0_0", "doc_1_p1_1", "doc_1_p2_2"}
    assert documents["doc_1_p0_0"].semantic_similarity == pytest.approx(2 / math.sqrt(8))
    assert documents["doc_1_p0_0"].relevance_score == pytest.approx(2 / math.sqrt(8) * 1.2)
    # Below the bar for other documents, kept because it is the open document.
    assert documents["doc_1_p2_2"].semantic_similarity == pytest.approx(1 / math.sqrt(10))
    assert {"note", "memory"} <= {result.source_type for result in results}
    assert [r.relevance_score for r in results] == sorted((r.relevance_score for r in results), reverse=True)
    assert retriever.embedding_searches == 1


def test_other_documents_need_higher_similarity(tmp_path, fake_backend) -> None:
    retriever = _retriever(tmp_path, fake_backend)
    context = SearchContext(user_id=1)

    results = asyncio.run(retriever.search_with_embeddings(QUERY, context))

    assert [result.source_id for result in results] == ["doc_5_p0_0", "doc_1_p0_0", "doc_1_p1_1"]
    assert results[1].relevance_score == pytest.approx(2 / math.sqrt(8))


def test_early_exit_stops_scanning_document_groups(tmp_path, fake_backend) -> None:
    config = RetrievalConfig(document_group_size=1, early_exit_results=1)
    retriever = _retriever(tmp_path, fake_backend, config=config)

    results = asyncio.run(retriever.search_with_embeddings(QUERY, SearchContext(user_id=1)))

    assert {result.document_id for result in results} == {5}


def test_keyword_route_when_embeddings_disabled(tmp_path, fake_backend) -> None:
    retriever = _retriever(tmp_path, fake_backend)

    results = asyncio.run(retriever.search(QUERY, SearchContext(user_id=1), KEYWORD_ONLY))

    assert [result.source_id for result in results] == ["doc_1", "doc_5"]
    assert results[0].relevance_score == pytest.approx(0.9 * 0.6 + 0.8 * 0.4)
    assert retriever.keyword_searches == 1
    assert fake_backend.embedding_calls == []


def test_strong_local_result_skips_library_search(tmp_path, fake_backend) -> None:
    retriever = _retriever(tmp_path, fake_backend)
    context = SearchContext(user_id=1, document_id=1)

    results = asyncio.run(retriever.search(QUERY, context, KEYWORD_ONLY))

    assert [result.source_id for result in results] == ["doc_1"]


def test_weak_local_result_is_boosted_and_merged(tmp_path, fake_backend) -> None:
    _with_relevance(fake_backend, '{"semantic_similarity": 0.5, "contextual_relevance": 0.5}')
    retriever = _retriever(tmp_path, fake_backend)
    context = SearchContext(user_id=1, document_id=1)

    results = asyncio.run(retriever.search(QUERY, context, KEYWORD_ONLY))

    assert [result.source_id for result in results] == ["doc_1", "doc_5"]
    assert results[0].relevance_score == pytest.approx(0.6)
    assert results[1].relevance_score == pytest.approx(0.5)


def test_unparseable_relevance_uses_word_overlap(tmp_path, fake_backend) -> None:
    _with_relevance(fake_backend, "I would rate this fairly relevant.")
    retriever = _retriever(tmp_path, fake_backend)

    results = asyncio.run(retriever.search(QUERY, SearchContext(user_id=1), KEYWORD_ONLY))

    assert results[0].semantic_similarity == pytest.approx(0.5)
    assert results[0].contextual_relevance == pytest.approx(0.4)
    assert results[0].relevance_score == pytest.approx(0.46)


def test_unreachable_service_degrades_to_keyword_overlap(tmp_path, fake_backend) -> None:
    fake_backend.unreachable = True
    retriever = _retriever(tmp_path, fake_backend)

    results = asyncio.run(retriever.search(QUERY, SearchContext(user_id=1), QueryParams()))

    assert "doc_1" in {result.source_id for result in results}
    assert retriever.keyword_searches == 1
    assert retriever.embedding_searches == 0


def test_concept_index_narrows_keyword_candidates(tmp_path, fake_backend) -> None:
    journal = Document(6, 1, "Weekly Journal", "A short entry about faith and the weather today.")
    retriever = _retriever(tmp_path, fake_backend, DOCUMENTS + [journal], with_index=True)
    unindexed = _retriever(tmp_path, fake_backend, DOCUMENTS + [journal])

    narrowed = asyncio.run(retriever.search(QUERY, SearchContext(user_id=1), KEYWORD_ONLY))
    full = asyncio.run(unindexed.search(QUERY, SearchContext(user_id=1), KEYWORD_ONLY))

    assert {result.document_id for result in narrowed} == {1, 5}
    assert {result.document_id for result in full} == {1, 5, 6}


def test_simple_search_scores_title_and_content_hits(tmp_path, fake_backend) -> None:
    retriever = _retriever(tmp_path, fake_backend)

    results = asyncio.run(retriever.simple_search("faith grace", SearchContext(user_id=1)))

    assert [result.document_id for result in results] == [1, 5]
    assert results[0].relevance_score == pytest.approx(4 / 6 + 0.1)
    assert results[1].relevance_score == pytest.approx(3 / 6 + 0.1)
    assert fake_backend.generate_calls == []


def test_notes_and_memories_are_capped(tmp_path, fake_backend) -> None:
    retriever = _retriever(tmp_path, fake_backend)
    for note_id in range(2, 10):
        retriever.source.add_annotation(Annotation(note_id, 1, 1, f"Faith reflection number {note_id}"))
        retriever.source.add_memory(Memory(note_id, 1, "insight", f"Asked about faith, session {note_id}"))
    context = SearchContext(user_id=1)

    notes = asyncio.run(retriever.search_annotations(QUERY, context, ["faith"]))
    memories = asyncio.run(retriever.search_memories(QUERY, context, ["faith"]))

    assert [note.source_id for note in notes] == [f"note_{n}" for n in range(1, 6)]
    assert len(memories) == 5
    assert all(memory.relevance_score == pytest.approx(0.86) for memory in memories)


def test_open_document_of_another_reader_is_ignored(tmp_path, fake_backend) -> None:
    retriever = _retriever(tmp_path, fake_backend)
    context = SearchContext(user_id=2, document_id=1)

    embedded = asyncio.run(retriever.search_with_embeddings(QUERY, context))
    keyword = asyncio.run(retriever.search(QUERY, context, KEYWORD_ONLY))

    assert all(result.document_id != 1 for result in embedded + keyword)
    assert all(result.document_id in (None, 4) for result in embedded + keyword)


def test_query_expansion_uses_intent_only_with_a_router(tmp_path, fake_backend) -> None:
    retriever = _retriever(tmp_path, fake_backend)
    offline = HybridRetriever(retriever.source, retriever.embedding_cache, None, None, RetrievalConfig())
    context = SearchContext(user_id=1, preferred_topics=["Hope"])

    expanded = asyncio.run(retriever.expand_query(QUERY, context))
    plain = asyncio.run(offline.expand_query(QUERY, context))

    assert "faith" in expanded and "belief" in expanded and "hope" in expanded
    assert "faith" in plain and "hope" in plain
    assert "belief" not in plain
