"""Document/annotation/memory source contract and an in-memory adapter."""

from __future__ import annotations

from typing import Protocol

from study_rag.retrieval.excerpts import plain_text
from study_rag.retrieval.similarity import meaningful_words
from study_rag.types import Annotation, Document, Memory


class DocumentSource(Protocol):
    """Read-only access to a user's study material."""

    async def list_documents(self, user_id: int, limit: int = 20) -> list[Document]:
        """Most recently added documents of a user."""

    async def get_document(self, doc_id: int) -> Document | None:
        """Fetch one document by id."""

    async def all_documents(self) -> list[Document]:
        """Every document, for index builds."""

    async def search_documents(
        self,
        user_id: int,
        query: str,
        *,
        document_ids: list[int] | None = None,
        limit: int = 20,
    ) -> list[Document]:
        """Documents whose title or text contains a query term."""

    async def search_annotations(
        self,
        user_id: int,
        query: str,
        *,
        document_ids: list[int] | None = None,
        limit: int = 15,
    ) -> list[Annotation]:
        """User notes containing a query term."""

    async def search_memories(self, user_id: int, query: str, limit: int = 20) -> list[Memory]:
        """Stored assistant memories containing a query term."""


def _contains_term(text: str, terms: set[str]) -> bool:
    lowered = text.lower()
    return any(term in lowered for term in terms)


def _query_terms(query: str) -> set[str]:
    terms = meaningful_words(query)
    return terms or {query.lower().strip()}


class InMemoryDocumentSource:
    """Deterministic source used for tests and local prototyping."""

    def __init__(
        self,
        documents: list[Document] | None = None,
        annotations: list[Annotation] | None = None,
        memories: list[Memory] | None = None,
    ) -> None:
        self._documents: dict[int, Document] = {doc.doc_id: doc for doc in documents or []}
        self._annotations = list(annotations or [])
        self._memories = list(memories or [])

    def add_document(self, document: Document) -> None:
        self._documents[document.doc_id] = document

    def add_annotation(self, annotation: Annotation) -> None:
        self._annotations.append(annotation)

    def add_memory(self, memory: Memory) -> None:
        self._memories.append(memory)

    async def list_documents(self, user_id: int, limit: int = 20) -> list[Document]:
        owned = [doc for doc in self._documents.values() if doc.user_id == user_id]
        return list(reversed(owned))[:limit]

    async def get_document(self, doc_id: int) -> Document | None:
        return self._documents.get(doc_id)

    async def all_documents(self) -> list[Document]:
        return list(self._documents.values())

    async def search_documents(
        self,
        user_id: int,
        query: str,
        *,
        document_ids: list[int] | None = None,
        limit: int = 20,
    ) -> list[Document]:
        terms = _query_terms(query)
        allowed = set(document_ids) if document_ids is not None else None
        hits = [
            doc
            for doc in self._documents.values()
            if doc.user_id == user_id
            and (allowed is None or doc.doc_id in allowed)
            and (_contains_term(doc.title, terms) or _contains_term(plain_text(doc.content), terms))
        ]
        return hits[:limit]

    async def search_annotations(
        self,
        user_id: int,
        query: str,
        *,
        document_ids: list[int] | None = None,
        limit: int = 15,
    ) -> list[Annotation]:
        terms = _query_terms(query)
        allowed = set(document_ids) if document_ids is not None else None
        hits = [
            note
            for note in self._annotations
            if note.user_id == user_id
            and (allowed is None or note.document_id in allowed)
            and _contains_term(note.note, terms)
        ]
        return hits[:limit]

    async def search_memories(self, user_id: int, query: str, limit: int = 20) -> list[Memory]:
        terms = _query_terms(query)
        hits = [
            memory
            for memory in self._memories
            if memory.user_id == user_id and _contains_term(memory.content, terms)
        ]
        return hits[:limit]
