"""Term -> document-id index used to narrow keyword search candidates."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import TYPE_CHECKING

from study_rag.agent.parsing import StructuredOutputParser, quoted_strings
from study_rag.agent.prompts import CONCEPTS_PROMPT
from study_rag.errors import StudyRagError
from study_rag.retrieval.excerpts import plain_text
from study_rag.retrieval.similarity import meaningful_words
from study_rag.retrieval.sources import DocumentSource
from study_rag.types import Document

if TYPE_CHECKING:
    from study_rag.models.router import ModelRouter

logger = logging.getLogger(__name__)

UNIVERSAL_TERMS = (
    "knowledge", "learning", "understanding", "analysis", "concept", "theory",
    "principle", "method", "system", "process", "development", "innovation",
    "research", "discovery", "technology", "science", "education", "growth",
    "progress", "solution", "strategy", "framework", "approach", "technique",
    "implementation",
)


def fallback_concepts(document: Document) -> list[str]:
    """Title words plus generic study terms found in the text, at most 8."""
    title_words = [
        word for word in document.title.split()
        if len(word) > 3 and word.lower() not in {"the", "and", "for", "with"}
    ][:2]
    lowered = plain_text(document.content).lower()
    found = [term for term in UNIVERSAL_TERMS if term in lowered][:5]
    return list(dict.fromkeys(title_words + found))[:8]


class ConceptIndex:
    """Built once at startup; ``rebuild`` refreshes it after content changes."""

    def __init__(
        self,
        source: DocumentSource,
        router: ModelRouter | None = None,
        parser: StructuredOutputParser | None = None,
    ) -> None:
        self.source = source
        self.router = router
        self.parser = parser or StructuredOutputParser()
        self._index: dict[str, set[int]] = defaultdict(set)
        self.built = False

    def __len__(self) -> int:
        return len(self._index)

    async def build(self) -> int:
        documents = await self.source.all_documents()
        for document in documents:
            self.add(document.doc_id, await self.extract_concepts(document))
            self.add(document.doc_id, meaningful_words(document.title))
        self.built = True
        logger.info("Concept index built: %d terms over %d documents", len(self._index), len(documents))
        return len(self._index)

    async def rebuild(self) -> int:
        self._index.clear()
        self.built = False
        return await self.build()

    def add(self, doc_id: int, concepts: list[str] | set[str]) -> None:
        for concept in concepts:
            key = concept.strip().lower()
            if not key:
                continue
            self._index[key].add(doc_id)
            for word in meaningful_words(key):
                self._index[word].add(doc_id)

    def candidates(self, terms: list[str]) -> list[int]:
        """Document ids indexed under any of ``terms`` (or their words)."""
        found: set[int] = set()
        for term in terms:
            key = term.strip().lower()
            found |= self._index.get(key, set())
            for word in meaningful_words(key):
                found |= self._index.get(word, set())
        return sorted(found)

    async def extract_concepts(self, document: Document) -> list[str]:
        if self.router is None:
            return fallback_concepts(document)
        prompt = CONCEPTS_PROMPT.format(title=document.title, content=plain_text(document.content)[:1500])
        try:
            result = await self.router.execute_task("text-analysis", prompt)
        except StudyRagError as exc:
            logger.warning("Concept extraction failed for document %s: %s", document.doc_id, exc)
            return fallback_concepts(document)

        concepts = await self.parser.parse(result.text, list[str], default=[])
        if not concepts:
            concepts = quoted_strings(result.text)
        return concepts[:10] or fallback_concepts(document)
