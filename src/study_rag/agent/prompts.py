"""Prompt templates and the structured outputs they ask for."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from langchain_core.prompts import PromptTemplate
from pydantic import BaseModel, Field, field_validator

if TYPE_CHECKING:
    from study_rag.models.router import ModelRouter

ANSWER_PROMPT = PromptTemplate.from_template(
    """You are a study assistant answering questions about the reader's own documents.

Rules:
1) Answer only from the context below. Say "based on the context" when you rely on it.
2) If the context does not contain the answer, say so plainly.
3) Do not cite outside research or studies.
{document_line}
Question: {query}

Context:
{context}

Answer:"""
)

RELEVANCE_PROMPT = PromptTemplate.from_template(
    """Rate how relevant the content is to the query.

Query: "{query}"
Related concepts: {semantic_context}

Content: {content}

Respond with JSON only:
{{"semantic_similarity": 0.0-1.0, "contextual_relevance": 0.0-1.0, "key_snippets": ["..."]}}"""
)

INTENT_PROMPT = PromptTemplate.from_template(
    """Analyse the search query and list related concepts and synonyms.

Query: "{query}"
Reader's preferred topics: {topics}

Respond with JSON only:
{{"intent": "search|question|exploration|comparison", "semantic_context": ["..."], "expanded_terms": ["..."]}}"""
)

CONCEPTS_PROMPT = PromptTemplate.from_template(
    """List up to 10 key concepts (single words or short phrases) in this document.

Title: {title}
Content: {content}

Respond with a JSON array of strings only."""
)

RELATED_QUESTIONS_PROMPT = PromptTemplate.from_template(
    """Suggest 3 short follow-up questions a reader might ask next.

Question: {query}
Answer: {answer}

Respond with a JSON array of 3 strings only."""
)

REPAIR_PROMPT = PromptTemplate.from_template(
    """The following text was supposed to be valid JSON but is not.
Return only the corrected JSON, with no commentary.

{text}"""
)


class RelevanceJudgement(BaseModel):
    semantic_similarity: float = 0.0
    contextual_relevance: float = 0.0
    key_snippets: list[str] = Field(default_factory=list)

    @field_validator("semantic_similarity", "contextual_relevance")
    @classmethod
    def clamp_unit_interval(cls, value: float) -> float:
        return max(0.0, min(1.0, value))


class QueryIntent(BaseModel):
    intent: str = "search"
    semantic_context: list[str] = Field(default_factory=list)
    expanded_terms: list[str] = Field(default_factory=list)


def render_answer_prompt(query: str, context: str, document_title: str | None = None) -> str:
    document_line = f"The reader is currently reading: {document_title}\n" if document_title else ""
    return ANSWER_PROMPT.format(query=query, context=context, document_line=document_line)


def model_repair(router: ModelRouter) -> Callable[[str], Awaitable[str]]:
    """Repair hook for ``StructuredOutputParser`` that asks a fast model to fix JSON."""

    async def _repair(text: str) -> str:
        result = await router.execute_task(
            "quick-classification", REPAIR_PROMPT.format(text=text[:1500]), use_cache=False
        )
        return result.text

    return _repair
