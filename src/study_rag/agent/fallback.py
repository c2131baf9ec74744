"""Answers assembled from retrieved excerpts without a model call."""

from __future__ import annotations

from study_rag.types import RetrievalResult

TEMPLATE_CONFIDENCE = 0.7
WEAK_RESULTS_CONFIDENCE = 0.6
NOTHING_FOUND_CONFIDENCE = 0.3
DEGRADED_CONFIDENCE = 0.5

DEFAULT_RELATED_QUESTIONS = [
    "Can you explain this concept in more detail?",
    "How does this relate to other topics in my library?",
    "What are the key points I should remember?",
]

NO_RESULTS_SUGGESTIONS = [
    "Try rephrasing your question with different keywords.",
    "Upload more documents on this topic to your library.",
    "Ask about a specific chapter or section you are reading.",
]

FAILURE_SUGGESTIONS = [
    "Try rephrasing your question.",
    "Upload more study material on this topic.",
    "Browse your document library for related content.",
]


def _trim(text: str, limit: int = 120) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[:limit].rstrip() + "..."


def template_answer(query: str, sources: list[RetrievalResult]) -> str:
    """Stitch the top two excerpts into an answer."""
    if not sources:
        return no_results_answer(query)
    lines = [f'Based on your current reading, here\'s what I found about "{query}":', ""]
    for idx, source in enumerate(sources[:2], start=1):
        label = source.title or source.source_type
        lines.append(f"{idx}. {_trim(source.excerpt)} [{label}]")
    if len(sources) > 2:
        lines.append("")
        lines.append(f"{len(sources) - 2} more related passages are listed in the sources.")
    return "\n".join(lines)


def no_results_answer(query: str) -> str:
    return (
        f'I couldn\'t find information about "{query}" in your study material. '
        "Your library may not cover this topic yet."
    )


def failure_answer(query: str) -> str:
    return (
        f'I\'m sorry, I couldn\'t answer "{query}" right now because the study assistant '
        "is having trouble reaching its language model. Please try again shortly."
    )
