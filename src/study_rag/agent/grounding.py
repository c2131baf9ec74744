"""Local heuristics that keep generated answers tied to the retrieved context."""

from __future__ import annotations

import re

UNSUPPORTED_AUTHORITY = (
    "research shows",
    "studies indicate",
    "studies show",
    "experts agree",
    "scientists say",
    "it is well known that",
)

GROUNDING_PHRASES = (
    "based on",
    "from the context",
    "according to",
    "in your reading",
    "the document",
)

BASE_CONFIDENCE = 0.7
SHORT_CONTEXT_CHARS = 100


def has_grounding_phrase(answer: str) -> bool:
    lowered = answer.lower()
    return any(phrase in lowered for phrase in GROUNDING_PHRASES)


def strip_unsupported_claims(answer: str) -> str:
    """Remove appeals to outside authority unless the answer cites its context."""
    if has_grounding_phrase(answer):
        return answer
    cleaned = answer
    for phrase in UNSUPPORTED_AUTHORITY:
        cleaned = re.sub(rf"\b{re.escape(phrase)}\b,?\s*", "", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"[ \t]{2,}", " ", cleaned).strip()
    # Re-capitalise a sentence whose opening phrase was removed.
    return re.sub(r"(^|[.!?]\s+)([a-z])", lambda m: m.group(1) + m.group(2).upper(), cleaned)


def confidence_score(answer: str, context: str) -> float:
    confidence = BASE_CONFIDENCE
    if has_grounding_phrase(answer):
        confidence += 0.1
    if len(context) < SHORT_CONTEXT_CHARS:
        confidence -= 0.2
    return round(max(0.4, min(0.9, confidence)), 2)
