"""Vector and word-overlap similarity measures."""

from __future__ import annotations

import re
from math import sqrt

_NON_WORD = re.compile(r"[^\w\s]+", flags=re.UNICODE)
_WHITESPACE = re.compile(r"\s+")

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
        "with", "by", "is", "are", "was", "were", "be", "been", "have", "has", "had",
        "do", "does", "did", "will", "would", "could", "should", "can", "may", "might",
        "what", "when", "where", "why", "how", "who", "which", "that", "this", "these",
        "those",
    }
)


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """``dot(a, b) / (|a| * |b|)``; 0.0 for zero vectors or mismatched lengths."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def normalize_query(query: str) -> str:
    """Lower-case, turn punctuation into spaces, collapse whitespace."""
    return _WHITESPACE.sub(" ", _NON_WORD.sub(" ", query.lower())).strip()


def meaningful_words(text: str) -> set[str]:
    return {
        word
        for word in normalize_query(text).split(" ")
        if len(word) > 2 and word not in STOP_WORDS
    }


def word_overlap_similarity(first: str, second: str) -> float:
    """Jaccard overlap of meaningful words, penalised for length mismatch.

    Fewer than two shared words always scores 0.0.
    """
    words_a = meaningful_words(first)
    words_b = meaningful_words(second)
    if not words_a or not words_b:
        return 0.0
    common = words_a & words_b
    if len(common) < 2:
        return 0.0
    jaccard = len(common) / len(words_a | words_b)
    length_penalty = abs(len(words_a) - len(words_b)) / max(len(words_a), len(words_b))
    return max(0.0, jaccard - length_penalty * 0.3)
