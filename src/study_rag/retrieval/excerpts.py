"""Splitting documents into bounded excerpts and locating query-relevant windows."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_MIN_SENTENCE_CHARS = 20


@dataclass(slots=True)
class Excerpt:
    text: str
    chapter: int | None
    paragraph: int


def create_excerpts(content: str, max_chars: int = 500) -> list[Excerpt]:
    """Split content into excerpts of at most ``max_chars`` characters.

    Structured content (JSON with ``chapters[].paragraphs[]``, or a JSON object
    with a ``content`` string) is walked paragraph by paragraph and keeps its
    chapter numbers. Plain text is split on blank lines. Paragraphs that are too
    long are packed sentence by sentence, dropping fragments of 20 characters
    or fewer.
    """
    paragraphs = _structured_paragraphs(content)
    if paragraphs is None:
        paragraphs = [(None, part) for part in _PARAGRAPH_SPLIT.split(content)]

    excerpts: list[Excerpt] = []
    for index, (chapter, paragraph) in enumerate(paragraphs):
        text = " ".join(paragraph.split())
        if len(text) <= _MIN_SENTENCE_CHARS:
            continue
        for piece in _pack_sentences(text, max_chars):
            excerpts.append(Excerpt(text=piece, chapter=chapter, paragraph=index))
    return excerpts


def extract_relevant_excerpt(content: str, query: str, max_chars: int = 300, step: int = 50) -> str:
    """Return the ``max_chars`` window with the most query-term hits."""
    terms = [term for term in query.lower().split() if term]
    lowered = content.lower()
    best_position = 0
    best_score = 0
    for position in range(0, max(0, len(content) - max_chars), step):
        window = lowered[position : position + max_chars]
        score = sum(1 for term in terms if term in window)
        if score > best_score:
            best_score, best_position = score, position

    excerpt = content[best_position : best_position + max_chars]
    if best_position > 0:
        excerpt = "..." + excerpt
    if best_position + max_chars < len(content):
        excerpt += "..."
    return excerpt


def plain_text(content: str) -> str:
    """Flatten structured content to plain paragraphs for keyword matching."""
    paragraphs = _structured_paragraphs(content)
    if paragraphs is None:
        return content
    return "\n\n".join(text for _, text in paragraphs)


def _pack_sentences(text: str, max_chars: int) -> list[str]:
    if len(text) <= max_chars:
        return [text]
    pieces: list[str] = []
    current = ""
    for sentence in _SENTENCE_SPLIT.split(text):
        sentence = sentence.strip()
        if len(sentence) <= _MIN_SENTENCE_CHARS:
            continue
        while len(sentence) > max_chars:
            if current:
                pieces.append(current)
                current = ""
            pieces.append(sentence[:max_chars])
            sentence = sentence[max_chars:].strip()
        if not sentence:
            continue
        candidate = f"{current} {sentence}".strip()
        if len(candidate) <= max_chars:
            current = candidate
        else:
            pieces.append(current)
            current = sentence
    if current:
        pieces.append(current)
    return pieces


def _structured_paragraphs(content: str) -> list[tuple[int | None, str]] | None:
    stripped = content.lstrip()
    if not stripped.startswith(("{", "[", '"')):
        return None
    try:
        parsed: Any = json.loads(content)
    except json.JSONDecodeError:
        return None

    if isinstance(parsed, str):
        return [(None, part) for part in _PARAGRAPH_SPLIT.split(parsed)]
    if not isinstance(parsed, dict):
        return None
    if isinstance(parsed.get("content"), str):
        return [(None, part) for part in _PARAGRAPH_SPLIT.split(parsed["content"])]

    chapters = parsed.get("chapters")
    if not isinstance(chapters, list):
        return None
    paragraphs: list[tuple[int | None, str]] = []
    for position, chapter in enumerate(chapters, start=1):
        if not isinstance(chapter, dict):
            continue
        number = chapter.get("number", position)
        chapter_number = number if isinstance(number, int) else position
        for paragraph in chapter.get("paragraphs") or []:
            text = paragraph.get("text") if isinstance(paragraph, dict) else paragraph
            if isinstance(text, str) and text.strip():
                paragraphs.append((chapter_number, text))
    return paragraphs
