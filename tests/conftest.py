import asyncio
import os
import tempfile
from typing import Any

import pytest

from study_rag.errors import ConnectionUnavailable

# The API module builds its components at import time; keep its sqlite file out of the repo.
os.environ.setdefault(
    "STUDY_RAG_DATABASE_PATH", os.path.join(tempfile.mkdtemp(prefix="study_rag_"), "api.db")
)

VOCABULARY = (
    "faith", "grace", "hope", "love", "prayer", "scripture",
    "energy", "physics", "motion", "force", "history", "empire",
)

ANSWER_TEXT = "Based on the context, faith is trust in what is hoped for."


def vocabulary_vector(text: str) -> list[float]:
    lowered = text.lower()
    return [float(lowered.count(word)) for word in VOCABULARY]


def default_reply(model: str, prompt: str) -> str:
    if "Analyse the search query" in prompt:
        return '{"intent": "question", "semantic_context": ["belief"], "expanded_terms": []}'
    if "Rate how relevant" in prompt:
        return '{"semantic_similarity": 0.9, "contextual_relevance": 0.8, "key_snippets": []}'
    if "key concepts" in prompt:
        return '["faith", "grace"]'
    if "follow-up questions" in prompt:
        return '["What is grace?", "How is hope related?", "Where is faith discussed?"]'
    if "corrected JSON" in prompt:
        return "{}"
    return ANSWER_TEXT


class FakeBackend:
    """In-process inference service with per-model delays and failures."""

    def __init__(self) -> None:
        self.reply = default_reply
        self.delays: dict[str, float] = {}
        self.slow_markers: dict[str, float] = {}
        self.slow_model_markers: dict[tuple[str, str], float] = {}
        self.unreachable = False
        self.installed: list[str] | None = None
        self.generate_calls: list[tuple[str, str]] = []
        self.embedding_calls: list[str] = []

    async def generate(self, model: str, prompt: str, *, options: dict[str, Any]) -> str:
        self.generate_calls.append((model, prompt))
        if self.unreachable:
            raise ConnectionUnavailable("fake host is down")
        delay = self.delays.get(model, 0.0)
        delay += sum(seconds for marker, seconds in self.slow_markers.items() if marker in prompt)
        delay += sum(
            seconds
            for (slow_model, marker), seconds in self.slow_model_markers.items()
            if slow_model == model and marker in prompt
        )
        if delay:
            await asyncio.sleep(delay)
        return self.reply(model, prompt)

    async def chat(self, model: str, messages: list[dict[str, str]], *, options: dict[str, Any]) -> str:
        return await self.generate(model, messages[-1]["content"], options=options)

    async def stream_chat(self, model: str, messages: list[dict[str, str]], *, options: dict[str, Any]):
        text = await self.generate(model, messages[-1]["content"], options=options)
        for word in text.split(" "):
            yield word + " "

    async def embeddings(self, model: str, prompt: str) -> list[float]:
        self.embedding_calls.append(prompt)
        if self.unreachable:
            raise ConnectionUnavailable("fake host is down")
        await asyncio.sleep(0)
        return vocabulary_vector(prompt)

    async def list_models(self) -> list[str]:
        if self.unreachable:
            raise ConnectionUnavailable("fake host is down")
        return list(self.installed or [])


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()
