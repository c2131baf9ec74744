"""JSON-over-HTTP client for a local Ollama-compatible inference service."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any, Protocol

import httpx

from study_rag.errors import ConnectionUnavailable, InferenceTimeout, MalformedResponse

logger = logging.getLogger(__name__)


class InferenceBackend(Protocol):
    """Operations the engine needs from an inference service."""

    async def generate(self, model: str, prompt: str, *, options: dict[str, Any]) -> str: ...

    async def chat(
        self, model: str, messages: list[dict[str, str]], *, options: dict[str, Any]
    ) -> str: ...

    def stream_chat(
        self, model: str, messages: list[dict[str, str]], *, options: dict[str, Any]
    ) -> AsyncIterator[str]: ...

    async def embeddings(self, model: str, prompt: str) -> list[float]: ...

    async def list_models(self) -> list[str]: ...


class OllamaClient:
    """Thin async wrapper over ``/api/generate``, ``/api/chat``, ``/api/embeddings``.

    Transport failures are mapped onto the engine's error taxonomy so callers
    never see raw ``httpx`` exceptions.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        *,
        timeout_seconds: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def generate(self, model: str, prompt: str, *, options: dict[str, Any]) -> str:
        payload = {"model": model, "prompt": prompt, "stream": False, "options": options}
        data = await self._post_json("/api/generate", payload, model=model)
        return _require_str(data, "response")

    async def chat(
        self, model: str, messages: list[dict[str, str]], *, options: dict[str, Any]
    ) -> str:
        payload = {"model": model, "messages": messages, "stream": False, "options": options}
        data = await self._post_json("/api/chat", payload, model=model)
        message = data.get("message")
        if not isinstance(message, dict):
            raise MalformedResponse("Chat response has no message", json.dumps(data)[:200])
        return _require_str(message, "content")

    async def stream_chat(
        self, model: str, messages: list[dict[str, str]], *, options: dict[str, Any]
    ) -> AsyncIterator[str]:
        payload = {"model": model, "messages": messages, "stream": True, "options": options}
        try:
            async with self._client.stream("POST", "/api/chat", json=payload) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError as exc:
                        raise MalformedResponse("Invalid stream chunk", line) from exc
                    content = (chunk.get("message") or {}).get("content", "")
                    if content:
                        yield content
                    if chunk.get("done"):
                        break
        except httpx.TimeoutException as exc:
            raise InferenceTimeout(model, self._timeout_ms()) from exc
        except httpx.HTTPError as exc:
            raise ConnectionUnavailable(f"Inference service unavailable: {exc}") from exc

    async def embeddings(self, model: str, prompt: str) -> list[float]:
        data = await self._post_json("/api/embeddings", {"model": model, "prompt": prompt}, model=model)
        vector = data.get("embedding")
        if not isinstance(vector, list) or not vector:
            raise MalformedResponse("Embedding response has no vector", json.dumps(data)[:200])
        return [float(value) for value in vector]

    async def list_models(self) -> list[str]:
        try:
            response = await self._client.get("/api/tags")
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ConnectionUnavailable(f"Inference service unavailable: {exc}") from exc
        try:
            data = response.json()
        except ValueError as exc:
            raise MalformedResponse("Model list is not JSON", response.text) from exc
        if not isinstance(data, dict):
            raise MalformedResponse("Model list is not a JSON object", response.text)
        models = data.get("models", [])
        return [str(item.get("name")) for item in models if isinstance(item, dict) and item.get("name")]

    def _timeout_ms(self) -> float:
        return (self._client.timeout.read or 0.0) * 1000.0

    async def _post_json(self, path: str, payload: dict[str, Any], *, model: str) -> dict[str, Any]:
        try:
            response = await self._client.post(path, json=payload)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise InferenceTimeout(model, self._timeout_ms()) from exc
        except httpx.HTTPError as exc:
            raise ConnectionUnavailable(f"Inference service unavailable: {exc}") from exc
        try:
            data = response.json()
        except ValueError as exc:
            raise MalformedResponse("Response body is not JSON", response.text) from exc
        if not isinstance(data, dict):
            raise MalformedResponse("Response body is not an object", response.text)
        return data


def _require_str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise MalformedResponse(f"Missing '{key}' in response", json.dumps(data)[:200])
    return value
