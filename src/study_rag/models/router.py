"""Capability-weighted model selection with timeout fallback."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from study_rag.errors import ConnectionUnavailable, InferenceTimeout
from study_rag.inference.pool import InferencePool
from study_rag.models.registry import EMBEDDING_MODEL, ModelRegistry
from study_rag.obs.tracing import Timer
from study_rag.types import InferenceResult

logger = logging.getLogger(__name__)

FALLBACK_TIMEOUT_FACTOR = 0.9

_PROMPT_SUFFIXES: tuple[tuple[str, str], ...] = (
    (
        "gemma3n:e4b",
        "IMPORTANT: Provide a comprehensive, well-structured answer with careful reasoning. "
        "Respond directly without showing your thinking process.",
    ),
    ("llama3.2", "Provide a clear, concise response."),
    (
        "gemma3n",
        "IMPORTANT: Respond directly without showing your thinking process. "
        "Provide only the final answer.",
    ),
    ("mistral", "Be creative and insightful in your response."),
    ("phi3.5", "Provide a well-structured, logical response."),
)


@dataclass(slots=True)
class PerformanceRecord:
    """Running totals for one model over the process lifetime."""

    total_requests: int = 0
    total_latency_ms: float = 0.0
    success_rate: float = 1.0

    def record(self, latency_ms: float, success: bool) -> None:
        self.total_requests += 1
        self.total_latency_ms += latency_ms
        n = self.total_requests
        self.success_rate = (self.success_rate * (n - 1) + (1.0 if success else 0.0)) / n

    @property
    def avg_latency_ms(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.total_latency_ms / self.total_requests


class ModelRouter:
    """Picks a model per task and runs it through the inference pool.

    Scores are ``sum(capability * weight) / sum(weight) + 0.1 * speed``,
    multiplied by ``1 + 0.1 * success_rate`` once a model has history.
    Ties keep registry order.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        pool: InferencePool,
        *,
        available: set[str] | None = None,
    ) -> None:
        self.registry = registry
        self.pool = pool
        self.available: set[str] = set(available) if available is not None else set(registry.names())
        self.performance: dict[str, PerformanceRecord] = {}

    def is_available(self, model: str) -> bool:
        return model in self.available

    async def refresh_available(self) -> set[str]:
        """Restrict availability to models installed on the inference host."""
        try:
            installed = set(await self.pool.backend.list_models())
        except ConnectionUnavailable:
            logger.warning("Could not list installed models; keeping %d known models", len(self.available))
            return self.available
        self.available = {name for name in self.registry.names() if name in installed}
        logger.info("Available models: %s", sorted(self.available))
        return self.available

    def score(self, model: str, requirements: Mapping[str, float]) -> float:
        capabilities = self.registry.get(model).capabilities
        total_weight = sum(requirements.values())
        weighted = sum(capabilities.get(cap) * weight for cap, weight in requirements.items())
        score = (weighted / total_weight if total_weight else 0.0) + capabilities.speed * 0.1
        record = self.performance.get(model)
        if record is not None and record.total_requests > 0:
            score *= 1 + record.success_rate * 0.1
        return score

    def select(
        self,
        task_type: str,
        override_requirements: Mapping[str, float] | None = None,
    ) -> str:
        task = self.registry.task(task_type)
        requirements = {**task.requirements, **(override_requirements or {})}
        best_model: str | None = None
        best_score = float("-inf")
        for name in self._in_registry_order(task.preferred_models):
            if not self.is_available(name):
                continue
            candidate = self.score(name, requirements)
            if candidate > best_score:
                best_model, best_score = name, candidate
        if best_model is None:
            logger.info("No preferred model available for %s, using %s", task_type, self.registry.default_model)
            return self.registry.default_model
        logger.debug("Selected %s for %s (score %.3f)", best_model, task_type, best_score)
        return best_model

    def _in_registry_order(self, names: tuple[str, ...]) -> list[str]:
        wanted = set(names)
        return [name for name in self.registry.names() if name in wanted]

    def select_fast_fallback(self) -> str:
        for name in self.registry.fast_fallback_order:
            if self.is_available(name):
                return name
        for name in self.registry.names():
            if self.is_available(name):
                return name
        return self.registry.default_model

    def timeout_ms(self, model: str, task_type: str, override_ms: float | None = None) -> float:
        return self.registry.timeout_ms(model, task_type, override_ms)

    def record(self, model: str, latency_ms: float, success: bool) -> None:
        self.performance.setdefault(model, PerformanceRecord()).record(latency_ms, success)

    @staticmethod
    def optimize_prompt(model: str, prompt: str) -> str:
        for family, suffix in _PROMPT_SUFFIXES:
            if family in model:
                return f"{prompt}\n\n{suffix}"
        return prompt

    async def execute_task(
        self,
        task_type: str,
        prompt: str,
        *,
        requirements: Mapping[str, float] | None = None,
        timeout_ms: float | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        use_cache: bool = True,
        budget_ms: float | None = None,
    ) -> InferenceResult:
        """Run a task on the best model; on timeout try one faster model once.

        ``budget_ms`` bounds both attempts together: the primary gets at most
        ``budget_ms / 1.9`` and the fallback 0.9x of whatever the primary got.
        """
        primary = self.select(task_type, requirements)
        primary_timeout = self.timeout_ms(primary, task_type, timeout_ms)
        if budget_ms is not None:
            primary_timeout = min(primary_timeout, budget_ms / (1 + FALLBACK_TIMEOUT_FACTOR))
        try:
            return await self._execute_with_model(
                primary, task_type, prompt, primary_timeout, temperature, max_tokens, use_cache
            )
        except InferenceTimeout:
            fallback = self.select_fast_fallback()
            if fallback == primary:
                raise
            logger.warning("%s timed out for %s, retrying once on %s", primary, task_type, fallback)
            result = await self._execute_with_model(
                fallback,
                task_type,
                prompt,
                primary_timeout * FALLBACK_TIMEOUT_FACTOR,
                temperature,
                max_tokens,
                use_cache,
            )
            result.fallback_used = True
            return result

    async def embed(self, text: str, *, model: str = EMBEDDING_MODEL) -> list[float]:
        timeout = self.timeout_ms(model, "embedding-generation")
        succeeded = False
        with Timer() as timer:
            try:
                vector = await self.pool.embeddings(model, text, timeout_ms=timeout)
                succeeded = True
            finally:
                self.record(model, timer.running_ms(), success=succeeded)
        return vector

    async def embed_batch(
        self, texts: list[str], *, model: str = EMBEDDING_MODEL, batch_size: int = 5
    ) -> list[list[float]]:
        vectors: list[list[float]] = []
        for start in range(0, len(texts), batch_size):
            batch = texts[start : start + batch_size]
            vectors.extend(await asyncio.gather(*(self.embed(text, model=model) for text in batch)))
        return vectors

    def performance_report(self) -> dict[str, dict[str, Any]]:
        report: dict[str, dict[str, Any]] = {}
        for name in self.registry.names():
            record = self.performance.get(name, PerformanceRecord())
            report[name] = {
                "available": self.is_available(name),
                "requests": record.total_requests,
                "avg_latency_ms": record.avg_latency_ms,
                "success_rate": record.success_rate,
            }
        return report

    def timeout_report(self) -> dict[str, dict[str, Any]]:
        tasks = [task.name for task in self.registry.task_types()]
        return {
            name: {
                "base_timeout_ms": self.registry.base_timeout_ms(name),
                "task_timeouts_ms": {task: self.timeout_ms(name, task) for task in tasks},
            }
            for name in self.registry.names()
        }

    async def _execute_with_model(
        self,
        model: str,
        task_type: str,
        prompt: str,
        timeout_ms: float,
        temperature: float | None,
        max_tokens: int | None,
        use_cache: bool,
    ) -> InferenceResult:
        if temperature is None:
            temperature = self.registry.get(model).temperature if model in self.registry else 0.7
        succeeded = False
        with Timer() as timer:
            try:
                text = await self.pool.generate(
                    model,
                    self.optimize_prompt(model, prompt),
                    temperature=temperature,
                    max_tokens=max_tokens,
                    timeout_ms=timeout_ms,
                    use_cache=use_cache,
                )
                succeeded = True
            finally:
                # Cancelled calls count as failures too.
                self.record(model, timer.running_ms(), success=succeeded)
        logger.debug("%s completed %s in %.1fms", model, task_type, timer.elapsed_ms)
        return InferenceResult(text=text, model=model, latency_ms=timer.elapsed_ms)
