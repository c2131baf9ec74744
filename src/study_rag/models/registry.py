"""Static catalogue of inference models, task types, and timeout tables."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

CAPABILITIES = ("speed", "accuracy", "reasoning", "creativity")

DEFAULT_MODEL = "gemma3n:e2b"
EMBEDDING_MODEL = "nomic-embed-text:v1.5"
DEFAULT_TIMEOUT_MS = 60_000.0
FAST_FALLBACK_ORDER = (
    "llama3.2:3b",
    "gemma3n:e2b",
    "phi3.5:3.8b-mini-instruct-q8_0",
    "mistral:7b",
)


@dataclass(frozen=True, slots=True)
class Capabilities:
    speed: int
    accuracy: int
    reasoning: int
    creativity: int

    def get(self, name: str) -> int:
        if name not in CAPABILITIES:
            raise KeyError(f"Unknown capability: {name}")
        return getattr(self, name)


@dataclass(frozen=True, slots=True)
class ModelDescriptor:
    """One installable model and its static characteristics."""

    name: str
    provider: str
    endpoint: str
    temperature: float
    max_tokens: int
    capabilities: Capabilities
    timeout_ms: float


@dataclass(frozen=True, slots=True)
class TaskType:
    """Capability weights and ordered model preferences for a kind of work."""

    name: str
    requirements: Mapping[str, float] = field(default_factory=dict)
    preferred_models: tuple[str, ...] = ()


def _model(
    name: str,
    caps: tuple[int, int, int, int],
    temperature: float,
    max_tokens: int,
    timeout_ms: float,
    endpoint: str,
) -> ModelDescriptor:
    return ModelDescriptor(
        name=name,
        provider="ollama",
        endpoint=endpoint,
        temperature=temperature,
        max_tokens=max_tokens,
        capabilities=Capabilities(*caps),
        timeout_ms=timeout_ms,
    )


def default_models(endpoint: str = "http://localhost:11434") -> list[ModelDescriptor]:
    return [
        _model("gemma3n:e4b", (7, 10, 10, 9), 0.7, 16384, 75_000, endpoint),
        _model("gemma3n:e2b", (9, 10, 10, 8), 0.7, 8192, 60_000, endpoint),
        _model("llama3.2:3b", (9, 7, 6, 6), 0.5, 2048, 45_000, endpoint),
        _model("mistral:7b", (7, 8, 8, 9), 0.8, 4096, 60_000, endpoint),
        _model("phi3.5:3.8b-mini-instruct-q8_0", (9, 8, 9, 6), 0.3, 4096, 50_000, endpoint),
        _model(EMBEDDING_MODEL, (10, 10, 10, 1), 0.0, 2048, 35_000, endpoint),
        _model("qwen2.5vl:7b", (7, 9, 10, 8), 0.7, 4096, 120_000, endpoint),
    ]


_E4B = "gemma3n:e4b"
_E2B = "gemma3n:e2b"
_LLAMA = "llama3.2:3b"
_MISTRAL = "mistral:7b"
_PHI = "phi3.5:3.8b-mini-instruct-q8_0"

DEFAULT_TASK_TYPES: tuple[TaskType, ...] = (
    TaskType("text-analysis", {"accuracy": 9, "reasoning": 8, "speed": 6}, (_E2B, _PHI)),
    TaskType("theological-reasoning", {"reasoning": 8, "accuracy": 8, "creativity": 7}, (_E2B, _MISTRAL)),
    TaskType("expert-reasoning", {"reasoning": 8, "accuracy": 8, "creativity": 6}, (_E2B,)),
    TaskType("quick-classification", {"speed": 10, "accuracy": 8}, (_LLAMA, _PHI, _E2B)),
    TaskType("creative-insights", {"creativity": 9, "reasoning": 7}, (_MISTRAL, _E2B)),
    TaskType("semantic-search", {"accuracy": 9, "speed": 8, "reasoning": 8}, (_E2B, _PHI)),
    TaskType("summarization", {"speed": 9, "accuracy": 8}, (_LLAMA, _E2B)),
    TaskType(
        "group-discussion",
        {"creativity": 8, "reasoning": 7, "speed": 6},
        (_MISTRAL, _E2B, _LLAMA, _PHI),
    ),
    TaskType("ai-interaction", {"creativity": 7, "reasoning": 6, "speed": 8}, (_MISTRAL, _E2B, _LLAMA)),
    TaskType(
        "embedding-generation",
        {"accuracy": 9, "speed": 9, "reasoning": 8, "creativity": 1},
        (EMBEDDING_MODEL,),
    ),
    TaskType(
        "universal-reasoning",
        {"reasoning": 9, "accuracy": 8, "speed": 7, "creativity": 6},
        (_E4B, _E2B, _PHI, _LLAMA),
    ),
    TaskType("thesis-analysis", {"reasoning": 10, "accuracy": 10, "speed": 5, "creativity": 8}, (_E4B,)),
    TaskType("academic-writing", {"reasoning": 9, "accuracy": 9, "speed": 6, "creativity": 8}, (_E4B, _MISTRAL)),
    TaskType("scholarly-research", {"reasoning": 10, "accuracy": 10, "speed": 5, "creativity": 7}, (_E4B, _E2B)),
    TaskType("dissertation-support", {"reasoning": 10, "accuracy": 10, "speed": 4, "creativity": 9}, (_E4B,)),
)

DEFAULT_TASK_MULTIPLIERS: dict[str, float] = {
    "theological-reasoning": 1.5,
    "expert-reasoning": 1.5,
    "universal-reasoning": 1.3,
    "thesis-analysis": 2.0,
    "academic-writing": 1.8,
    "scholarly-research": 1.7,
    "dissertation-support": 2.2,
    "text-analysis": 1.2,
    "creative-insights": 1.3,
    "quick-classification": 0.6,
    "summarization": 0.8,
    "embedding-generation": 0.4,
    "group-discussion": 1.0,
    "ai-interaction": 0.9,
    "semantic-search": 1.1,
}


class ModelRegistry:
    """Immutable lookup tables for models, tasks, and timeouts.

    Model order is significant: it is the tie-break order used by the router
    and the last-resort order for fast fallback selection.
    """

    def __init__(
        self,
        models: Iterable[ModelDescriptor] | None = None,
        task_types: Iterable[TaskType] | None = None,
        *,
        task_multipliers: Mapping[str, float] | None = None,
        default_model: str = DEFAULT_MODEL,
        fast_fallback_order: tuple[str, ...] = FAST_FALLBACK_ORDER,
        default_timeout_ms: float = DEFAULT_TIMEOUT_MS,
        endpoint: str = "http://localhost:11434",
    ) -> None:
        model_list = list(models) if models is not None else default_models(endpoint)
        self._models: dict[str, ModelDescriptor] = {model.name: model for model in model_list}
        tasks = task_types if task_types is not None else DEFAULT_TASK_TYPES
        self._tasks: dict[str, TaskType] = {task.name: task for task in tasks}
        self._multipliers = dict(
            task_multipliers if task_multipliers is not None else DEFAULT_TASK_MULTIPLIERS
        )
        self.default_model = default_model
        self.fast_fallback_order = fast_fallback_order
        self.default_timeout_ms = default_timeout_ms

        for task in self._tasks.values():
            unknown_caps = set(task.requirements) - set(CAPABILITIES)
            if unknown_caps:
                raise ValueError(f"Task {task.name} uses unknown capabilities: {sorted(unknown_caps)}")

    def names(self) -> list[str]:
        return list(self._models)

    def models(self) -> list[ModelDescriptor]:
        return list(self._models.values())

    def get(self, name: str) -> ModelDescriptor:
        model = self._models.get(name)
        if model is None:
            raise KeyError(f"Unknown model: {name}")
        return model

    def __contains__(self, name: object) -> bool:
        return name in self._models

    def task(self, name: str) -> TaskType:
        task = self._tasks.get(name)
        if task is None:
            logger.debug("Unknown task type %s, using empty requirements", name)
            return TaskType(name=name)
        return task

    def task_types(self) -> list[TaskType]:
        return list(self._tasks.values())

    def base_timeout_ms(self, model: str) -> float:
        descriptor = self._models.get(model)
        return descriptor.timeout_ms if descriptor is not None else self.default_timeout_ms

    def task_multiplier(self, task_type: str) -> float:
        return self._multipliers.get(task_type, 1.0)

    def timeout_ms(self, model: str, task_type: str, override_ms: float | None = None) -> float:
        """Timeout for a (model, task) pair; an explicit override wins."""
        if override_ms is not None:
            return override_ms
        return self.base_timeout_ms(model) * self.task_multiplier(task_type)
