import asyncio

import pytest

from study_rag.errors import InferenceTimeout
from study_rag.inference.pool import InferencePool
from study_rag.models.registry import (
    Capabilities,
    ModelDescriptor,
    ModelRegistry,
    TaskType,
    default_models,
)
from study_rag.models.router import ModelRouter


def _model(name: str, accuracy: int, reasoning: int, timeout_ms: float = 1000.0) -> ModelDescriptor:
    return ModelDescriptor(
        name=name,
        provider="ollama",
        endpoint="http://localhost:11434",
        temperature=0.5,
        max_tokens=1024,
        capabilities=Capabilities(speed=8, accuracy=accuracy, reasoning=reasoning, creativity=5),
        timeout_ms=timeout_ms,
    )


def _registry(*, strong_timeout_ms: float = 1000.0, fallback: tuple[str, ...] = ("weak",)) -> ModelRegistry:
    return ModelRegistry(
        [_model("weak", 6, 6), _model("strong", 10, 10, strong_timeout_ms)],
        [TaskType("deep-thought", {"reasoning": 9, "accuracy": 9}, ("weak", "strong"))],
        task_multipliers={"deep-thought": 1.5},
        default_model="weak",
        fast_fallback_order=fallback,
    )


def test_router_prefers_stronger_model(fake_backend) -> None:
    router = ModelRouter(_registry(), InferencePool(fake_backend))

    assert router.select("deep-thought") == "strong"

    router.record("weak", 100.0, success=True)
    router.record("strong", 100.0, success=True)
    assert router.select("deep-thought") == "strong"


def test_router_ties_keep_registry_order(fake_backend) -> None:
    registry = ModelRegistry(
        [_model("first", 8, 8), _model("second", 8, 8)],
        [TaskType("chat", {"reasoning": 5}, ("second", "first"))],
    )
    router = ModelRouter(registry, InferencePool(fake_backend))

    assert router.select("chat") == "first"


def test_router_skips_unavailable_and_falls_back_to_default(fake_backend) -> None:
    router = ModelRouter(_registry(), InferencePool(fake_backend), available={"weak"})
    assert router.select("deep-thought") == "weak"

    router.available = set()
    assert router.select("deep-thought") == "weak"
    assert router.select("unknown-task") == "weak"


def test_timeout_is_base_times_task_multiplier(fake_backend) -> None:
    router = ModelRouter(_registry(), InferencePool(fake_backend))

    assert router.timeout_ms("strong", "deep-thought") == pytest.approx(1500.0)
    assert router.timeout_ms("strong", "other-task") == pytest.approx(1000.0)
    assert router.timeout_ms("strong", "deep-thought", 250.0) == 250.0
    assert router.timeout_ms("not-registered", "other-task") == pytest.approx(60_000.0)


def test_timeout_triggers_exactly_one_fallback_attempt(fake_backend) -> None:
    fake_backend.delays["strong"] = 0.5
    router = ModelRouter(_registry(strong_timeout_ms=40.0), InferencePool(fake_backend))

    result = asyncio.run(router.execute_task("deep-thought", "Explain grace."))

    assert result.model == "weak"
    assert result.fallback_used is True
    assert [model for model, _ in fake_backend.generate_calls] == ["strong", "weak"]
    assert router.performance["strong"].success_rate == 0.0
    assert router.performance["weak"].success_rate == 1.0


def test_fallback_timeout_is_final(fake_backend) -> None:
    fake_backend.delays["strong"] = 0.5
    fake_backend.delays["weak"] = 0.5
    router = ModelRouter(_registry(strong_timeout_ms=40.0), InferencePool(fake_backend))

    with pytest.raises(InferenceTimeout):
        asyncio.run(router.execute_task("deep-thought", "Explain grace."))
    assert len(fake_backend.generate_calls) == 2


def test_no_retry_when_fallback_is_the_same_model(fake_backend) -> None:
    fake_backend.delays["strong"] = 0.5
    router = ModelRouter(
        _registry(strong_timeout_ms=40.0, fallback=("strong",)),
        InferencePool(fake_backend),
        available={"strong"},
    )

    with pytest.raises(InferenceTimeout):
        asyncio.run(router.execute_task("deep-thought", "Explain grace."))
    assert len(fake_backend.generate_calls) == 1


def test_fast_fallback_uses_hand_ordered_list(fake_backend) -> None:
    registry = ModelRegistry()
    router = ModelRouter(registry, InferencePool(fake_backend), available={"mistral:7b", "gemma3n:e2b"})

    assert router.select_fast_fallback() == "gemma3n:e2b"


def test_default_catalogue_and_reports(fake_backend) -> None:
    router = ModelRouter(ModelRegistry(), InferencePool(fake_backend))
    names = [model.name for model in default_models()]

    assert router.select("embedding-generation") == "nomic-embed-text:v1.5"
    assert set(router.performance_report()) == set(names)
    timeouts = router.timeout_report()["llama3.2:3b"]
    assert timeouts["base_timeout_ms"] == 45_000
    assert timeouts["task_timeouts_ms"]["quick-classification"] == pytest.approx(27_000.0)


def test_refresh_available_uses_installed_models(fake_backend) -> None:
    fake_backend.installed = ["llama3.2:3b", "something-else:1b"]
    router = ModelRouter(ModelRegistry(), InferencePool(fake_backend))

    assert asyncio.run(router.refresh_available()) == {"llama3.2:3b"}

    fake_backend.unreachable = True
    assert asyncio.run(router.refresh_available()) == {"llama3.2:3b"}


def test_prompt_optimisation_by_model_family() -> None:
    assert ModelRouter.optimize_prompt("llama3.2:3b", "Hi").endswith("Provide a clear, concise response.")
    assert ModelRouter.optimize_prompt("unknown", "Hi") == "Hi"


def test_embed_batch_keeps_input_order(fake_backend) -> None:
    router = ModelRouter(ModelRegistry(), InferencePool(fake_backend))
    texts = ["faith", "grace", "hope", "love", "prayer", "physics", "energy"]

    vectors = asyncio.run(router.embed_batch(texts, batch_size=3))

    assert [vector.index(1.0) for vector in vectors] == [0, 1, 2, 3, 4, 7, 6]
    assert router.performance_report()["nomic-embed-text:v1.5"]["requests"] == len(texts)


def test_abandoned_call_is_recorded_as_failure(fake_backend) -> None:
    fake_backend.delays["strong"] = 2.0
    router = ModelRouter(_registry(strong_timeout_ms=10_000.0), InferencePool(fake_backend))

    with pytest.raises(asyncio.TimeoutError):
        asyncio.run(asyncio.wait_for(router.execute_task("deep-thought", "hi"), 0.1))

    record = router.performance["strong"]
    assert record.total_requests == 1
    assert record.success_rate == 0.0


def test_budget_caps_primary_and_leaves_room_for_fallback(fake_backend) -> None:
    fake_backend.delays["strong"] = 2.0
    router = ModelRouter(_registry(strong_timeout_ms=10_000.0), InferencePool(fake_backend))

    result = asyncio.run(router.execute_task("deep-thought", "hi", budget_ms=190.0))

    assert result.model == "weak"
    assert result.fallback_used
    assert [model for model, _ in fake_backend.generate_calls] == ["strong", "weak"]
