"""Error taxonomy for inference, caching, and retrieval failures."""

from __future__ import annotations


class StudyRagError(Exception):
    """Base class for all engine errors."""


class ConnectionUnavailable(StudyRagError):
    """The inference host cannot be reached."""


class InferenceTimeout(StudyRagError):
    """An inference call did not finish within its timeout."""

    def __init__(self, model: str, timeout_ms: float) -> None:
        super().__init__(f"Model {model} timed out after {timeout_ms:.0f}ms")
        self.model = model
        self.timeout_ms = timeout_ms


class MalformedResponse(StudyRagError):
    """Structured output from the inference service could not be parsed."""

    def __init__(self, message: str, raw: str = "") -> None:
        super().__init__(message)
        self.raw_preview = raw[:200]


class CacheWriteFailure(StudyRagError):
    """A cache write failed; callers log and continue."""


class CircuitOpen(StudyRagError):
    """The retrieval budget for the current task is exhausted."""
