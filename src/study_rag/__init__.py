"""Study RAG engine package."""

from .config import OrchestratorConfig, RetrievalConfig, Settings

__all__ = ["OrchestratorConfig", "RetrievalConfig", "Settings"]
