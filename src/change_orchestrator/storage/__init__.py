"""Storage backends and models."""

from change_orchestrator.storage.base import OrchestratorStorage
from change_orchestrator.storage.memory import InMemoryOrchestratorStorage
from change_orchestrator.storage.postgres import PostgresOrchestratorStorage

__all__ = [
    "InMemoryOrchestratorStorage",
    "OrchestratorStorage",
    "PostgresOrchestratorStorage",
]
