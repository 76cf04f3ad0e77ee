from __future__ import annotations

from typing import Any, Callable

import pytest

from change_orchestrator.clock import ManualClock
from change_orchestrator.config import Settings
from change_orchestrator.execution.connectors import SimulatedConnector
from change_orchestrator.integrations.notifier import Notification
from change_orchestrator.service import OrchestratorService, build_service
from change_orchestrator.storage.memory import InMemoryOrchestratorStorage
from change_orchestrator.storage.models import PlanRecord, QualityScore


class StaticQualityScorer:
    """Score every plan the same so approval tests control the quality bar."""

    def __init__(self, total: float = 90.0) -> None:
        self.total = total

    def score(self, plan: PlanRecord) -> QualityScore:
        return QualityScore(
            completeness=self.total,
            safety=self.total,
            feasibility=self.total,
            efficiency=self.total,
            clarity=self.total,
            total=self.total,
        )


class RecordingNotifier:
    def __init__(self) -> None:
        self.notifications: list[Notification] = []

    def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)

    @property
    def events(self) -> list[str]:
        return [item.event for item in self.notifications]


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    def _make(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "database_url": "",
            "resolver_mode": "deterministic",
            "default_phase_wait_s": 0.0,
            "notifier_webhook_url": "",
            "itsm_base_url": "",
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def storage() -> InMemoryOrchestratorStorage:
    return InMemoryOrchestratorStorage()


@pytest.fixture
def connector() -> SimulatedConnector:
    return SimulatedConnector()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def make_service(
    make_settings: Callable[..., Settings],
    clock: ManualClock,
    storage: InMemoryOrchestratorStorage,
    connector: SimulatedConnector,
    notifier: RecordingNotifier,
) -> Callable[..., OrchestratorService]:
    """Build a fully wired service on the in-memory backend.

    Keyword arguments that ``build_service`` accepts are passed through; every
    other keyword becomes a settings override.
    """

    def _make(*, quality: float = 90.0, **kwargs: Any) -> OrchestratorService:
        collaborators = {
            name: kwargs.pop(name)
            for name in ("connector", "health_checker", "agents", "policy", "oracle", "change_records")
            if name in kwargs
        }
        collaborators.setdefault("connector", connector)
        return build_service(
            make_settings(**kwargs),
            storage=storage,
            clock=clock,
            notifier=notifier,
            scorer=StaticQualityScorer(quality),
            **collaborators,
        )

    return _make
