"""Phased execution: connectors, health checks, autonomy gating and the engine."""

from change_orchestrator.execution.autonomy import gated_phases
from change_orchestrator.execution.connectors import (
    ApplyOutcome,
    Connector,
    PlatformRouter,
    SimulatedConnector,
)
from change_orchestrator.execution.engine import ExecutionEngine
from change_orchestrator.execution.health import (
    ConnectorHealthChecker,
    HealthChecker,
    HttpHealthChecker,
)

__all__ = [
    "ApplyOutcome",
    "Connector",
    "ConnectorHealthChecker",
    "ExecutionEngine",
    "HealthChecker",
    "HttpHealthChecker",
    "PlatformRouter",
    "SimulatedConnector",
    "gated_phases",
]
