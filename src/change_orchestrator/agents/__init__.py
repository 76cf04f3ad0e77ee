"""Specialist agents and their registry."""

from change_orchestrator.agents.base import (
    Agent,
    AgentPlan,
    Guardrails,
    PlanRequest,
    Toolbox,
    TriggerPattern,
)
from change_orchestrator.agents.registry import AgentRegistry, build_agent_registry

__all__ = [
    "Agent",
    "AgentPlan",
    "AgentRegistry",
    "Guardrails",
    "PlanRequest",
    "Toolbox",
    "TriggerPattern",
    "build_agent_registry",
]
