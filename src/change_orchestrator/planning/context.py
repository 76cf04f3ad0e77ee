"""Collaborators shared by the planning nodes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from change_orchestrator.agents.registry import AgentRegistry
from change_orchestrator.approval.scoring import QualityScorer
from change_orchestrator.capabilities.gateway import CapabilityGateway
from change_orchestrator.capabilities.registry import CapabilityRegistry
from change_orchestrator.clock import Clock
from change_orchestrator.storage.models import ToolInvocationRecord
from change_orchestrator.validation.pipeline import ValidationPipeline


@dataclass
class PlanningContext:
    agents: AgentRegistry
    capabilities: CapabilityRegistry
    gateway: CapabilityGateway
    pipeline: ValidationPipeline
    scorer: QualityScorer
    clock: Clock
    default_phase_wait_s: float = 300.0
    autonomy_mode_override: str = ""
    on_invocation: Callable[[ToolInvocationRecord], None] | None = None
