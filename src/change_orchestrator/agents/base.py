"""Shared agent contract, guardrails and the authorization-enforcing toolbox."""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable
from uuid import uuid4

from change_orchestrator.capabilities.deterministic import split_waves
from change_orchestrator.capabilities.gateway import CapabilityGateway
from change_orchestrator.capabilities.inventory import is_production
from change_orchestrator.capabilities.registry import (
    CapabilityRegistry,
    CapabilitySpec,
    nonprod_variant,
)
from change_orchestrator.clock import Clock, SystemClock
from change_orchestrator.errors import UnauthorizedCapability
from change_orchestrator.storage.models import PlanPhase, ToolCall, ToolInvocationRecord

logger = logging.getLogger(__name__)

PHASE_TOOLS = ("collect_state", "publish_report")
ACTION_VERBS = re.compile(
    r"\b(remediate|fix|apply|correct|converge|resolve|execute|perform|trigger|initiate|run|deploy|rollout|roll out)\b"
)
READ_VERBS = re.compile(r"\b(show|list|report|status|check|view|display|what|which|how many)\b")


@dataclass(frozen=True)
class TriggerPattern:
    pattern: str
    weight: int = 1

    def matches(self, text: str) -> bool:
        return re.search(self.pattern, text, flags=re.IGNORECASE) is not None


@dataclass(frozen=True)
class Guardrails:
    canary_fraction: float = 0.10
    wave_fraction: float = 0.25
    phase_wait_s: float | None = None
    autonomy_mode: str = "approve_all"


@dataclass
class PlanRequest:
    task_id: str
    plan_id: str
    text: str
    environment: str
    context: dict[str, Any] = field(default_factory=dict)
    phase_wait_s: float = 0.0


@dataclass
class AgentPlan:
    phases: list[PlanPhase]
    affected_resources: list[str]
    summary: str
    rationale: str = ""
    evidence: dict[str, Any] = field(default_factory=dict)


class Toolbox:
    """Invoke capabilities on behalf of one agent, refusing anything outside its set."""

    def __init__(
        self,
        *,
        agent: Agent,
        registry: CapabilityRegistry,
        gateway: CapabilityGateway,
        task_id: str,
        plan_id: str,
        clock: Clock | None = None,
        on_invocation: Callable[[ToolInvocationRecord], None] | None = None,
    ) -> None:
        self.agent = agent
        self.registry = registry
        self.gateway = gateway
        self.task_id = task_id
        self.plan_id = plan_id
        self.clock = clock or SystemClock()
        self.on_invocation = on_invocation
        self.invocations: list[ToolInvocationRecord] = []

    def require(self, tool: str) -> CapabilitySpec:
        spec = self.registry.get(tool)
        if tool not in self.agent.authorized_tools() or spec is None:
            logger.critical(
                "capability event=unauthorized task_id=%s agent=%s tool=%s",
                self.task_id,
                self.agent.name,
                tool,
            )
            raise UnauthorizedCapability(self.agent.name, tool)
        return spec

    def invoke(self, tool: str, args: dict[str, Any]) -> dict[str, Any] | None:
        spec = self.require(tool)
        invoked_at = self.clock.now()
        result = self.gateway.execute(tool, args)
        record = ToolInvocationRecord(
            invocation_id=str(uuid4()),
            task_id=self.task_id,
            plan_id=self.plan_id,
            agent=self.agent.name,
            tool=tool,
            risk_class=spec.risk_class,
            input=dict(args),
            output=result.output,
            error=result.error,
            outcome="success" if result.ok else "error",
            attempts=result.attempts,
            duration_ms=result.duration_ms,
            invoked_at=invoked_at,
        )
        self.invocations.append(record)
        if self.on_invocation is not None:
            self.on_invocation(record)
        if not result.ok:
            logger.warning(
                "capability event=failed task_id=%s agent=%s tool=%s error=%s",
                self.task_id,
                self.agent.name,
                tool,
                result.error,
            )
            return None
        return result.output


class Agent(ABC):
    """A specialist that turns an intent into tool calls and rollout phases."""

    name: str = ""
    version: str = "1.0.0"
    description: str = ""
    triggers: tuple[TriggerPattern, ...] = ()
    keywords: tuple[str, ...] = ()
    tools: tuple[str, ...] = ()
    guardrails: Guardrails = Guardrails()

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "tools": sorted(self.authorized_tools()),
            "autonomy_mode": self.guardrails.autonomy_mode,
        }

    def authorized_tools(self) -> frozenset[str]:
        return frozenset(self.tools) | frozenset(PHASE_TOOLS)

    def match_score(self, text: str) -> int:
        return sum(trigger.weight for trigger in self.triggers if trigger.matches(text))

    @abstractmethod
    def select_tools(self, text: str, context: dict[str, Any]) -> list[ToolCall]:
        """Return the ordered tool calls this request needs."""

    @abstractmethod
    def build_plan(
        self,
        request: PlanRequest,
        outputs: dict[str, dict[str, Any]],
        toolbox: Toolbox,
    ) -> AgentPlan:
        """Turn tool outputs into rollout phases."""

    def bind_args(
        self,
        call: ToolCall,
        outputs: dict[str, dict[str, Any]],
        request: PlanRequest,
    ) -> dict[str, Any]:
        """Fill arguments that depend on earlier outputs in the sequence."""
        return call.args

    def plan(self, request: PlanRequest, toolbox: Toolbox) -> tuple[list[ToolCall], AgentPlan]:
        context = {**request.context, "environment": request.environment}
        calls: list[ToolCall] = []
        outputs: dict[str, dict[str, Any]] = {}
        for call in self.select_tools(request.text, context):
            spec = toolbox.require(call.tool)
            if not spec.invocable:
                calls.append(call)
                continue
            bound = call.model_copy(update={"args": self.bind_args(call, outputs, request)})
            calls.append(bound)
            output = toolbox.invoke(bound.tool, bound.args)
            if output is not None:
                outputs[bound.tool] = output
        agent_plan = self.build_plan(request, outputs, toolbox)
        for phase in agent_plan.phases:
            toolbox.require(phase.operation)
            if phase.rollback_operation:
                toolbox.require(phase.rollback_operation)
        return calls, agent_plan

    # Helpers shared by the specialists.

    @staticmethod
    def variant(operation: str, environment: str) -> str:
        return operation if is_production(environment) else nonprod_variant(operation)

    @staticmethod
    def wants_action(text: str) -> bool:
        return ACTION_VERBS.search(text.lower()) is not None

    @staticmethod
    def wants_report(text: str) -> bool:
        return READ_VERBS.search(text.lower()) is not None

    def rollout_phases(
        self,
        request: PlanRequest,
        toolbox: Toolbox,
        *,
        operation: str,
        targets: list[str],
        params: dict[str, Any] | None = None,
    ) -> list[PlanPhase]:
        spec = toolbox.require(operation)
        canary_fraction = float(request.context.get("canary_fraction", self.guardrails.canary_fraction))
        wave_fraction = float(request.context.get("wave_fraction", self.guardrails.wave_fraction))
        wait_s = self.guardrails.phase_wait_s
        if wait_s is None:
            wait_s = request.phase_wait_s
        waves = split_waves(targets, canary_fraction, wave_fraction)
        names = _wave_names(len(waves))
        phases: list[PlanPhase] = []
        covered = 0
        for name, wave in zip(names, waves):
            covered += len(wave)
            phases.append(
                PlanPhase(
                    name=name,
                    operation=operation,
                    rollback_operation=spec.rollback,
                    risk_class=spec.risk_class,
                    targets=wave,
                    target_percentage=round(100.0 * covered / len(targets), 2),
                    wait_seconds=wait_s,
                    params=dict(params or {}),
                )
            )
        return phases

    @staticmethod
    def report_phase(
        toolbox: Toolbox, *, operation: str, targets: list[str], name: str | None = None
    ) -> list[PlanPhase]:
        spec = toolbox.require(operation)
        return [
            PlanPhase(
                name=name or operation,
                operation=operation,
                rollback_operation=spec.rollback,
                risk_class=spec.risk_class,
                targets=list(targets),
                target_percentage=100.0,
            )
        ]


def _wave_names(count: int) -> list[str]:
    if count <= 1:
        return ["all"]
    if count == 2:
        return ["canary", "remainder"]
    return ["canary"] + [f"wave-{index}" for index in range(1, count - 1)] + ["remainder"]


def asset_ids(output: dict[str, Any] | None) -> list[str]:
    if not output:
        return []
    return [str(item["asset_id"]) for item in output.get("assets", []) if "asset_id" in item]


def restrict_targets(candidates: list[str], context: dict[str, Any]) -> list[str]:
    requested = context.get("asset_ids")
    if isinstance(requested, list) and requested:
        allowed = {str(item) for item in requested}
        return [item for item in candidates if item in allowed]
    limit = context.get("limit")
    if isinstance(limit, int) and limit > 0:
        return candidates[:limit]
    return candidates
