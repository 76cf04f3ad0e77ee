"""Plan node: run each resolved agent and compose a single candidate plan."""

from __future__ import annotations

import logging
from typing import Any

from change_orchestrator.agents.base import AgentPlan, PlanRequest, Toolbox
from change_orchestrator.planning.context import PlanningContext
from change_orchestrator.planning.state import PlanningState
from change_orchestrator.storage.models import PlanRecord, ToolCall, max_risk_class

logger = logging.getLogger(__name__)

# Strictest first; a composite plan takes the strictest mode of its parts.
AUTONOMY_STRICTNESS = ("plan_only", "approve_all", "canary_only", "risk_based", "full_auto")


def run(state: PlanningState, *, context: PlanningContext) -> PlanningState:
    specification = state["specification"]
    task_id = state["task_id"]
    plan_id = state["plan_id"]
    task_context = state.get("task_context", {})
    composite = specification.composite

    tool_calls: list[ToolCall] = []
    phases = []
    affected: list[str] = []
    summaries: list[str] = []
    rationales: list[str] = []
    evidence: dict[str, Any] = {}
    versions: list[str] = []
    modes: list[str] = []

    for segment in specification.segments:
        agent = context.agents.get(segment.agent)
        if agent is None:
            raise KeyError(f"Agent '{segment.agent}' is not registered")
        toolbox = Toolbox(
            agent=agent,
            registry=context.capabilities,
            gateway=context.gateway,
            task_id=task_id,
            plan_id=plan_id,
            clock=context.clock,
            on_invocation=context.on_invocation,
        )
        request = PlanRequest(
            task_id=task_id,
            plan_id=plan_id,
            text=segment.text,
            environment=specification.environment,
            context=dict(task_context),
            phase_wait_s=float(task_context.get("phase_wait_s", context.default_phase_wait_s)),
        )
        calls, agent_plan = agent.plan(request, toolbox)
        tool_calls.extend(calls)
        phases.extend(_prefixed(agent.name, agent_plan) if composite else agent_plan.phases)
        affected.extend(item for item in agent_plan.affected_resources if item not in affected)
        summaries.append(agent_plan.summary)
        if agent_plan.rationale:
            rationales.append(agent_plan.rationale)
        if composite:
            evidence[agent.name] = agent_plan.evidence
        else:
            evidence = dict(agent_plan.evidence)
        versions.append(agent.version)
        modes.append(agent.guardrails.autonomy_mode)

    risk_classes = [phase.risk_class for phase in phases]
    risk_classes.extend(
        context.capabilities[call.tool].risk_class for call in tool_calls if call.tool in context.capabilities
    )
    plan = PlanRecord(
        plan_id=plan_id,
        task_id=task_id,
        agent=specification.agent,
        agent_version="+".join(versions),
        component_agents=[segment.agent for segment in specification.segments],
        environment=specification.environment,
        tool_calls=tool_calls,
        phases=phases,
        affected_resources=affected,
        risk_class=max_risk_class(risk_classes),
        autonomy_mode=_autonomy_mode(modes, task_context, context.autonomy_mode_override),
        summary="; ".join(item for item in summaries if item),
        rationale=" ".join(rationales),
        evidence=evidence,
        status="proposed",
        created_at=context.clock.now(),
    )
    telemetry = dict(state.get("telemetry", {}))
    telemetry["planner"] = {
        "agents": plan.component_agents,
        "composite": composite,
        "tool_calls": len(tool_calls),
        "phases": len(phases),
    }
    logger.info(
        "plan_build event=completed task_id=%s plan_id=%s agent=%s phases=%d risk_class=%s",
        task_id,
        plan_id,
        plan.agent,
        len(phases),
        plan.risk_class,
    )
    return {"plan": plan, "telemetry": telemetry}


def _prefixed(agent_name: str, agent_plan: AgentPlan) -> list:
    return [
        phase.model_copy(update={"name": f"{agent_name}/{phase.name}"})
        for phase in agent_plan.phases
    ]


def _autonomy_mode(modes: list[str], task_context: dict[str, Any], override: str) -> str:
    """Agent guardrails or the deployment override decide; a task may only tighten them."""
    configured = override.strip()
    if configured not in AUTONOMY_STRICTNESS:
        ranked = [AUTONOMY_STRICTNESS.index(mode) for mode in modes if mode in AUTONOMY_STRICTNESS]
        configured = AUTONOMY_STRICTNESS[min(ranked)] if ranked else "approve_all"
    requested = str(task_context.get("autonomy_mode") or "").strip()
    if requested in AUTONOMY_STRICTNESS:
        return min(requested, configured, key=AUTONOMY_STRICTNESS.index)
    return configured

