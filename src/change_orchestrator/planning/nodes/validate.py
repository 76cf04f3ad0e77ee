"""Validate node: structural checks plus policy evaluation."""

from __future__ import annotations

from change_orchestrator.planning.context import PlanningContext
from change_orchestrator.planning.state import PlanningState


def run(state: PlanningState, *, context: PlanningContext) -> PlanningState:
    plan = state["plan"]
    facts = {
        **state.get("facts", {}),
        "environment": plan.environment,
        "context": state.get("task_context", {}),
    }
    result = context.pipeline.validate(plan, facts, checked_at=context.clock.now())
    status = "validated" if result.passed else "invalid"
    telemetry = dict(state.get("telemetry", {}))
    telemetry["validation"] = {"passed": result.passed, "violations": len(result.violations)}
    return {
        "plan": plan.model_copy(update={"validation": result, "status": status}),
        "telemetry": telemetry,
    }
