"""Finalize node: attach workflow telemetry to the plan."""

from __future__ import annotations

from change_orchestrator.planning.state import PlanningState


def run(state: PlanningState) -> PlanningState:
    plan = state.get("plan")
    telemetry = dict(state.get("telemetry", {}))
    if plan is None:
        telemetry["workflow"] = {"scored": False, "status": "failed", "error": state.get("error")}
        return {"telemetry": telemetry}
    telemetry["workflow"] = {
        "scored": plan.quality is not None,
        "status": plan.status,
    }
    return {"plan": plan.model_copy(update={"telemetry": telemetry}), "telemetry": telemetry}
