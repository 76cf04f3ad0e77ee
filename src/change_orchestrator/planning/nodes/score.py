"""Score node: five-dimension quality score and numeric risk score."""

from __future__ import annotations

from change_orchestrator.approval.scoring import risk_score
from change_orchestrator.planning.context import PlanningContext
from change_orchestrator.planning.state import PlanningState


def run(state: PlanningState, *, context: PlanningContext) -> PlanningState:
    plan = state["plan"]
    quality = context.scorer.score(plan)
    score, level = risk_score(plan)
    return {
        "plan": plan.model_copy(
            update={"quality": quality, "risk_score": score, "risk_level": level}
        )
    }
