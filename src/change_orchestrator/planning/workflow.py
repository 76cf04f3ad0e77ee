"""LangGraph workflow assembly for a single planning pass."""

import logging

from langgraph.graph import END, StateGraph

from change_orchestrator.errors import UnauthorizedCapability
from change_orchestrator.planning.context import PlanningContext
from change_orchestrator.planning.nodes import finalize, plan, score, validate
from change_orchestrator.planning.state import PlanningState

logger = logging.getLogger(__name__)


def build_graph(context: PlanningContext):
    def _plan(state: PlanningState) -> PlanningState:
        try:
            return plan.run(state, context=context)
        except UnauthorizedCapability:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("plan_build event=failed task_id=%s plan_id=%s", state["task_id"], state["plan_id"])
            return {"plan": None, "error": f"{type(exc).__name__}: {exc}"}

    def _validate(state: PlanningState) -> PlanningState:
        return validate.run(state, context=context)

    def _score(state: PlanningState) -> PlanningState:
        return score.run(state, context=context)

    def _after_plan(state: PlanningState) -> str:
        return "failed" if state.get("error") else "planned"

    def _after_validation(state: PlanningState) -> str:
        validation = state["plan"].validation
        if validation is not None and validation.passed:
            return "valid"
        return "invalid"

    graph = StateGraph(PlanningState)

    graph.add_node("plan", _plan)
    graph.add_node("validate", _validate)
    graph.add_node("score", _score)
    graph.add_node("finalize", finalize.run)

    graph.set_entry_point("plan")
    graph.add_conditional_edges("plan", _after_plan, {"planned": "validate", "failed": "finalize"})
    graph.add_conditional_edges("validate", _after_validation, {"valid": "score", "invalid": "finalize"})
    graph.add_edge("score", "finalize")
    graph.add_edge("finalize", END)

    return graph.compile()
