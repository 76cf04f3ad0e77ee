"""Planning workflow: plan, validate, score, finalize."""

from change_orchestrator.planning.context import PlanningContext
from change_orchestrator.planning.state import PlanningState, initial_state
from change_orchestrator.planning.workflow import build_graph

__all__ = ["PlanningContext", "PlanningState", "build_graph", "initial_state"]
