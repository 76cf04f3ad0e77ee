"""Typed state contract for the planning workflow."""

from typing import Any, TypedDict

from change_orchestrator.intent.resolver import TaskSpecification
from change_orchestrator.storage.models import PlanRecord


class PlanningState(TypedDict, total=False):
    task_id: str
    plan_id: str
    intent_text: str
    task_context: dict[str, Any]
    specification: TaskSpecification
    plan: PlanRecord | None
    error: str | None
    facts: dict[str, Any]
    telemetry: dict[str, Any]


def initial_state(
    task_id: str,
    plan_id: str,
    intent_text: str,
    specification: TaskSpecification,
    task_context: dict[str, Any] | None = None,
    facts: dict[str, Any] | None = None,
) -> PlanningState:
    return {
        "task_id": task_id,
        "plan_id": plan_id,
        "intent_text": intent_text,
        "task_context": dict(task_context or {}),
        "specification": specification,
        "plan": None,
        "error": None,
        "facts": dict(facts or {}),
        "telemetry": dict(specification.telemetry),
    }
