"""Plan quality and risk scoring."""

from __future__ import annotations

from typing import Protocol

from change_orchestrator.capabilities.deterministic import risk_level, score_factors
from change_orchestrator.storage.models import STATE_CHANGE_CLASSES, PlanRecord, QualityScore

DEFAULT_WEIGHTS = {
    "completeness": 0.25,
    "safety": 0.30,
    "feasibility": 0.20,
    "efficiency": 0.10,
    "clarity": 0.15,
}


class QualityScorer(Protocol):
    def score(self, plan: PlanRecord) -> QualityScore: ...


def weighted_total(dimensions: dict[str, float], weights: dict[str, float]) -> float:
    weight_sum = sum(weights.get(name, 0.0) for name in dimensions)
    if weight_sum <= 0:
        return 0.0
    total = sum(value * weights.get(name, 0.0) for name, value in dimensions.items())
    return round(total / weight_sum, 2)


class HeuristicQualityScorer:
    """Score a plan on five 0-100 dimensions from its own structure and evidence."""

    def __init__(self, weights: dict[str, float] | None = None) -> None:
        self.weights = dict(weights or DEFAULT_WEIGHTS)

    def score(self, plan: PlanRecord) -> QualityScore:
        dimensions = {
            "completeness": self._completeness(plan),
            "safety": self._safety(plan),
            "feasibility": self._feasibility(plan),
            "efficiency": self._efficiency(plan),
            "clarity": self._clarity(plan),
        }
        return QualityScore(**dimensions, total=weighted_total(dimensions, self.weights))

    @staticmethod
    def _completeness(plan: PlanRecord) -> float:
        score = 100.0
        if not plan.phases:
            score -= 40
        if not plan.affected_resources:
            score -= 30
        if not plan.evidence:
            score -= 15
        if not plan.tool_calls:
            score -= 15
        return max(0.0, score)

    @staticmethod
    def _safety(plan: PlanRecord) -> float:
        state_phases = [phase for phase in plan.phases if phase.risk_class in STATE_CHANGE_CLASSES]
        if not state_phases:
            return 100.0
        score = 100.0
        if any(not phase.rollback_operation for phase in state_phases):
            score -= 40
        total = sum(len(phase.targets) for phase in state_phases)
        if total > 1 and len(state_phases) < 2:
            score -= 30
        if plan.risk_class == "state_change_prod" and any(
            phase.wait_seconds <= 0 for phase in state_phases[:-1]
        ):
            score -= 10
        if plan.validation is not None and not plan.validation.passed:
            score -= 20
        return max(0.0, score)

    @staticmethod
    def _feasibility(plan: PlanRecord) -> float:
        if not plan.affected_resources:
            return 20.0
        simulation = plan.evidence.get("simulation")
        if isinstance(simulation, dict) and isinstance(simulation.get("success_probability"), (int, float)):
            return round(float(simulation["success_probability"]) * 100.0, 2)
        return 90.0 if plan.risk_class in STATE_CHANGE_CLASSES else 100.0

    @staticmethod
    def _efficiency(plan: PlanRecord) -> float:
        extra_phases = max(0, len(plan.phases) - 4)
        return max(0.0, 100.0 - 10.0 * extra_phases)

    @staticmethod
    def _clarity(plan: PlanRecord) -> float:
        if plan.summary and plan.rationale:
            return 100.0
        if plan.summary:
            return 75.0
        return 40.0


def risk_score(plan: PlanRecord) -> tuple[int, str]:
    """Numeric 0-100 risk: environment and blast radius, only for state-changing plans."""
    if plan.risk_class not in STATE_CHANGE_CLASSES:
        return 10, "low"
    factors = score_factors(plan.environment, len(plan.affected_resources))
    score = min(100, sum(factors.values()))
    return score, risk_level(score)
