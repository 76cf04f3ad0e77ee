"""Quality/risk scoring and the approval gate."""

from change_orchestrator.approval.gate import ApprovalGate, ApprovalPolicy, GateDecision
from change_orchestrator.approval.scoring import (
    HeuristicQualityScorer,
    QualityScorer,
    risk_score,
    weighted_total,
)

__all__ = [
    "ApprovalGate",
    "ApprovalPolicy",
    "GateDecision",
    "HeuristicQualityScorer",
    "QualityScorer",
    "risk_score",
    "weighted_total",
]
