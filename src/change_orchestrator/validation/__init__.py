"""Plan validation."""

from change_orchestrator.validation.pipeline import ValidationPipeline
from change_orchestrator.validation.policy import (
    BuiltinPolicyEvaluator,
    CompositePolicyEvaluator,
    OpaPolicyEvaluator,
    PolicyDecision,
    PolicyEvaluator,
)

__all__ = [
    "BuiltinPolicyEvaluator",
    "CompositePolicyEvaluator",
    "OpaPolicyEvaluator",
    "PolicyDecision",
    "PolicyEvaluator",
    "ValidationPipeline",
]
