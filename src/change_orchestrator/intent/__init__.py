"""Intent resolution."""

from change_orchestrator.intent.llm_oracle import LlmIntentOracle
from change_orchestrator.intent.resolver import (
    IntentResolver,
    IntentSegment,
    TaskSpecification,
    detect_environment,
)

__all__ = [
    "IntentResolver",
    "IntentSegment",
    "LlmIntentOracle",
    "TaskSpecification",
    "detect_environment",
]
