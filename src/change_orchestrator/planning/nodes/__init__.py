from change_orchestrator.planning.nodes import finalize, plan, score, validate

__all__ = ["finalize", "plan", "score", "validate"]
