"""Typed errors raised across the orchestration pipeline."""

from __future__ import annotations

from typing import Any


class OrchestratorError(Exception):
    """Base class for orchestration failures that carry structured detail."""

    status_code = 400

    def __init__(self, message: str, **detail: Any) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict[str, Any]:
        return {"error": type(self).__name__, "message": self.message, **self.detail}


class AmbiguousIntent(OrchestratorError):
    status_code = 422

    def __init__(self, text: str, candidates: list[str]) -> None:
        super().__init__(
            f"Intent matches more than one agent equally: {', '.join(candidates)}",
            intent=text,
            candidates=candidates,
        )
        self.candidates = candidates


class NoMatchingAgent(OrchestratorError):
    status_code = 422

    def __init__(self, text: str, suggestions: list[str]) -> None:
        super().__init__(
            "No agent can handle this request",
            intent=text,
            suggestions=suggestions,
        )
        self.suggestions = suggestions


class UnauthorizedCapability(OrchestratorError):
    """An agent tried to invoke a capability outside its authorized set."""

    status_code = 500

    def __init__(self, agent: str, tool: str) -> None:
        super().__init__(
            f"Agent '{agent}' is not authorized to invoke '{tool}'",
            agent=agent,
            tool=tool,
        )
        self.agent = agent
        self.tool = tool


class ValidationViolation(OrchestratorError):
    status_code = 422

    def __init__(self, violations: list[str], message: str = "Plan failed validation") -> None:
        super().__init__(message, violations=violations)
        self.violations = violations


class ApprovalTimeout(OrchestratorError):
    status_code = 409

    def __init__(self, task_id: str) -> None:
        super().__init__(
            f"Approval window for task {task_id} has elapsed",
            task_id=task_id,
        )


class PolicyDenied(OrchestratorError):
    status_code = 409

    def __init__(self, reasons: list[str]) -> None:
        super().__init__("Policy evaluation denied the plan", reasons=reasons)
        self.reasons = reasons


class PhaseHealthCheckFailed(OrchestratorError):
    status_code = 409

    def __init__(self, phase: str, failure_fraction: float) -> None:
        super().__init__(
            f"Phase '{phase}' exceeded the failure threshold",
            phase=phase,
            failure_fraction=failure_fraction,
        )


class RollbackPartialFailure(OrchestratorError):
    status_code = 409

    def __init__(self, resources: list[str]) -> None:
        super().__init__(
            "Rollback could not revert every resource",
            manual_intervention_required=resources,
        )
        self.resources = resources


class ExecutionTimeout(OrchestratorError):
    status_code = 409

    def __init__(self, execution_id: str) -> None:
        super().__init__(
            f"Execution {execution_id} exceeded its global deadline",
            execution_id=execution_id,
        )


class TaskNotFound(OrchestratorError):
    status_code = 404

    def __init__(self, task_id: str) -> None:
        super().__init__("Task not found", task_id=task_id)


class ExecutionNotFound(OrchestratorError):
    status_code = 404

    def __init__(self, execution_id: str) -> None:
        super().__init__("Execution not found", execution_id=execution_id)


class InvalidTransition(OrchestratorError):
    status_code = 409

    def __init__(self, subject: str, current: str, action: str) -> None:
        super().__init__(
            f"Cannot {action} while {subject} is '{current}'",
            current_status=current,
            action=action,
        )


class ApproverNotEligible(OrchestratorError):
    status_code = 403

    def __init__(self, approver_id: str, reason: str) -> None:
        super().__init__(reason, approver_id=approver_id)


class QualityThresholdNotMet(OrchestratorError):
    status_code = 409

    def __init__(self, total: float, required: float, deficient: dict[str, float]) -> None:
        super().__init__(
            f"Plan quality {total:.1f} is below the required {required:.1f}",
            quality_total=total,
            required=required,
            deficient_dimensions=deficient,
        )
        self.deficient = deficient


class ConcurrentModification(OrchestratorError):
    status_code = 409

    def __init__(self, execution_id: str, expected_phase_index: int) -> None:
        super().__init__(
            "Execution was advanced by another writer",
            execution_id=execution_id,
            expected_phase_index=expected_phase_index,
        )
