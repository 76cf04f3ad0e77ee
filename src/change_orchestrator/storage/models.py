"""Storage models shared by API, service and persistence backends."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Literal

from pydantic import BaseModel, ConfigDict, Field

RiskClass = Literal["read_only", "plan_only", "state_change_nonprod", "state_change_prod"]
RISK_CLASS_ORDER: tuple[str, ...] = (
    "read_only",
    "plan_only",
    "state_change_nonprod",
    "state_change_prod",
)
STATE_CHANGE_CLASSES = frozenset({"state_change_nonprod", "state_change_prod"})

TaskStatus = Literal[
    "draft",
    "pending_approval",
    "approved",
    "rejected",
    "expired",
    "executing",
    "completed",
    "failed_with_rollback",
    "cancelled",
    "failed",
]
TERMINAL_TASK_STATUSES = frozenset(
    {"rejected", "expired", "completed", "failed_with_rollback", "cancelled", "failed"}
)

PlanStatus = Literal[
    "proposed",
    "validated",
    "invalid",
    "approved",
    "rejected",
    "superseded",
    "expired",
    "executed",
]
ACTIVE_PLAN_STATUSES = frozenset({"proposed", "validated", "invalid", "approved"})

ExecutionStatus = Literal[
    "created",
    "running",
    "paused",
    "cancelled",
    "completed",
    "failed_with_rollback",
    "expired",
]
TERMINAL_EXECUTION_STATUSES = frozenset({"cancelled", "completed", "failed_with_rollback", "expired"})

PhaseStatus = Literal[
    "pending",
    "in_progress",
    "health_check",
    "passed",
    "failed",
    "rollback_in_progress",
    "rolled_back",
]
ResourceStatus = Literal[
    "succeeded",
    "failed",
    "skipped",
    "rolled_back",
    "manual_intervention_required",
]
Decision = Literal["approve", "reject", "modify"]
AutonomyMode = Literal["plan_only", "approve_all", "canary_only", "risk_based", "full_auto"]


def max_risk_class(classes: Iterable[str]) -> str:
    ranked = [RISK_CLASS_ORDER.index(item) for item in classes if item in RISK_CLASS_ORDER]
    if not ranked:
        return "read_only"
    return RISK_CLASS_ORDER[max(ranked)]


class TaskContext(BaseModel):
    """Planning hints a submitter or reviewer may attach; unknown keys pass through."""

    model_config = ConfigDict(extra="allow")

    environment: str | None = None
    canary_fraction: float | None = Field(default=None, gt=0.0, le=1.0)
    wave_fraction: float | None = Field(default=None, gt=0.0, le=1.0)
    phase_wait_s: float | None = Field(default=None, ge=0.0)
    limit: int | None = Field(default=None, gt=0)
    asset_ids: list[str] | None = None
    autonomy_mode: AutonomyMode | None = None


class TaskRecord(BaseModel):
    """Persisted task: one operator intent and its lifecycle."""

    task_id: str
    intent_text: str
    context: dict[str, Any] = Field(default_factory=dict)
    submitter_id: str
    client_request_id: str | None = None
    status: TaskStatus = "draft"
    agent: str | None = None
    environment: str | None = None
    risk_class: RiskClass | None = None
    active_plan_id: str | None = None
    active_execution_id: str | None = None
    status_reason: str | None = None
    trace_url: str | None = None
    approval_deadline: datetime | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None


class PlanPhase(BaseModel):
    """One authored rollout phase."""

    name: str
    operation: str
    rollback_operation: str | None = None
    risk_class: RiskClass = "read_only"
    targets: list[str] = Field(default_factory=list)
    target_percentage: float = 100.0
    wait_seconds: float = 0.0
    params: dict[str, Any] = Field(default_factory=dict)


class QualityScore(BaseModel):
    completeness: float
    safety: float
    feasibility: float
    efficiency: float
    clarity: float
    total: float

    def dimensions(self) -> dict[str, float]:
        return {
            "completeness": self.completeness,
            "safety": self.safety,
            "feasibility": self.feasibility,
            "efficiency": self.efficiency,
            "clarity": self.clarity,
        }

    def deficient(self, threshold: float) -> dict[str, float]:
        return {name: value for name, value in self.dimensions().items() if value < threshold}


class ValidationResult(BaseModel):
    passed: bool
    violations: list[str] = Field(default_factory=list)
    checked_at: datetime | None = None


class ToolCall(BaseModel):
    tool: str
    args: dict[str, Any] = Field(default_factory=dict)


class PlanRecord(BaseModel):
    """Candidate change proposal produced by one agent planning pass."""

    plan_id: str
    task_id: str
    agent: str
    agent_version: str
    component_agents: list[str] = Field(default_factory=list)
    environment: str
    tool_calls: list[ToolCall] = Field(default_factory=list)
    phases: list[PlanPhase] = Field(default_factory=list)
    affected_resources: list[str] = Field(default_factory=list)
    risk_class: RiskClass = "read_only"
    risk_score: int = 0
    risk_level: str = "low"
    autonomy_mode: AutonomyMode = "approve_all"
    summary: str = ""
    rationale: str = ""
    evidence: dict[str, Any] = Field(default_factory=dict)
    quality: QualityScore | None = None
    validation: ValidationResult | None = None
    telemetry: dict[str, Any] = Field(default_factory=dict)
    status: PlanStatus = "proposed"
    created_at: datetime


class ToolInvocationRecord(BaseModel):
    invocation_id: str
    task_id: str
    plan_id: str | None = None
    agent: str
    tool: str
    risk_class: RiskClass
    input: dict[str, Any] = Field(default_factory=dict)
    output: dict[str, Any] | None = None
    error: str | None = None
    outcome: Literal["success", "error"]
    attempts: int = 1
    duration_ms: float = 0.0
    invoked_at: datetime


class ApprovalRecord(BaseModel):
    approval_id: str
    task_id: str
    plan_id: str
    approver_id: str
    decision: Decision
    scope: str = "plan"
    notes: str = ""
    overrides: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class ResourceOutcome(BaseModel):
    resource_id: str
    status: ResourceStatus
    detail: str = ""
    healthy: bool | None = None
    completion_order: int = 0
    completed_at: datetime


class PhaseState(PlanPhase):
    """Runtime view of a phase inside one execution."""

    index: int
    status: PhaseStatus = "pending"
    outcomes: dict[str, ResourceOutcome] = Field(default_factory=dict)
    failure_fraction: float = 0.0
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def succeeded_in_completion_order(self) -> list[ResourceOutcome]:
        done = [item for item in self.outcomes.values() if item.status == "succeeded"]
        return sorted(done, key=lambda item: item.completion_order)


class ExecutionRecord(BaseModel):
    """One attempt to apply an approved plan."""

    execution_id: str
    task_id: str
    plan_id: str
    environment: str
    status: ExecutionStatus = "created"
    current_phase_index: int = 0
    phases: list[PhaseState] = Field(default_factory=list)
    autonomy_mode: AutonomyMode = "approve_all"
    gated_phases: list[int] = Field(default_factory=list)
    promoted_phases: list[int] = Field(default_factory=list)
    awaiting_promotion: bool = False
    pause_requested: bool = False
    cancel_requested: bool = False
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    deadline: datetime
    wait_until: datetime | None = None
    paused_at: datetime | None = None
    status_reason: str | None = None
    change_record_id: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime


class AuditEvent(BaseModel):
    """Immutable ledger entry."""

    event_id: str
    task_id: str
    seq: int
    timestamp: datetime
    kind: str
    actor: str = "system"
    subject_id: str | None = None
    from_state: str | None = None
    to_state: str | None = None
    reason: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
