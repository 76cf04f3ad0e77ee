"""Risk-based approval gate.

Approval state is never stored as a counter; it is folded from the approval
records of the active plan every time it is needed:

* any ``reject`` wins, whatever order the records arrived in;
* a ``modify`` ends approval of the current plan and asks for a replan;
* otherwise the plan is approved once enough distinct eligible principals
  (never the submitter) have approved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Literal

from change_orchestrator.errors import ApproverNotEligible, QualityThresholdNotMet
from change_orchestrator.storage.models import ApprovalRecord, PlanRecord


@dataclass(frozen=True)
class ApprovalPolicy:
    required_approvals: int
    auto_approve: bool = False
    min_quality: float | None = None


@dataclass(frozen=True)
class GateDecision:
    status: Literal["approved", "rejected", "modified", "pending"]
    approvers: list[str] = field(default_factory=list)
    rejected_by: list[str] = field(default_factory=list)
    modified_by: list[str] = field(default_factory=list)
    remaining: int = 0


class ApprovalGate:
    def __init__(
        self,
        *,
        plan_only_min_quality: float = 60.0,
        prod_min_quality: float = 80.0,
        prod_required_approvals: int = 2,
        nonprod_required_approvals: int = 1,
        eligible_approvers: Iterable[str] = (),
    ) -> None:
        self.plan_only_min_quality = plan_only_min_quality
        self.prod_min_quality = prod_min_quality
        self.prod_required_approvals = prod_required_approvals
        self.nonprod_required_approvals = nonprod_required_approvals
        self.eligible_approvers = frozenset(eligible_approvers)

    def policy_for(self, plan: PlanRecord) -> ApprovalPolicy:
        if plan.risk_class == "read_only":
            return ApprovalPolicy(required_approvals=0, auto_approve=True)
        if plan.risk_class == "plan_only":
            total = plan.quality.total if plan.quality is not None else 0.0
            if total >= self.plan_only_min_quality:
                return ApprovalPolicy(required_approvals=0, auto_approve=True)
            return ApprovalPolicy(required_approvals=1)
        if plan.risk_class == "state_change_nonprod":
            return ApprovalPolicy(required_approvals=self.nonprod_required_approvals)
        return ApprovalPolicy(
            required_approvals=self.prod_required_approvals,
            min_quality=self.prod_min_quality,
        )

    def check_eligible(self, approver_id: str, submitter_id: str) -> None:
        if approver_id == submitter_id:
            raise ApproverNotEligible(approver_id, "The submitter cannot approve their own task")
        if self.eligible_approvers and approver_id not in self.eligible_approvers:
            raise ApproverNotEligible(approver_id, f"'{approver_id}' is not an eligible approver")

    def check_quality(self, plan: PlanRecord) -> None:
        policy = self.policy_for(plan)
        if policy.min_quality is None:
            return
        if plan.quality is None:
            raise QualityThresholdNotMet(0.0, policy.min_quality, {})
        if plan.quality.total < policy.min_quality:
            raise QualityThresholdNotMet(
                plan.quality.total,
                policy.min_quality,
                plan.quality.deficient(policy.min_quality),
            )

    def decide(
        self,
        plan: PlanRecord,
        records: Iterable[ApprovalRecord],
        *,
        submitter_id: str,
    ) -> GateDecision:
        policy = self.policy_for(plan)
        approvers: set[str] = set()
        rejected: set[str] = set()
        modified: set[str] = set()
        for record in records:
            if record.plan_id != plan.plan_id or record.scope != "plan":
                continue
            if record.approver_id == submitter_id:
                continue
            if self.eligible_approvers and record.approver_id not in self.eligible_approvers:
                continue
            if record.decision == "reject":
                rejected.add(record.approver_id)
            elif record.decision == "modify":
                modified.add(record.approver_id)
            else:
                approvers.add(record.approver_id)

        ordered = sorted(approvers)
        if rejected:
            return GateDecision(status="rejected", approvers=ordered, rejected_by=sorted(rejected))
        if modified:
            return GateDecision(status="modified", approvers=ordered, modified_by=sorted(modified))
        if policy.auto_approve or len(approvers) >= policy.required_approvals:
            return GateDecision(status="approved", approvers=ordered)
        return GateDecision(
            status="pending",
            approvers=ordered,
            remaining=policy.required_approvals - len(approvers),
        )
