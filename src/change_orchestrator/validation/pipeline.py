"""Structural and policy validation of candidate plans."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from change_orchestrator.capabilities.inventory import is_production
from change_orchestrator.capabilities.registry import CapabilityRegistry
from change_orchestrator.storage.models import STATE_CHANGE_CLASSES, PlanRecord, ValidationResult
from change_orchestrator.validation.policy import PolicyDecision, PolicyEvaluator

logger = logging.getLogger(__name__)


class ValidationPipeline:
    def __init__(self, capabilities: CapabilityRegistry, policy: PolicyEvaluator) -> None:
        self.capabilities = capabilities
        self.policy = policy

    def structural(self, plan: PlanRecord) -> list[str]:
        violations: list[str] = []
        if not plan.phases:
            return ["plan has no phases"]

        seen: set[str] = set()
        production = is_production(plan.environment)
        for phase in plan.phases:
            if phase.name in seen:
                violations.append(f"duplicate phase name '{phase.name}'")
            seen.add(phase.name)
            if not phase.targets:
                violations.append(f"phase '{phase.name}' has no targets")
            spec = self.capabilities.get(phase.operation)
            if spec is None:
                violations.append(f"phase '{phase.name}' uses unknown operation '{phase.operation}'")
                continue
            if spec.risk_class != phase.risk_class:
                violations.append(
                    f"phase '{phase.name}' declares {phase.risk_class} but "
                    f"'{phase.operation}' is {spec.risk_class}"
                )
            if phase.risk_class in STATE_CHANGE_CLASSES:
                if not phase.rollback_operation:
                    violations.append(f"phase '{phase.name}' changes state but has no rollback")
                elif phase.rollback_operation not in self.capabilities:
                    violations.append(
                        f"phase '{phase.name}' rollback '{phase.rollback_operation}' is not registered"
                    )
                if plan.autonomy_mode == "plan_only":
                    violations.append(f"phase '{phase.name}' changes state under plan_only autonomy")
            if phase.risk_class == "state_change_prod" and not production:
                violations.append(
                    f"phase '{phase.name}' uses a production operation in {plan.environment}"
                )
            if phase.risk_class == "state_change_nonprod" and production and spec.name != "build_image":
                violations.append(
                    f"phase '{phase.name}' uses a non-production operation in {plan.environment}"
                )
        return violations

    def validate(
        self,
        plan: PlanRecord,
        facts: dict[str, Any] | None = None,
        *,
        checked_at: datetime | None = None,
    ) -> ValidationResult:
        violations = self.structural(plan)
        decision: PolicyDecision = self.policy.evaluate(plan, dict(facts or {}))
        violations.extend(decision.reasons)
        logger.info(
            "plan_validate event=completed task_id=%s plan_id=%s passed=%s violations=%d warnings=%d",
            plan.task_id,
            plan.plan_id,
            not violations,
            len(violations),
            len(decision.warnings),
        )
        return ValidationResult(passed=not violations, violations=violations, checked_at=checked_at)
