from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from change_orchestrator.capabilities.registry import build_registry
from change_orchestrator.storage.models import PlanPhase, PlanRecord
from change_orchestrator.validation.pipeline import ValidationPipeline
from change_orchestrator.validation.policy import (
    BuiltinPolicyEvaluator,
    CompositePolicyEvaluator,
    OpaPolicyEvaluator,
    PolicyDecision,
)

NOW = datetime(2024, 1, 1, tzinfo=UTC)


class StaticPolicy:
    def __init__(self, decision: PolicyDecision) -> None:
        self.decision = decision
        self.facts: list[dict[str, Any]] = []

    def evaluate(self, plan: PlanRecord, facts: dict[str, Any]) -> PolicyDecision:
        self.facts.append(facts)
        return self.decision


def _phase(name: str, operation: str, targets: list[str], **kwargs: Any) -> PlanPhase:
    registry = build_registry()
    spec = registry[operation]
    return PlanPhase(
        name=name,
        operation=operation,
        rollback_operation=kwargs.pop("rollback_operation", spec.rollback),
        risk_class=kwargs.pop("risk_class", spec.risk_class),
        targets=targets,
        **kwargs,
    )


def _plan(environment: str, phases: list[PlanPhase], **kwargs: Any) -> PlanRecord:
    return PlanRecord(
        plan_id="plan-1",
        task_id="task-1",
        agent="patch",
        agent_version="1.0.0",
        environment=environment,
        phases=phases,
        created_at=NOW,
        **kwargs,
    )


def _pipeline(policy: Any = None) -> ValidationPipeline:
    return ValidationPipeline(build_registry(), policy or BuiltinPolicyEvaluator())


def test_well_formed_prod_rollout_passes() -> None:
    plan = _plan(
        "production",
        [
            _phase("canary", "apply_patch", ["p1"], wait_seconds=300),
            _phase("remainder", "apply_patch", ["p2", "p3", "p4", "p5", "p6", "p7", "p8", "p9", "p10"]),
        ],
    )

    result = _pipeline().validate(plan, {}, checked_at=NOW)

    assert result.passed is True
    assert result.violations == []
    assert result.checked_at == NOW


def test_structural_violations_are_collected() -> None:
    plan = _plan(
        "staging",
        [
            _phase("one", "apply_patch", ["s1"]),
            _phase("one", "apply_patch_nonprod", [], rollback_operation=None),
            _phase("three", "collect_state", ["s1"], risk_class="state_change_nonprod"),
        ],
    )

    violations = _pipeline().structural(plan)

    assert "phase 'one' uses a production operation in staging" in violations
    assert "duplicate phase name 'one'" in violations
    assert "phase 'one' has no targets" in violations
    assert "phase 'one' changes state but has no rollback" in violations
    assert "phase 'three' declares state_change_nonprod but 'collect_state' is read_only" in violations


def test_empty_and_unknown_operations_are_rejected() -> None:
    assert _pipeline().structural(_plan("staging", [])) == ["plan has no phases"]

    unknown = PlanPhase(name="x", operation="reboot_everything", targets=["s1"])
    assert _pipeline().structural(_plan("staging", [unknown])) == [
        "phase 'x' uses unknown operation 'reboot_everything'"
    ]


def test_plan_only_autonomy_forbids_state_change() -> None:
    plan = _plan(
        "staging",
        [_phase("all", "apply_patch_nonprod", ["s1"])],
        autonomy_mode="plan_only",
    )

    assert _pipeline().structural(plan) == ["phase 'all' changes state under plan_only autonomy"]


def test_nonprod_operation_in_production_is_rejected() -> None:
    plan = _plan(
        "production",
        [
            _phase("canary", "apply_patch_nonprod", ["p1"]),
            _phase("remainder", "apply_patch_nonprod", ["p2"]),
        ],
    )

    violations = _pipeline().structural(plan)

    assert "phase 'canary' uses a non-production operation in production" in violations


def test_builtin_policy_requires_production_canary() -> None:
    policy = BuiltinPolicyEvaluator()

    single = _plan("production", [_phase("all", "apply_patch", ["p1", "p2", "p3"])])
    decision = policy.evaluate(single, {})
    assert decision.allow is False
    assert decision.reasons == ["production rollout requires a canary phase before the remainder"]

    staged = _plan(
        "production",
        [_phase("canary", "apply_patch", ["p1"]), _phase("remainder", "apply_patch", ["p2", "p3"])],
    )
    decision = policy.evaluate(staged, {})
    assert decision.allow is True
    assert decision.warnings == ["production phases have no soak time between them"]


def test_builtin_policy_blocks_dangerous_parameters_and_frozen_environments() -> None:
    plan = _plan(
        "staging",
        [_phase("all", "execute_sop_nonprod", ["s1"], params={"command": "rm -rf / --no-preserve-root"})],
    )

    decision = BuiltinPolicyEvaluator().evaluate(plan, {"freeze_environments": ["stage"]})

    assert decision.allow is False
    assert "dangerous pattern detected: 'rm -rf /'" in decision.reasons
    assert "change freeze in effect for staging" in decision.reasons


def test_read_only_plans_ignore_change_freeze() -> None:
    plan = _plan("production", [_phase("report", "collect_state", ["p1", "p2"])])

    decision = BuiltinPolicyEvaluator(freeze_environments=["production"]).evaluate(plan, {})

    assert decision.allow is True


def test_unreachable_opa_denies() -> None:
    opa = OpaPolicyEvaluator(base_url="http://127.0.0.1:9", policy_path="change_orchestrator/plan", timeout_s=0.5)
    plan = _plan("staging", [_phase("all", "apply_patch_nonprod", ["s1"])])

    decision = opa.evaluate(plan, {})

    assert decision.allow is False
    assert decision.reasons[0].startswith("policy service unavailable")


def test_composite_policy_denies_when_any_member_denies() -> None:
    allow = StaticPolicy(PolicyDecision(allow=True, warnings=["soak time is short"]))
    deny = StaticPolicy(PolicyDecision(allow=False, reasons=["outside maintenance window"]))
    plan = _plan("staging", [_phase("all", "apply_patch_nonprod", ["s1"])])

    result = _pipeline(CompositePolicyEvaluator([allow, deny])).validate(plan, {"environment": "staging"})

    assert result.passed is False
    assert result.violations == ["outside maintenance window"]
    assert allow.facts == [{"environment": "staging"}]
