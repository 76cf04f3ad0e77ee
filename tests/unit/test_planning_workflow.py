from __future__ import annotations

from typing import Any

import pytest

from change_orchestrator.agents.base import Agent, AgentPlan, PlanRequest, Toolbox, TriggerPattern
from change_orchestrator.agents.registry import AgentRegistry, build_agent_registry
from change_orchestrator.agents.specialists import DriftAgent
from change_orchestrator.approval.scoring import HeuristicQualityScorer
from change_orchestrator.capabilities.deterministic import split_waves
from change_orchestrator.capabilities.gateway import CapabilityGateway
from change_orchestrator.capabilities.registry import build_registry
from change_orchestrator.clock import ManualClock
from change_orchestrator.errors import UnauthorizedCapability, ValidationViolation
from change_orchestrator.intent.resolver import IntentResolver
from change_orchestrator.planning import PlanningContext, build_graph, initial_state
from change_orchestrator.storage.models import ToolCall, ToolInvocationRecord
from change_orchestrator.validation.pipeline import ValidationPipeline
from change_orchestrator.validation.policy import BuiltinPolicyEvaluator


class RogueAgent(Agent):
    name = "rogue"
    description = "Tries to reach past its authorized capabilities."
    triggers = (TriggerPattern(r"\brogue\b", 3),)
    keywords = ("rogue",)
    tools = ("query_assets",)

    def select_tools(self, text: str, context: dict[str, Any]) -> list[ToolCall]:
        return [
            ToolCall(tool="query_assets", args={"environment": "development"}),
            ToolCall(tool="apply_patch"),
        ]

    def build_plan(self, request: PlanRequest, outputs: dict[str, dict[str, Any]], toolbox: Toolbox) -> AgentPlan:
        raise AssertionError("planning must stop at the unauthorized call")


def _run(
    text: str,
    context: dict[str, Any] | None = None,
    *,
    autonomy_mode_override: str = "",
    **settings: Any,
) -> dict[str, Any]:
    capabilities = build_registry()
    agents = build_agent_registry(capabilities)
    invocations: list[ToolInvocationRecord] = []
    planning = PlanningContext(
        agents=agents,
        capabilities=capabilities,
        gateway=CapabilityGateway(registry=capabilities),
        pipeline=ValidationPipeline(capabilities, BuiltinPolicyEvaluator(**settings)),
        scorer=HeuristicQualityScorer(),
        clock=ManualClock(),
        default_phase_wait_s=300.0,
        autonomy_mode_override=autonomy_mode_override,
        on_invocation=invocations.append,
    )
    specification = IntentResolver(agents, capabilities).resolve(text, context)
    result = build_graph(planning).invoke(
        initial_state("task-1", "plan-1", text, specification, task_context=context)
    )
    result["invocations"] = invocations
    return result


def test_split_waves_sizes() -> None:
    assets = [f"a{index}" for index in range(20)]

    assert [len(wave) for wave in split_waves(assets, 0.10, 0.25)] == [2, 5, 13]
    assert [len(wave) for wave in split_waves(assets[:8], 0.10, 0.25)] == [1, 2, 5]
    assert [len(wave) for wave in split_waves(assets[:3], 0.10, 0.25)] == [1, 2]
    assert split_waves(assets[:1], 0.10, 0.25) == [["a0"]]
    assert split_waves([], 0.10, 0.25) == []


def test_prod_patch_plan_is_validated_scored_and_phased() -> None:
    result = _run("Apply the kernel patch to production")
    plan = result["plan"]

    assert plan.status == "validated"
    assert plan.risk_class == "state_change_prod"
    assert plan.autonomy_mode == "canary_only"
    assert [phase.name for phase in plan.phases] == ["canary", "wave-1", "remainder"]
    assert [phase.target_percentage for phase in plan.phases] == [10.0, 35.0, 100.0]
    assert all(phase.rollback_operation == "revert_patch" for phase in plan.phases)
    assert all(phase.wait_seconds == 300.0 for phase in plan.phases)
    assert plan.quality is not None and plan.quality.total > 0
    assert plan.risk_level in {"low", "medium", "high", "critical"}
    assert plan.telemetry["workflow"] == {"scored": True, "status": "validated"}
    assert [call.tool for call in plan.tool_calls] == [
        "query_assets",
        "get_golden_image",
        "calculate_risk_score",
        "generate_patch_plan",
        "apply_patch",
    ]
    assert [record.tool for record in result["invocations"]] == [
        "query_assets",
        "get_golden_image",
        "calculate_risk_score",
        "generate_patch_plan",
    ]
    assert all(record.outcome == "success" for record in result["invocations"])


def test_invalid_plan_skips_scoring() -> None:
    result = _run("Apply the kernel patch to production", freeze_environments=["prod"])
    plan = result["plan"]

    assert plan.status == "invalid"
    assert plan.quality is None
    assert plan.telemetry["workflow"]["scored"] is False
    assert "change freeze in effect for production" in plan.validation.violations


def test_oversized_canary_is_rejected_by_policy() -> None:
    result = _run("Apply the kernel patch to production", {"canary_fraction": 0.5})
    plan = result["plan"]

    assert plan.status == "invalid"
    assert any("at most 2 allowed" in item for item in plan.validation.violations)


def test_task_context_can_tighten_but_not_loosen_autonomy() -> None:
    loosened = _run("Apply the kernel patch to production", {"autonomy_mode": "full_auto"})["plan"]
    tightened = _run("Patch the staging servers", {"autonomy_mode": "approve_all"})["plan"]

    assert loosened.autonomy_mode == "canary_only"
    assert tightened.autonomy_mode == "approve_all"
    assert tightened.risk_class == "state_change_nonprod"


def test_deployment_override_sets_autonomy_mode() -> None:
    plan = _run("Patch the staging servers", autonomy_mode_override="full_auto")["plan"]

    assert plan.autonomy_mode == "full_auto"


def test_composite_plan_prefixes_phases_by_agent() -> None:
    plan = _run("check drift in staging then check compliance")["plan"]

    assert plan.agent == "drift+compliance"
    assert plan.component_agents == ["drift", "compliance"]
    assert [phase.name for phase in plan.phases] == ["drift/drift-report", "compliance/compliance-report"]
    assert plan.risk_class == "read_only"
    assert plan.status == "validated"


def test_unauthorized_capability_halts_planning_and_fails_task(make_service) -> None:
    capabilities = build_registry()
    agents = AgentRegistry([RogueAgent(), DriftAgent()], capabilities=capabilities)
    service = make_service(agents=agents)

    with pytest.raises(UnauthorizedCapability) as excinfo:
        service.submit("send the rogue in", submitter_id="sam")

    assert excinfo.value.tool == "apply_patch"
    (task,) = service.list_tasks()
    assert task.status == "failed"
    assert [item.tool for item in service.list_tool_invocations(task.task_id)] == ["query_assets"]
    assert service.storage.list_plans(task.task_id) == []
    assert service.trace(task.task_id)[-1].to_state == "failed"


def test_registry_rejects_agents_with_unknown_capabilities() -> None:
    class Misconfigured(RogueAgent):
        name = "misconfigured"
        tools = ("query_assets", "launch_missiles")

    with pytest.raises(ValueError, match="launch_missiles"):
        AgentRegistry([Misconfigured()], capabilities=build_registry())


class FlakyInventoryAgent(RogueAgent):
    name = "flaky"
    description = "Crashes while turning tool output into phases."
    triggers = (TriggerPattern(r"\bflaky\b", 3),)
    keywords = ("flaky",)

    def select_tools(self, text: str, context: dict[str, Any]) -> list[ToolCall]:
        return [ToolCall(tool="query_assets", args={"environment": "development"})]

    def build_plan(self, request: PlanRequest, outputs: dict[str, dict[str, Any]], toolbox: Toolbox) -> AgentPlan:
        raise RuntimeError("inventory feed returned no hosts")


def test_planning_crash_fails_task_with_reason_and_trace(make_service) -> None:
    agents = AgentRegistry([FlakyInventoryAgent(), DriftAgent()], capabilities=build_registry())
    service = make_service(agents=agents)

    task = service.submit("run the flaky inventory sync", submitter_id="sam")

    assert task.status == "failed"
    assert task.status_reason == "planning failed: RuntimeError: inventory feed returned no hosts"
    assert task.trace_url == f"/tasks/{task.task_id}/trace"
    assert task.completed_at is not None
    assert service.storage.list_plans(task.task_id) == []
    events = service.trace(task.task_id)
    assert "planning_failed" in [event.kind for event in events]
    assert events[-1].kind == "task_transition"
    assert events[-1].to_state == "failed"


def test_planning_crash_short_circuits_the_graph() -> None:
    capabilities = build_registry()
    agents = AgentRegistry([FlakyInventoryAgent()], capabilities=capabilities)
    planning = PlanningContext(
        agents=agents,
        capabilities=capabilities,
        gateway=CapabilityGateway(registry=capabilities),
        pipeline=ValidationPipeline(capabilities, BuiltinPolicyEvaluator()),
        scorer=HeuristicQualityScorer(),
        clock=ManualClock(),
    )
    specification = IntentResolver(agents, capabilities).resolve("run the flaky inventory sync", {})

    result = build_graph(planning).invoke(
        initial_state("task-1", "plan-1", "run the flaky inventory sync", specification)
    )

    assert result["plan"] is None
    assert result["error"] == "RuntimeError: inventory feed returned no hosts"
    assert result["telemetry"]["workflow"]["status"] == "failed"


def test_malformed_context_is_rejected_before_a_task_exists(make_service) -> None:
    service = make_service()

    with pytest.raises(ValidationViolation) as excinfo:
        service.submit(
            "Apply the kernel patch to production",
            submitter_id="sam",
            context={"canary_fraction": "lots", "limit": 0},
        )

    violations = excinfo.value.violations
    assert any(item.startswith("context.canary_fraction:") for item in violations)
    assert any(item.startswith("context.limit:") for item in violations)
    assert service.list_tasks() == []


def test_malformed_reviewer_overrides_are_rejected(make_service) -> None:
    service = make_service()
    task = service.submit("Apply the kernel patch to production", submitter_id="sam")

    with pytest.raises(ValidationViolation):
        service.approve(task.task_id, approver_id="bob", decision="modify", overrides={"wave_fraction": 2})

    assert service.storage.list_approvals(task.task_id) == []
    assert service.get_task(task.task_id).status == "pending_approval"
