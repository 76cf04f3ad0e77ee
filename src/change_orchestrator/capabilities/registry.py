"""Capability registry: every operation an agent may plan or invoke."""

from __future__ import annotations

from dataclasses import dataclass
from functools import partial
from types import MappingProxyType
from typing import Any, Callable, Literal, Mapping

from pydantic import BaseModel

from change_orchestrator.capabilities import deterministic
from change_orchestrator.capabilities.inventory import InventoryProvider, demo_inventory
from change_orchestrator.capabilities.schemas import (
    AlertsOutput,
    ApplyParams,
    ArtifactOutput,
    CalculateRiskScoreInput,
    CheckControlInput,
    CheckControlOutput,
    CompareVersionsInput,
    CompareVersionsOutput,
    ComplianceEvidenceOutput,
    ComplianceStatusInput,
    ComplianceStatusOutput,
    CostReportOutput,
    DriftStatusOutput,
    DrStatusOutput,
    EnvironmentInput,
    GenerateImageArtifactInput,
    GeneratePatchPlanInput,
    GenerateRolloutPlanInput,
    GetGoldenImageInput,
    GoldenImageOutput,
    ImageFamilyInput,
    ImageVersionsOutput,
    ListSopsInput,
    ListSopsOutput,
    PatchPlanOutput,
    QueryAlertsInput,
    QueryAssetsInput,
    QueryAssetsOutput,
    ResourceListInput,
    RiskScoreOutput,
    RolloutPlanOutput,
    RunbookOutput,
    SimulateRolloutInput,
    SimulationOutput,
    SopInput,
    SopOutput,
    SopValidationOutput,
)
from change_orchestrator.storage.models import RiskClass

CapabilityKind = Literal["query", "analysis", "planning", "execution"]


@dataclass(frozen=True)
class CapabilitySpec:
    name: str
    description: str
    risk_class: RiskClass
    kind: CapabilityKind
    input_model: type[BaseModel]
    output_model: type[BaseModel] | None = None
    fn: Callable[[BaseModel], BaseModel] | None = None
    rollback: str | None = None
    implementation: str = "deterministic"

    @property
    def invocable(self) -> bool:
        return self.fn is not None

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "risk_class": self.risk_class,
            "kind": self.kind,
            "rollback": self.rollback,
            "input_schema": self.input_model.model_json_schema(),
        }


CapabilityRegistry = Mapping[str, CapabilitySpec]

# (name, description, input, output, fn, kind)
_READ_ONLY_CAPABILITIES: tuple[tuple[str, str, type[BaseModel], type[BaseModel], Any, CapabilityKind], ...] = (
    ("query_assets", "List inventory assets by environment, platform and state.",
     QueryAssetsInput, QueryAssetsOutput, deterministic.query_assets, "query"),
    ("get_golden_image", "Resolve the current golden image version for an image family.",
     GetGoldenImageInput, GoldenImageOutput, deterministic.get_golden_image, "query"),
    ("get_drift_status", "Report assets whose image version differs from the golden image.",
     EnvironmentInput, DriftStatusOutput, deterministic.get_drift_status, "query"),
    ("compare_versions", "Compare two semantic versions.",
     CompareVersionsInput, CompareVersionsOutput, deterministic.compare_versions, "analysis"),
    ("calculate_risk_score", "Score the blast radius of a change from environment and asset count.",
     CalculateRiskScoreInput, RiskScoreOutput, deterministic.calculate_risk_score, "analysis"),
    ("get_compliance_status", "Summarize failing compliance controls per environment.",
     ComplianceStatusInput, ComplianceStatusOutput, deterministic.get_compliance_status, "query"),
    ("check_control", "Evaluate one compliance control across an environment.",
     CheckControlInput, CheckControlOutput, deterministic.check_control, "query"),
    ("query_alerts", "List open alerts for an environment.",
     QueryAlertsInput, AlertsOutput, deterministic.query_alerts, "query"),
    ("get_dr_status", "Report which assets have a disaster-recovery replica.",
     EnvironmentInput, DrStatusOutput, deterministic.get_dr_status, "query"),
    ("list_image_versions", "List published versions of an image family.",
     ImageFamilyInput, ImageVersionsOutput, deterministic.list_image_versions, "query"),
    ("list_sops", "List standard operating procedures in the library.",
     ListSopsInput, ListSopsOutput, deterministic.list_sops, "query"),
    ("summarize_cost", "Summarize monthly spend and underutilized assets.",
     EnvironmentInput, CostReportOutput, deterministic.summarize_cost, "analysis"),
    ("simulate_rollout", "Estimate success probability and duration of a rollout.",
     SimulateRolloutInput, SimulationOutput, deterministic.simulate_rollout, "analysis"),
    ("simulate_failover", "Estimate a failover without touching infrastructure.",
     ResourceListInput, SimulationOutput, deterministic.simulate_failover, "analysis"),
    ("simulate_sop", "Dry-run a procedure.",
     SopInput, SimulationOutput, deterministic.simulate_sop, "analysis"),
    ("validate_sop", "Check a procedure for missing or dangerous steps.",
     SopInput, SopValidationOutput, deterministic.validate_sop, "analysis"),
)

_PLAN_ONLY_CAPABILITIES: tuple[tuple[str, str, type[BaseModel], type[BaseModel], Any, CapabilityKind], ...] = (
    ("generate_patch_plan", "Draft the patch steps for a set of assets.",
     GeneratePatchPlanInput, PatchPlanOutput, deterministic.generate_patch_plan, "planning"),
    ("generate_rollout_plan", "Split assets into canary and progressive waves.",
     GenerateRolloutPlanInput, RolloutPlanOutput, deterministic.generate_rollout_plan, "planning"),
    ("generate_compliance_evidence", "Assemble an evidence package for a framework.",
     ComplianceStatusInput, ComplianceEvidenceOutput, deterministic.generate_compliance_evidence, "planning"),
    ("generate_dr_runbook", "Draft a failover runbook.",
     ResourceListInput, RunbookOutput, deterministic.generate_dr_runbook, "planning"),
    ("generate_image_contract", "Draft an image contract for a family.",
     GenerateImageArtifactInput, ArtifactOutput, deterministic.generate_image_contract, "planning"),
    ("generate_packer_template", "Render a Packer template for a family.",
     GenerateImageArtifactInput, ArtifactOutput, deterministic.generate_packer_template, "planning"),
    ("generate_ansible_playbook", "Render an Ansible playbook for a family.",
     GenerateImageArtifactInput, ArtifactOutput, deterministic.generate_ansible_playbook, "planning"),
    ("generate_sop", "Draft a standard operating procedure.",
     SopInput, SopOutput, deterministic.generate_sop, "planning"),
)

# (forward, rollback, description); each pair is registered for prod and non-prod.
_STATE_CHANGE_PAIRS: tuple[tuple[str, str, str], ...] = (
    ("apply_patch", "revert_patch", "Install the target image or package version."),
    ("remediate_drift", "restore_configuration", "Converge an asset back to its golden image."),
    ("remediate_control", "revert_control", "Apply the fix for a failing compliance control."),
    ("execute_failover", "execute_failback", "Fail an asset over to its recovery replica."),
    ("promote_image", "demote_image", "Roll a promoted golden image onto assets."),
    ("execute_sop", "revert_sop", "Run a standard operating procedure on an asset."),
    ("rightsize_instance", "restore_instance_size", "Resize an asset to match observed usage."),
    ("quarantine_asset", "release_asset", "Isolate an asset from the network."),
)

PHASE_OPERATIONS: tuple[tuple[str, RiskClass, str], ...] = (
    ("collect_state", "read_only", "Capture current state of each target for the report."),
    ("publish_report", "plan_only", "Publish a generated artifact for review."),
    ("build_image", "state_change_nonprod", "Build an image in the isolated build account."),
)


def nonprod_variant(operation: str) -> str:
    return f"{operation}_nonprod"


def build_registry(inventory: InventoryProvider | None = None) -> CapabilityRegistry:
    source = inventory or demo_inventory()
    entries: dict[str, CapabilitySpec] = {}

    for name, description, input_model, output_model, fn, kind in _READ_ONLY_CAPABILITIES:
        entries[name] = CapabilitySpec(
            name=name,
            description=description,
            risk_class="read_only",
            kind=kind,
            input_model=input_model,
            output_model=output_model,
            fn=partial(fn, inventory=source),
        )

    for name, description, input_model, output_model, fn, kind in _PLAN_ONLY_CAPABILITIES:
        entries[name] = CapabilitySpec(
            name=name,
            description=description,
            risk_class="plan_only",
            kind=kind,
            input_model=input_model,
            output_model=output_model,
            fn=partial(fn, inventory=source),
        )

    for forward, rollback, description in _STATE_CHANGE_PAIRS:
        for suffix, risk_class in (("", "state_change_prod"), ("_nonprod", "state_change_nonprod")):
            entries[forward + suffix] = CapabilitySpec(
                name=forward + suffix,
                description=description,
                risk_class=risk_class,
                kind="execution",
                input_model=ApplyParams,
                rollback=rollback + suffix,
            )
            entries[rollback + suffix] = CapabilitySpec(
                name=rollback + suffix,
                description=f"Undo {forward + suffix}.",
                risk_class=risk_class,
                kind="execution",
                input_model=ApplyParams,
            )

    for name, risk_class, description in PHASE_OPERATIONS:
        entries[name] = CapabilitySpec(
            name=name,
            description=description,
            risk_class=risk_class,
            kind="execution",
            input_model=ApplyParams,
            rollback="discard_image_build" if name == "build_image" else None,
        )
    entries["discard_image_build"] = CapabilitySpec(
        name="discard_image_build",
        description="Undo build_image.",
        risk_class="state_change_nonprod",
        kind="execution",
        input_model=ApplyParams,
    )

    return MappingProxyType(entries)


def list_tools(registry: CapabilityRegistry | None = None) -> list[str]:
    return sorted((registry or build_registry()).keys())
