"""Specialist agents. Each owns a decision sequence over its authorized capabilities."""

from __future__ import annotations

import re
from typing import Any

from change_orchestrator.agents.base import (
    Agent,
    AgentPlan,
    Guardrails,
    PlanRequest,
    Toolbox,
    TriggerPattern,
    asset_ids,
    restrict_targets,
)
from change_orchestrator.storage.models import ToolCall


def _env(context: dict[str, Any]) -> str:
    return str(context.get("environment", "development"))


def _summary(count: int, noun: str, environment: str) -> str:
    return f"{count} {noun} in {environment}"


class DriftAgent(Agent):
    name = "drift"
    description = "Detects and remediates configuration drift from golden images."
    triggers = (
        TriggerPattern(r"\bdrift", 3),
        TriggerPattern(r"\bgolden image", 1),
        TriggerPattern(r"\bconfig(uration)? mismatch", 2),
    )
    keywords = ("drift", "golden", "mismatch", "configuration")
    tools = (
        "query_assets",
        "get_golden_image",
        "get_drift_status",
        "compare_versions",
        "generate_patch_plan",
        "simulate_rollout",
        "remediate_drift",
        "remediate_drift_nonprod",
        "restore_configuration",
        "restore_configuration_nonprod",
    )

    def select_tools(self, text: str, context: dict[str, Any]) -> list[ToolCall]:
        environment = _env(context)
        calls = [
            ToolCall(tool="query_assets", args={"environment": environment}),
            ToolCall(tool="get_golden_image", args={"family": context.get("image_family", "base")}),
            ToolCall(tool="get_drift_status", args={"environment": environment}),
        ]
        if not self.wants_action(text):
            calls.append(ToolCall(tool="collect_state"))
            return calls
        calls.append(ToolCall(tool="simulate_rollout", args={"environment": environment, "asset_count": 0, "wave_count": 3}))
        calls.append(ToolCall(tool=self.variant("remediate_drift", environment)))
        return calls

    def bind_args(self, call: ToolCall, outputs: dict[str, dict[str, Any]], request: PlanRequest) -> dict[str, Any]:
        if call.tool == "simulate_rollout":
            drifted = restrict_targets(list(outputs.get("get_drift_status", {}).get("drifted", [])), request.context)
            return {**call.args, "asset_count": len(drifted)}
        return call.args

    def build_plan(self, request: PlanRequest, outputs: dict[str, dict[str, Any]], toolbox: Toolbox) -> AgentPlan:
        drift = outputs.get("get_drift_status", {})
        drifted = restrict_targets(list(drift.get("drifted", [])), request.context)
        golden = outputs.get("get_golden_image", {}).get("version")
        if not self.wants_action(request.text):
            targets = drifted or restrict_targets(asset_ids(outputs.get("query_assets")), request.context)
            return AgentPlan(
                phases=self.report_phase(toolbox, operation="collect_state", targets=targets, name="drift-report"),
                affected_resources=targets,
                summary=_summary(len(drifted), "drifted assets", request.environment),
                rationale="Read-only drift inspection.",
                evidence={"drift": drift, "golden_image": golden},
            )
        operation = self.variant("remediate_drift", request.environment)
        simulation = outputs.get("simulate_rollout")
        return AgentPlan(
            phases=self.rollout_phases(
                request, toolbox, operation=operation, targets=drifted, params={"target_version": golden}
            ),
            affected_resources=drifted,
            summary=f"Converge {_summary(len(drifted), 'drifted assets', request.environment)} to {golden}",
            rationale="Canary first, then progressive waves with health gates and automatic rollback.",
            evidence={"drift": drift, "golden_image": golden, "simulation": simulation or {}},
        )


class PatchAgent(Agent):
    name = "patch"
    description = "Orchestrates patch rollouts across infrastructure."
    triggers = (
        TriggerPattern(r"\bpatch", 3),
        TriggerPattern(r"\b(upgrade|update)\b", 2),
        TriggerPattern(r"\bcve-\d{4}-\d+", 3),
        TriggerPattern(r"\bkernel\b", 1),
    )
    keywords = ("patch", "upgrade", "update", "cve", "kernel")
    tools = (
        "query_assets",
        "get_golden_image",
        "compare_versions",
        "generate_patch_plan",
        "generate_rollout_plan",
        "simulate_rollout",
        "calculate_risk_score",
        "apply_patch",
        "apply_patch_nonprod",
        "revert_patch",
        "revert_patch_nonprod",
    )
    guardrails = Guardrails(autonomy_mode="canary_only")

    def _is_rollout(self, text: str) -> bool:
        return self.wants_action(text) or not self.wants_report(text)

    def select_tools(self, text: str, context: dict[str, Any]) -> list[ToolCall]:
        environment = _env(context)
        calls = [
            ToolCall(tool="query_assets", args={"environment": environment}),
            ToolCall(tool="get_golden_image", args={"family": context.get("image_family", "base")}),
        ]
        if not self._is_rollout(text):
            calls.append(ToolCall(tool="collect_state"))
            return calls
        calls.extend(
            [
                ToolCall(tool="calculate_risk_score", args={"environment": environment, "asset_count": 0}),
                ToolCall(tool="generate_patch_plan", args={"environment": environment, "asset_ids": []}),
                ToolCall(tool=self.variant("apply_patch", environment)),
            ]
        )
        return calls

    def bind_args(self, call: ToolCall, outputs: dict[str, dict[str, Any]], request: PlanRequest) -> dict[str, Any]:
        targets = restrict_targets(asset_ids(outputs.get("query_assets")), request.context)
        if call.tool == "calculate_risk_score":
            return {**call.args, "asset_count": len(targets)}
        if call.tool == "generate_patch_plan":
            return {**call.args, "asset_ids": targets, "target_version": self._target_version(request, outputs)}
        return call.args

    @staticmethod
    def _target_version(request: PlanRequest, outputs: dict[str, dict[str, Any]]) -> str | None:
        return request.context.get("target_version") or outputs.get("get_golden_image", {}).get("version")

    def build_plan(self, request: PlanRequest, outputs: dict[str, dict[str, Any]], toolbox: Toolbox) -> AgentPlan:
        targets = restrict_targets(asset_ids(outputs.get("query_assets")), request.context)
        golden = self._target_version(request, outputs)
        if not self._is_rollout(request.text):
            return AgentPlan(
                phases=self.report_phase(toolbox, operation="collect_state", targets=targets, name="patch-inventory"),
                affected_resources=targets,
                summary=_summary(len(targets), "assets inventoried for patching", request.environment),
                evidence={"golden_image": golden},
            )
        risk = outputs.get("calculate_risk_score")
        patch_plan = outputs.get("generate_patch_plan")
        return AgentPlan(
            phases=self.rollout_phases(
                request,
                toolbox,
                operation=self.variant("apply_patch", request.environment),
                targets=targets,
                params={"target_version": golden},
            ),
            affected_resources=targets,
            summary=f"Patch {_summary(len(targets), 'assets', request.environment)} to {golden}",
            rationale="Canary wave validates the patch before progressive waves; every wave is health gated.",
            evidence={"risk_assessment": risk or {}, "patch_plan": patch_plan or {}, "golden_image": golden},
        )


class ComplianceAgent(Agent):
    name = "compliance"
    description = "Assesses compliance posture, gathers evidence and remediates failing controls."
    triggers = (
        TriggerPattern(r"\bcomplian", 3),
        TriggerPattern(r"\b(cis|soc ?2|pci|hipaa|nist)\b", 2),
        TriggerPattern(r"\bevidence\b", 2),
        TriggerPattern(r"\bcontrols?\b", 1),
    )
    keywords = ("compliance", "cis", "soc2", "evidence", "control", "audit")
    tools = (
        "query_assets",
        "get_compliance_status",
        "check_control",
        "generate_compliance_evidence",
        "remediate_control",
        "remediate_control_nonprod",
        "revert_control",
        "revert_control_nonprod",
    )

    def select_tools(self, text: str, context: dict[str, Any]) -> list[ToolCall]:
        environment = _env(context)
        framework = str(context.get("framework", "cis"))
        calls = [
            ToolCall(tool="query_assets", args={"environment": environment}),
            ToolCall(tool="get_compliance_status", args={"environment": environment, "framework": framework}),
        ]
        if context.get("control_id"):
            calls.append(
                ToolCall(tool="check_control", args={"environment": environment, "control_id": str(context["control_id"])})
            )
        if self.wants_action(text):
            calls.append(ToolCall(tool=self.variant("remediate_control", environment)))
        elif re.search(r"\bevidence\b", text, flags=re.IGNORECASE):
            calls.append(
                ToolCall(tool="generate_compliance_evidence", args={"environment": environment, "framework": framework})
            )
            calls.append(ToolCall(tool="publish_report"))
        else:
            calls.append(ToolCall(tool="collect_state"))
        return calls

    def build_plan(self, request: PlanRequest, outputs: dict[str, dict[str, Any]], toolbox: Toolbox) -> AgentPlan:
        status = outputs.get("get_compliance_status", {})
        failing_map: dict[str, list[str]] = status.get("failing_controls", {})
        if "check_control" in outputs:
            failing = list(outputs["check_control"].get("failing", []))
        else:
            failing = sorted({asset for assets in failing_map.values() for asset in assets})
        failing = restrict_targets(failing, request.context)
        if self.wants_action(request.text):
            return AgentPlan(
                phases=self.rollout_phases(
                    request,
                    toolbox,
                    operation=self.variant("remediate_control", request.environment),
                    targets=failing,
                    params={"control_id": request.context.get("control_id")},
                ),
                affected_resources=failing,
                summary=f"Remediate {_summary(len(failing), 'non-compliant assets', request.environment)}",
                rationale="Control fixes are rolled out canary-first so a bad fix is caught early.",
                evidence={"compliance": status},
            )
        if "generate_compliance_evidence" in outputs:
            report = f"evidence:{request.environment}:{status.get('framework', 'cis')}"
            return AgentPlan(
                phases=self.report_phase(toolbox, operation="publish_report", targets=[report], name="evidence-package"),
                affected_resources=[report],
                summary=f"Evidence package for {status.get('framework', 'cis')} in {request.environment}",
                evidence={"compliance": status, "evidence": outputs["generate_compliance_evidence"]},
            )
        targets = failing or restrict_targets(asset_ids(outputs.get("query_assets")), request.context)
        return AgentPlan(
            phases=self.report_phase(toolbox, operation="collect_state", targets=targets, name="compliance-report"),
            affected_resources=targets,
            summary=f"Compliance score {status.get('score', 'n/a')} in {request.environment}",
            evidence={"compliance": status},
        )


class IncidentAgent(Agent):
    name = "incident"
    description = "Investigates incidents across alerts, drift and compliance signals."
    triggers = (
        TriggerPattern(r"\bincident", 3),
        TriggerPattern(r"\boutage", 3),
        TriggerPattern(r"\balerts?\b", 2),
        TriggerPattern(r"\b(sev|p)[0-4]\b", 2),
        TriggerPattern(r"\broot cause", 2),
        TriggerPattern(r"\b(isolate|quarantine)", 2),
    )
    keywords = ("incident", "outage", "alert", "sev1", "investigate", "quarantine")
    tools = (
        "query_assets",
        "query_alerts",
        "get_drift_status",
        "get_compliance_status",
        "quarantine_asset",
        "quarantine_asset_nonprod",
        "release_asset",
        "release_asset_nonprod",
    )

    def select_tools(self, text: str, context: dict[str, Any]) -> list[ToolCall]:
        environment = _env(context)
        calls = [
            ToolCall(tool="query_alerts", args={"environment": environment}),
            ToolCall(tool="get_drift_status", args={"environment": environment}),
            ToolCall(tool="get_compliance_status", args={"environment": environment}),
        ]
        if re.search(r"\b(isolate|quarantine)", text, flags=re.IGNORECASE):
            calls.append(ToolCall(tool=self.variant("quarantine_asset", environment)))
        else:
            calls.append(ToolCall(tool="collect_state"))
        return calls

    def build_plan(self, request: PlanRequest, outputs: dict[str, dict[str, Any]], toolbox: Toolbox) -> AgentPlan:
        alerts = outputs.get("query_alerts", {}).get("alerts", [])
        alerting = restrict_targets(sorted({alert["asset_id"] for alert in alerts}), request.context)
        evidence = {
            "alerts": alerts,
            "drift": outputs.get("get_drift_status", {}),
            "compliance": outputs.get("get_compliance_status", {}),
        }
        if re.search(r"\b(isolate|quarantine)", request.text, flags=re.IGNORECASE):
            return AgentPlan(
                phases=self.rollout_phases(
                    request,
                    toolbox,
                    operation=self.variant("quarantine_asset", request.environment),
                    targets=alerting,
                ),
                affected_resources=alerting,
                summary=f"Quarantine {_summary(len(alerting), 'alerting assets', request.environment)}",
                evidence=evidence,
            )
        targets = alerting or list(evidence["drift"].get("drifted", []))
        return AgentPlan(
            phases=self.report_phase(toolbox, operation="collect_state", targets=targets, name="incident-snapshot"),
            affected_resources=targets,
            summary=f"{len(alerts)} open alerts in {request.environment}",
            rationale="Snapshot of suspect assets for triage.",
            evidence=evidence,
        )


class DisasterRecoveryAgent(Agent):
    name = "dr"
    description = "Plans, simulates and executes disaster-recovery failovers."
    triggers = (
        TriggerPattern(r"\bdisaster recovery\b", 3),
        TriggerPattern(r"\bdr\b", 3),
        TriggerPattern(r"\bfail ?over", 3),
        TriggerPattern(r"\bfailback\b", 2),
        TriggerPattern(r"\b(rpo|rto)\b", 2),
    )
    keywords = ("dr", "failover", "recovery", "rpo", "rto", "replica")
    tools = (
        "query_assets",
        "get_dr_status",
        "generate_dr_runbook",
        "simulate_failover",
        "execute_failover",
        "execute_failover_nonprod",
        "execute_failback",
        "execute_failback_nonprod",
    )

    def _mode(self, text: str) -> str:
        lowered = text.lower()
        if re.search(r"\b(execute|perform|trigger|initiate)\b", lowered):
            return "execute"
        if re.search(r"\b(simulate|drill|runbook|plan)\b", lowered):
            return "plan"
        return "status"

    def select_tools(self, text: str, context: dict[str, Any]) -> list[ToolCall]:
        environment = _env(context)
        calls = [ToolCall(tool="get_dr_status", args={"environment": environment})]
        mode = self._mode(text)
        if mode == "execute":
            calls.append(ToolCall(tool=self.variant("execute_failover", environment)))
        elif mode == "plan":
            calls.append(ToolCall(tool="generate_dr_runbook", args={"environment": environment, "asset_ids": []}))
            calls.append(ToolCall(tool="simulate_failover", args={"environment": environment, "asset_ids": []}))
            calls.append(ToolCall(tool="publish_report"))
        else:
            calls.append(ToolCall(tool="collect_state"))
        return calls

    def bind_args(self, call: ToolCall, outputs: dict[str, dict[str, Any]], request: PlanRequest) -> dict[str, Any]:
        if call.tool in {"generate_dr_runbook", "simulate_failover"}:
            protected = restrict_targets(list(outputs.get("get_dr_status", {}).get("protected", [])), request.context)
            return {**call.args, "asset_ids": protected}
        return call.args

    def build_plan(self, request: PlanRequest, outputs: dict[str, dict[str, Any]], toolbox: Toolbox) -> AgentPlan:
        status = outputs.get("get_dr_status", {})
        protected = restrict_targets(list(status.get("protected", [])), request.context)
        mode = self._mode(request.text)
        if mode == "execute":
            return AgentPlan(
                phases=self.rollout_phases(
                    request, toolbox, operation=self.variant("execute_failover", request.environment), targets=protected
                ),
                affected_resources=protected,
                summary=f"Fail over {_summary(len(protected), 'protected assets', request.environment)}",
                evidence={"dr_status": status},
            )
        if mode == "plan":
            runbook = outputs.get("generate_dr_runbook")
            simulation = outputs.get("simulate_failover")
            report = f"dr-runbook:{request.environment}"
            return AgentPlan(
                phases=self.report_phase(toolbox, operation="publish_report", targets=[report], name="dr-runbook"),
                affected_resources=[report],
                summary=f"DR runbook covering {len(protected)} assets in {request.environment}",
                evidence={"dr_status": status, "runbook": runbook or {}, "simulation": simulation or {}},
            )
        targets = protected + list(status.get("unprotected", []))
        return AgentPlan(
            phases=self.report_phase(toolbox, operation="collect_state", targets=sorted(targets), name="dr-status"),
            affected_resources=sorted(targets),
            summary=f"{len(status.get('unprotected', []))} assets without a replica in {request.environment}",
            evidence={"dr_status": status},
        )


class CostAgent(Agent):
    name = "cost"
    description = "Analyzes spend and rightsizes underutilized assets."
    triggers = (
        TriggerPattern(r"\bcosts?\b", 3),
        TriggerPattern(r"\bspend", 2),
        TriggerPattern(r"\bbudget", 2),
        TriggerPattern(r"\b(rightsiz|right-siz|underutiliz|idle)", 2),
        TriggerPattern(r"\bfinops\b", 3),
    )
    keywords = ("cost", "spend", "budget", "rightsize", "finops", "idle")
    tools = (
        "query_assets",
        "summarize_cost",
        "rightsize_instance",
        "rightsize_instance_nonprod",
        "restore_instance_size",
        "restore_instance_size_nonprod",
    )

    def _applies(self, text: str) -> bool:
        return self.wants_action(text) and re.search(r"\b(rightsiz|right-siz|resize|downsize)", text, flags=re.IGNORECASE) is not None

    def select_tools(self, text: str, context: dict[str, Any]) -> list[ToolCall]:
        environment = _env(context)
        calls = [ToolCall(tool="summarize_cost", args={"environment": environment})]
        if self._applies(text):
            calls.append(ToolCall(tool=self.variant("rightsize_instance", environment)))
        else:
            calls.append(ToolCall(tool="publish_report"))
        return calls

    def build_plan(self, request: PlanRequest, outputs: dict[str, dict[str, Any]], toolbox: Toolbox) -> AgentPlan:
        report = outputs.get("summarize_cost", {})
        idle = restrict_targets(list(report.get("underutilized", [])), request.context)
        if self._applies(request.text):
            return AgentPlan(
                phases=self.rollout_phases(
                    request, toolbox, operation=self.variant("rightsize_instance", request.environment), targets=idle
                ),
                affected_resources=idle,
                summary=f"Rightsize {_summary(len(idle), 'underutilized assets', request.environment)}",
                evidence={"cost": report},
            )
        target = f"cost-report:{request.environment}"
        return AgentPlan(
            phases=self.report_phase(toolbox, operation="publish_report", targets=[target], name="cost-report"),
            affected_resources=[target],
            summary=f"Monthly spend {report.get('monthly_cost', 0)} with {len(idle)} idle assets",
            evidence={"cost": report},
        )


class SecurityAgent(Agent):
    name = "security"
    description = "Produces security posture assessments."
    triggers = (
        TriggerPattern(r"\bsecurity\b", 3),
        TriggerPattern(r"\bvulnerab", 3),
        TriggerPattern(r"\bthreat", 2),
        TriggerPattern(r"\bexposure\b", 2),
        TriggerPattern(r"\bhardening\b", 1),
    )
    keywords = ("security", "vulnerability", "threat", "exposure", "hardening")
    tools = ("query_assets", "get_compliance_status", "query_alerts")

    def select_tools(self, text: str, context: dict[str, Any]) -> list[ToolCall]:
        environment = _env(context)
        return [
            ToolCall(tool="query_assets", args={"environment": environment}),
            ToolCall(tool="get_compliance_status", args={"environment": environment}),
            ToolCall(tool="query_alerts", args={"environment": environment}),
            ToolCall(tool="publish_report"),
        ]

    def build_plan(self, request: PlanRequest, outputs: dict[str, dict[str, Any]], toolbox: Toolbox) -> AgentPlan:
        compliance = outputs.get("get_compliance_status", {})
        alerts = outputs.get("query_alerts", {}).get("alerts", [])
        target = f"security-assessment:{request.environment}"
        return AgentPlan(
            phases=self.report_phase(toolbox, operation="publish_report", targets=[target], name="security-assessment"),
            affected_resources=[target],
            summary=f"Security assessment: {len(alerts)} alerts, compliance score {compliance.get('score', 'n/a')}",
            evidence={"compliance": compliance, "alerts": alerts},
        )


class ImageAgent(Agent):
    name = "image"
    description = "Builds, promotes and rolls out golden images."
    triggers = (
        TriggerPattern(r"\bimages?\b", 2),
        TriggerPattern(r"\bami\b", 2),
        TriggerPattern(r"\bpacker\b", 3),
        TriggerPattern(r"\bansible\b", 2),
        TriggerPattern(r"\b(bake|build)\b", 1),
        TriggerPattern(r"\bpromote\b", 2),
    )
    keywords = ("image", "ami", "packer", "ansible", "bake", "promote")
    tools = (
        "get_golden_image",
        "list_image_versions",
        "generate_image_contract",
        "generate_packer_template",
        "generate_ansible_playbook",
        "query_assets",
        "build_image",
        "discard_image_build",
        "promote_image",
        "promote_image_nonprod",
        "demote_image",
        "demote_image_nonprod",
    )

    def _mode(self, text: str) -> str:
        lowered = text.lower()
        if "promote" in lowered:
            return "promote"
        if re.search(r"\b(build|bake)\b", lowered):
            return "build"
        if self.wants_report(lowered):
            return "inspect"
        return "design"

    def select_tools(self, text: str, context: dict[str, Any]) -> list[ToolCall]:
        environment = _env(context)
        family = str(context.get("image_family", "base"))
        platform = str(context.get("platform", "aws"))
        mode = self._mode(text)
        artifacts = [
            ToolCall(tool="generate_image_contract", args={"family": family, "platform": platform}),
            ToolCall(tool="generate_packer_template", args={"family": family, "platform": platform}),
            ToolCall(tool="generate_ansible_playbook", args={"family": family, "platform": platform}),
        ]
        if mode == "promote":
            return [
                ToolCall(tool="list_image_versions", args={"family": family}),
                ToolCall(tool="query_assets", args={"environment": environment}),
                ToolCall(tool=self.variant("promote_image", environment)),
            ]
        if mode == "build":
            return artifacts + [ToolCall(tool="build_image")]
        if mode == "inspect":
            return [
                ToolCall(tool="get_golden_image", args={"family": family}),
                ToolCall(tool="list_image_versions", args={"family": family}),
                ToolCall(tool="collect_state"),
            ]
        return artifacts + [ToolCall(tool="publish_report")]

    def build_plan(self, request: PlanRequest, outputs: dict[str, dict[str, Any]], toolbox: Toolbox) -> AgentPlan:
        family = str(request.context.get("image_family", "base"))
        mode = self._mode(request.text)
        if mode == "promote":
            versions = outputs.get("list_image_versions", {}).get("versions", [])
            version = request.context.get("target_version") or (versions[-1] if versions else None)
            targets = restrict_targets(asset_ids(outputs.get("query_assets")), request.context)
            return AgentPlan(
                phases=self.rollout_phases(
                    request,
                    toolbox,
                    operation=self.variant("promote_image", request.environment),
                    targets=targets,
                    params={"target_version": version},
                ),
                affected_resources=targets,
                summary=f"Roll image {family}:{version} onto {len(targets)} assets in {request.environment}",
                evidence={"versions": versions},
            )
        artifacts = {
            key: outputs[key]
            for key in ("generate_image_contract", "generate_packer_template", "generate_ansible_playbook")
            if key in outputs
        }
        if mode == "build":
            target = f"image-build:{family}"
            return AgentPlan(
                phases=self.report_phase(toolbox, operation="build_image", targets=[target], name="image-build"),
                affected_resources=[target],
                summary=f"Build image family {family} in the build account",
                evidence=artifacts,
            )
        if mode == "inspect":
            target = f"image:{family}"
            return AgentPlan(
                phases=self.report_phase(toolbox, operation="collect_state", targets=[target], name="image-versions"),
                affected_resources=[target],
                summary=f"Golden image {family}: {outputs.get('get_golden_image', {}).get('version')}",
                evidence={"versions": outputs.get("list_image_versions", {})},
            )
        target = f"image-design:{family}"
        return AgentPlan(
            phases=self.report_phase(toolbox, operation="publish_report", targets=[target], name="image-design"),
            affected_resources=[target],
            summary=f"Image contract and build templates for {family}",
            evidence=artifacts,
        )


class SopAgent(Agent):
    name = "sop"
    description = "Authors, validates and runs standard operating procedures."
    triggers = (
        TriggerPattern(r"\bsops?\b", 3),
        TriggerPattern(r"\bstandard operating procedure", 3),
        TriggerPattern(r"\bprocedure\b", 2),
    )
    keywords = ("sop", "procedure", "runbook")
    tools = (
        "generate_sop",
        "validate_sop",
        "simulate_sop",
        "list_sops",
        "query_assets",
        "execute_sop",
        "execute_sop_nonprod",
        "revert_sop",
        "revert_sop_nonprod",
    )

    def _steps(self, context: dict[str, Any]) -> list[str]:
        steps = context.get("steps")
        return [str(step) for step in steps] if isinstance(steps, list) else []

    def select_tools(self, text: str, context: dict[str, Any]) -> list[ToolCall]:
        environment = _env(context)
        title = str(context.get("sop", context.get("title", "procedure")))
        steps = self._steps(context)
        if re.search(r"\blist\b", text, flags=re.IGNORECASE):
            return [ToolCall(tool="list_sops", args={}), ToolCall(tool="collect_state")]
        if self.wants_action(text):
            return [
                ToolCall(tool="validate_sop", args={"title": title, "steps": steps}),
                ToolCall(tool="simulate_sop", args={"title": title, "steps": steps}),
                ToolCall(tool="query_assets", args={"environment": environment}),
                ToolCall(tool=self.variant("execute_sop", environment)),
            ]
        return [
            ToolCall(tool="generate_sop", args={"title": title, "steps": steps}),
            ToolCall(tool="validate_sop", args={"title": title, "steps": steps}),
            ToolCall(tool="publish_report"),
        ]

    def build_plan(self, request: PlanRequest, outputs: dict[str, dict[str, Any]], toolbox: Toolbox) -> AgentPlan:
        title = str(request.context.get("sop", request.context.get("title", "procedure")))
        if "list_sops" in outputs:
            return AgentPlan(
                phases=self.report_phase(toolbox, operation="collect_state", targets=["sop-library"], name="sop-library"),
                affected_resources=["sop-library"],
                summary=f"{len(outputs['list_sops'].get('sops', []))} procedures available",
                evidence=outputs["list_sops"],
            )
        validation = outputs.get("validate_sop", {})
        if self.wants_action(request.text):
            targets = restrict_targets(asset_ids(outputs.get("query_assets")), request.context)
            return AgentPlan(
                phases=self.rollout_phases(
                    request,
                    toolbox,
                    operation=self.variant("execute_sop", request.environment),
                    targets=targets,
                    params={"runbook": title},
                ),
                affected_resources=targets,
                summary=f"Run '{title}' on {len(targets)} assets in {request.environment}",
                evidence={"validation": validation, "simulation": outputs.get("simulate_sop", {}), "steps": self._steps(request.context)},
            )
        target = f"sop:{title}"
        return AgentPlan(
            phases=self.report_phase(toolbox, operation="publish_report", targets=[target], name="sop-draft"),
            affected_resources=[target],
            summary=f"Draft procedure '{title}'",
            evidence={"sop": outputs.get("generate_sop", {}), "validation": validation},
        )


class AdapterAgent(Agent):
    name = "adapter"
    description = "Inspects platform connectors and the inventory they feed."
    triggers = (
        TriggerPattern(r"\badapters?\b", 3),
        TriggerPattern(r"\bconnectors?\b", 2),
        TriggerPattern(r"\binventory\b", 2),
        TriggerPattern(r"\bplatform (mapping|support)\b", 2),
    )
    keywords = ("adapter", "connector", "inventory", "platform")
    tools = ("query_assets", "get_golden_image")

    def select_tools(self, text: str, context: dict[str, Any]) -> list[ToolCall]:
        return [
            ToolCall(tool="query_assets", args={"environment": _env(context)}),
            ToolCall(tool="get_golden_image", args={"family": context.get("image_family", "base")}),
            ToolCall(tool="collect_state"),
        ]

    def build_plan(self, request: PlanRequest, outputs: dict[str, dict[str, Any]], toolbox: Toolbox) -> AgentPlan:
        assets = outputs.get("query_assets", {}).get("assets", [])
        platforms = sorted({item["platform"] for item in assets})
        targets = [f"connector:{platform}" for platform in platforms]
        return AgentPlan(
            phases=self.report_phase(toolbox, operation="collect_state", targets=targets, name="connector-inventory"),
            affected_resources=targets,
            summary=f"{len(assets)} assets across {len(platforms)} platforms in {request.environment}",
            evidence={"platforms": platforms},
        )


SPECIALISTS: tuple[type[Agent], ...] = (
    DriftAgent,
    PatchAgent,
    ComplianceAgent,
    IncidentAgent,
    DisasterRecoveryAgent,
    CostAgent,
    SecurityAgent,
    ImageAgent,
    SopAgent,
    AdapterAgent,
)
