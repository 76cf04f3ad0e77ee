"""Deterministic capability implementations over the asset inventory."""

from __future__ import annotations

from change_orchestrator.capabilities.inventory import (
    InventoryProvider,
    is_production,
    normalize_environment,
)
from change_orchestrator.capabilities.schemas import (
    AlertsOutput,
    ArtifactOutput,
    AssetSummary,
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

ENVIRONMENT_RISK = {"production": 40, "staging": 20, "development": 5}
SOP_LIBRARY = ("restart-service", "rotate-certificates", "drain-node", "clear-cache")
DANGEROUS_SOP_MARKERS = ("rm -rf /", "drop database", "truncate table", "mkfs")


def query_assets(payload: QueryAssetsInput, *, inventory: InventoryProvider) -> QueryAssetsOutput:
    target_env = normalize_environment(payload.environment)
    matches = []
    for asset in sorted(inventory.list_assets(), key=lambda item: item.asset_id):
        if target_env and normalize_environment(asset.environment) != target_env:
            continue
        if payload.platform and asset.platform != payload.platform:
            continue
        if payload.state and asset.state != payload.state:
            continue
        matches.append(
            AssetSummary(
                asset_id=asset.asset_id,
                platform=asset.platform,
                environment=asset.environment,
                image_version=asset.image_version,
            )
        )
    limited = matches[: payload.limit]
    return QueryAssetsOutput(assets=limited, count=len(limited))


def get_golden_image(payload: GetGoldenImageInput, *, inventory: InventoryProvider) -> GoldenImageOutput:
    return GoldenImageOutput(family=payload.family, version=inventory.golden_version(payload.family))


def get_drift_status(payload: EnvironmentInput, *, inventory: InventoryProvider) -> DriftStatusOutput:
    target_env = normalize_environment(payload.environment)
    assets = [
        asset
        for asset in inventory.list_assets()
        if normalize_environment(asset.environment) == target_env
    ]
    drifted: list[str] = []
    for asset in assets:
        golden = inventory.golden_version(asset.image_family)
        if golden and asset.image_version != golden:
            drifted.append(asset.asset_id)
    drifted.sort()
    ratio = round(len(drifted) / len(assets), 4) if assets else 0.0
    return DriftStatusOutput(
        environment=target_env or payload.environment,
        total=len(assets),
        drifted=drifted,
        drift_ratio=ratio,
    )


def compare_versions(payload: CompareVersionsInput, **_: object) -> CompareVersionsOutput:
    current = _version_tuple(payload.current)
    target = _version_tuple(payload.target)
    if current >= target:
        return CompareVersionsOutput(outdated=False, delta="none")
    if current[0] != target[0]:
        delta = "major"
    elif current[1] != target[1]:
        delta = "minor"
    else:
        delta = "patch"
    return CompareVersionsOutput(outdated=True, delta=delta)


def generate_patch_plan(payload: GeneratePatchPlanInput, **_: object) -> PatchPlanOutput:
    steps = [
        "pre-flight: verify connectivity, disk space and backup status",
        f"apply image {payload.target_version or 'latest'} to {len(payload.asset_ids)} assets",
        "post-apply: service health checks",
    ]
    return PatchPlanOutput(
        asset_ids=sorted(payload.asset_ids),
        target_version=payload.target_version,
        steps=steps,
    )


def generate_rollout_plan(payload: GenerateRolloutPlanInput, **_: object) -> RolloutPlanOutput:
    return RolloutPlanOutput(
        waves=split_waves(payload.asset_ids, payload.canary_fraction, payload.wave_fraction)
    )


def split_waves(
    asset_ids: list[str], canary_fraction: float, wave_fraction: float
) -> list[list[str]]:
    """Split assets into canary, one intermediate wave and the remainder."""
    ordered = list(asset_ids)
    total = len(ordered)
    if total == 0:
        return []
    if total == 1:
        return [ordered]
    canary = max(1, int(total * canary_fraction))
    mid = max(1, int(total * wave_fraction))
    if canary + mid >= total:
        return [ordered[:canary], ordered[canary:]]
    return [ordered[:canary], ordered[canary : canary + mid], ordered[canary + mid :]]


def simulate_rollout(payload: SimulateRolloutInput, **_: object) -> SimulationOutput:
    penalty = ENVIRONMENT_RISK.get(normalize_environment(payload.environment) or "", 10) / 400
    probability = max(0.5, round(0.99 - penalty - payload.asset_count * 0.001, 3))
    notes = []
    if payload.wave_count == 1 and payload.asset_count > 1:
        notes.append("single wave rollout has no canary stage")
    return SimulationOutput(
        success_probability=probability,
        estimated_minutes=5 + payload.asset_count * 2 + payload.wave_count * 10,
        notes=notes,
    )


def calculate_risk_score(payload: CalculateRiskScoreInput, **_: object) -> RiskScoreOutput:
    factors = score_factors(payload.environment, payload.asset_count)
    score = min(100, sum(factors.values()))
    return RiskScoreOutput(risk_score=score, risk_level=risk_level(score), factors=factors)


def score_factors(environment: str, asset_count: int) -> dict[str, int]:
    if asset_count > 100:
        blast = 25
    elif asset_count > 50:
        blast = 15
    elif asset_count > 10:
        blast = 10
    else:
        blast = 0
    return {
        "base": 20,
        "environment": ENVIRONMENT_RISK.get(normalize_environment(environment) or "", 10),
        "blast_radius": blast,
    }


def risk_level(score: int) -> str:
    if score >= 70:
        return "critical"
    if score >= 50:
        return "high"
    if score >= 30:
        return "medium"
    return "low"


def get_compliance_status(
    payload: ComplianceStatusInput, *, inventory: InventoryProvider
) -> ComplianceStatusOutput:
    target_env = normalize_environment(payload.environment)
    failing: dict[str, list[str]] = {}
    total = 0
    for asset in inventory.list_assets():
        if normalize_environment(asset.environment) != target_env:
            continue
        total += 1
        for control in asset.failing_controls:
            failing.setdefault(control, []).append(asset.asset_id)
    non_compliant = {asset_id for assets in failing.values() for asset_id in assets}
    score = round(100.0 * (total - len(non_compliant)) / total, 2) if total else 100.0
    return ComplianceStatusOutput(
        framework=payload.framework,
        score=score,
        failing_controls={key: sorted(value) for key, value in sorted(failing.items())},
    )


def check_control(payload: CheckControlInput, *, inventory: InventoryProvider) -> CheckControlOutput:
    target_env = normalize_environment(payload.environment)
    passing: list[str] = []
    failing: list[str] = []
    for asset in inventory.list_assets():
        if normalize_environment(asset.environment) != target_env:
            continue
        if payload.control_id in asset.failing_controls:
            failing.append(asset.asset_id)
        else:
            passing.append(asset.asset_id)
    return CheckControlOutput(
        control_id=payload.control_id, passing=sorted(passing), failing=sorted(failing)
    )


def generate_compliance_evidence(
    payload: ComplianceStatusInput, *, inventory: InventoryProvider
) -> ComplianceEvidenceOutput:
    status = get_compliance_status(payload, inventory=inventory)
    evidence = [
        {"control_id": control, "failing_assets": assets}
        for control, assets in status.failing_controls.items()
    ]
    return ComplianceEvidenceOutput(
        framework=payload.framework,
        environment=payload.environment,
        controls_checked=len(evidence),
        evidence=evidence,
    )


def query_alerts(payload: QueryAlertsInput, *, inventory: InventoryProvider) -> AlertsOutput:
    target_env = normalize_environment(payload.environment)
    alerts: list[dict[str, str]] = []
    for asset in sorted(inventory.list_assets(), key=lambda item: item.asset_id):
        if normalize_environment(asset.environment) != target_env:
            continue
        for alert in asset.open_alerts:
            severity, _, title = alert.partition(":")
            if payload.severity and severity != payload.severity:
                continue
            alerts.append({"asset_id": asset.asset_id, "severity": severity, "title": title})
    return AlertsOutput(alerts=alerts)


def get_dr_status(payload: EnvironmentInput, *, inventory: InventoryProvider) -> DrStatusOutput:
    target_env = normalize_environment(payload.environment)
    protected: list[str] = []
    unprotected: list[str] = []
    for asset in inventory.list_assets():
        if normalize_environment(asset.environment) != target_env:
            continue
        (protected if asset.dr_replica else unprotected).append(asset.asset_id)
    return DrStatusOutput(
        environment=payload.environment,
        protected=sorted(protected),
        unprotected=sorted(unprotected),
    )


def generate_dr_runbook(payload: ResourceListInput, **_: object) -> RunbookOutput:
    return RunbookOutput(
        title=f"DR failover runbook ({payload.environment})",
        steps=[
            "confirm replica lag within RPO",
            f"promote replicas for {len(payload.asset_ids)} assets",
            "repoint traffic to the recovery site",
            "verify application health at the recovery site",
        ],
    )


def simulate_failover(payload: ResourceListInput, **_: object) -> SimulationOutput:
    prod = is_production(payload.environment)
    return SimulationOutput(
        success_probability=0.9 if prod else 0.97,
        estimated_minutes=10 + 3 * len(payload.asset_ids),
        notes=["production failover requires a maintenance window"] if prod else [],
    )


def list_image_versions(payload: ImageFamilyInput, *, inventory: InventoryProvider) -> ImageVersionsOutput:
    return ImageVersionsOutput(family=payload.family, versions=inventory.image_versions(payload.family))


def generate_image_contract(payload: GenerateImageArtifactInput, **_: object) -> ArtifactOutput:
    return ArtifactOutput(
        artifact_type="image_contract",
        family=payload.family,
        content={
            "family": payload.family,
            "platform": payload.platform,
            "hardening": ["cis-level-1"],
            "required_packages": ["openssh-server", "chrony"],
        },
    )


def generate_packer_template(payload: GenerateImageArtifactInput, **_: object) -> ArtifactOutput:
    return ArtifactOutput(
        artifact_type="packer_template",
        family=payload.family,
        content={
            "builders": [{"type": f"{payload.platform}-image", "name": payload.family}],
            "provisioners": [{"type": "ansible", "playbook_file": f"{payload.family}.yml"}],
        },
    )


def generate_ansible_playbook(payload: GenerateImageArtifactInput, **_: object) -> ArtifactOutput:
    return ArtifactOutput(
        artifact_type="ansible_playbook",
        family=payload.family,
        content={"hosts": "all", "roles": ["baseline", "hardening"]},
    )


def generate_sop(payload: SopInput, **_: object) -> SopOutput:
    steps = payload.steps or ["announce change", "execute procedure", "verify outcome"]
    return SopOutput(title=payload.title, steps=steps)


def validate_sop(payload: SopInput, **_: object) -> SopValidationOutput:
    issues: list[str] = []
    if not payload.steps:
        issues.append("procedure has no steps")
    for step in payload.steps:
        lowered = step.lower()
        for marker in DANGEROUS_SOP_MARKERS:
            if marker in lowered:
                issues.append(f"dangerous step: {step}")
    return SopValidationOutput(valid=not issues, issues=issues)


def simulate_sop(payload: SopInput, **_: object) -> SimulationOutput:
    return SimulationOutput(
        success_probability=0.95,
        estimated_minutes=max(1, len(payload.steps)) * 3,
    )


def list_sops(_: ListSopsInput, **__: object) -> ListSopsOutput:
    return ListSopsOutput(sops=list(SOP_LIBRARY))


def summarize_cost(payload: EnvironmentInput, *, inventory: InventoryProvider) -> CostReportOutput:
    target_env = normalize_environment(payload.environment)
    total = 0.0
    underutilized: list[str] = []
    for asset in inventory.list_assets():
        if normalize_environment(asset.environment) != target_env:
            continue
        total += asset.monthly_cost
        if asset.cpu_utilization < 10.0:
            underutilized.append(asset.asset_id)
    return CostReportOutput(
        environment=payload.environment,
        monthly_cost=round(total, 2),
        underutilized=sorted(underutilized),
    )


def _version_tuple(raw: str) -> tuple[int, int, int]:
    parts = [part for part in raw.lstrip("v").split(".") if part]
    numbers: list[int] = []
    for part in parts[:3]:
        digits = "".join(ch for ch in part if ch.isdigit())
        numbers.append(int(digits) if digits else 0)
    while len(numbers) < 3:
        numbers.append(0)
    return numbers[0], numbers[1], numbers[2]
