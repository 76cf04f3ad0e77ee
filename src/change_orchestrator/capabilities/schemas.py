"""Strict Pydantic schemas for capability inputs and outputs."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class StrictModel(BaseModel):
    """Base model for strict schema validation."""

    model_config = ConfigDict(extra="forbid")


class EnvironmentInput(StrictModel):
    environment: str


class QueryAssetsInput(StrictModel):
    environment: str | None = None
    platform: str | None = None
    state: str = "running"
    limit: int = Field(default=500, ge=1, le=10000)


class AssetSummary(StrictModel):
    asset_id: str
    platform: str
    environment: str
    image_version: str


class QueryAssetsOutput(StrictModel):
    assets: list[AssetSummary]
    count: int


class GetGoldenImageInput(StrictModel):
    family: str = "base"
    environment: str | None = None


class GoldenImageOutput(StrictModel):
    family: str
    version: str | None


class DriftStatusOutput(StrictModel):
    environment: str
    total: int
    drifted: list[str]
    drift_ratio: float


class CompareVersionsInput(StrictModel):
    current: str
    target: str


class CompareVersionsOutput(StrictModel):
    outdated: bool
    delta: Literal["none", "patch", "minor", "major"]


class GeneratePatchPlanInput(StrictModel):
    environment: str
    asset_ids: list[str]
    target_version: str | None = None


class PatchPlanOutput(StrictModel):
    asset_ids: list[str]
    target_version: str | None
    steps: list[str]


class GenerateRolloutPlanInput(StrictModel):
    asset_ids: list[str]
    canary_fraction: float = Field(default=0.10, gt=0.0, le=1.0)
    wave_fraction: float = Field(default=0.25, gt=0.0, le=1.0)


class RolloutPlanOutput(StrictModel):
    waves: list[list[str]]


class SimulateRolloutInput(StrictModel):
    environment: str
    asset_count: int = Field(ge=0)
    wave_count: int = Field(default=1, ge=1)


class SimulationOutput(StrictModel):
    success_probability: float
    estimated_minutes: int
    notes: list[str] = Field(default_factory=list)


class CalculateRiskScoreInput(StrictModel):
    environment: str
    asset_count: int = Field(ge=0)


class RiskScoreOutput(StrictModel):
    risk_score: int
    risk_level: Literal["low", "medium", "high", "critical"]
    factors: dict[str, int]


class ComplianceStatusInput(StrictModel):
    environment: str
    framework: str = "cis"


class ComplianceStatusOutput(StrictModel):
    framework: str
    score: float
    failing_controls: dict[str, list[str]]


class CheckControlInput(StrictModel):
    control_id: str
    environment: str


class CheckControlOutput(StrictModel):
    control_id: str
    passing: list[str]
    failing: list[str]


class ComplianceEvidenceOutput(StrictModel):
    framework: str
    environment: str
    controls_checked: int
    evidence: list[dict[str, Any]]


class QueryAlertsInput(StrictModel):
    environment: str
    severity: str | None = None


class AlertsOutput(StrictModel):
    alerts: list[dict[str, str]]


class DrStatusOutput(StrictModel):
    environment: str
    protected: list[str]
    unprotected: list[str]


class ResourceListInput(StrictModel):
    environment: str
    asset_ids: list[str]


class RunbookOutput(StrictModel):
    title: str
    steps: list[str]


class ImageFamilyInput(StrictModel):
    family: str = "base"


class ImageVersionsOutput(StrictModel):
    family: str
    versions: list[str]


class GenerateImageArtifactInput(StrictModel):
    family: str = "base"
    platform: str = "aws"


class ArtifactOutput(StrictModel):
    artifact_type: str
    family: str
    content: dict[str, Any]


class SopInput(StrictModel):
    title: str
    steps: list[str] = Field(default_factory=list)


class SopOutput(StrictModel):
    title: str
    steps: list[str]


class SopValidationOutput(StrictModel):
    valid: bool
    issues: list[str]


class ListSopsInput(StrictModel):
    pass


class ListSopsOutput(StrictModel):
    sops: list[str]


class CostReportOutput(StrictModel):
    environment: str
    monthly_cost: float
    underutilized: list[str]


class ApplyParams(StrictModel):
    """Parameters accepted by state-changing capabilities applied through connectors."""

    target_version: str | None = None
    control_id: str | None = None
    runbook: str | None = None
    notes: str | None = None
