"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "change-orchestrator"
    app_env: str = "dev"
    app_debug: bool = False
    log_level: str = "INFO"
    database_url: str = ""
    trace_base_path: str = "/tasks"

    # Intent resolution.
    resolver_mode: str = "deterministic"
    llm_provider: str = "openai"
    llm_model: str = "gpt-4o-mini"
    llm_base_url: str = "https://api.openai.com/v1"
    llm_timeout_s: float = Field(default=8.0, ge=0.5)
    llm_max_retries: int = Field(default=1, ge=0)
    llm_backoff_s: float = Field(default=0.2, ge=0.0)
    openai_api_key: str = ""
    inventory_path: str = ""

    # Capability gateway.
    tool_timeout_s: float = Field(default=2.0, ge=0.01)
    tool_max_retries: int = Field(default=1, ge=0)
    tool_retry_backoff_s: float = Field(default=0.0, ge=0.0)

    # Approval gate.
    approval_timeout_s: float = Field(default=86400.0, gt=0.0)
    plan_only_min_quality: float = Field(default=60.0, ge=0.0, le=100.0)
    prod_min_quality: float = Field(default=80.0, ge=0.0, le=100.0)
    prod_required_approvals: int = Field(default=2, ge=1)
    nonprod_required_approvals: int = Field(default=1, ge=1)
    eligible_approvers: list[str] = Field(default_factory=list)
    quality_weight_completeness: float = Field(default=0.25, ge=0.0)
    quality_weight_safety: float = Field(default=0.30, ge=0.0)
    quality_weight_feasibility: float = Field(default=0.20, ge=0.0)
    quality_weight_efficiency: float = Field(default=0.10, ge=0.0)
    quality_weight_clarity: float = Field(default=0.15, ge=0.0)

    # Validation.
    policy_mode: str = "builtin"
    opa_url: str = ""
    opa_policy_path: str = "change_orchestrator/plan"
    opa_timeout_s: float = Field(default=5.0, ge=0.1)
    freeze_environments: list[str] = Field(default_factory=list)
    max_canary_fraction: float = Field(default=0.10, gt=0.0, le=1.0)

    # Execution engine.
    execution_timeout_s: float = Field(default=14400.0, gt=0.0)
    fan_out_limit: int = Field(default=8, ge=1)
    execution_lease_s: float = Field(default=300.0, gt=0.0)
    auto_rollback_threshold: float = Field(default=0.05, gt=0.0, le=1.0)
    default_phase_wait_s: float = Field(default=300.0, ge=0.0)
    autonomy_mode_override: str = ""
    risk_based_auto_max_score: int = Field(default=40, ge=0, le=100)
    revalidate_after_pause_s: float | None = Field(default=None, ge=0.0)
    health_check_mode: str = "connector"
    health_check_url_template: str = ""
    health_check_timeout_s: float = Field(default=3.0, ge=0.1)

    # Outbound collaborators.
    notifier_webhook_url: str = ""
    notifier_webhook_secret: str = ""
    notifier_timeout_s: float = Field(default=5.0, ge=0.1)
    itsm_base_url: str = ""
    itsm_username: str = ""
    itsm_password: str = ""
    itsm_timeout_s: float = Field(default=5.0, ge=0.1)

    # Timer sweeper.
    sweep_interval_s: float = Field(default=15.0, ge=0.1)

    model_config = SettingsConfigDict(
        env_prefix="CHANGE_ORCHESTRATOR_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("ORCHESTRATOR_DATABASE_URL", "")

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")

    def quality_weights(self) -> dict[str, float]:
        return {
            "completeness": self.quality_weight_completeness,
            "safety": self.quality_weight_safety,
            "feasibility": self.quality_weight_feasibility,
            "efficiency": self.quality_weight_efficiency,
            "clarity": self.quality_weight_clarity,
        }

    def trace_url(self, task_id: str) -> str:
        return f"{self.trace_base_path.rstrip('/')}/{task_id}/trace"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
