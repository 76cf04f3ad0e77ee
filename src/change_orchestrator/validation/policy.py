"""Policy evaluators consulted by the validation pipeline."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol
from urllib import error, request

from change_orchestrator.capabilities.inventory import is_production, normalize_environment
from change_orchestrator.storage.models import STATE_CHANGE_CLASSES, PlanRecord

logger = logging.getLogger(__name__)

DANGEROUS_PATTERNS = (
    "rm -rf /",
    "drop database",
    "truncate table",
    "format c:",
    ":(){ :|:& };:",
    "dd if=/dev/zero",
    "mkfs",
)


@dataclass(frozen=True)
class PolicyDecision:
    allow: bool
    reasons: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class PolicyEvaluator(Protocol):
    def evaluate(self, plan: PlanRecord, facts: dict[str, Any]) -> PolicyDecision: ...


class BuiltinPolicyEvaluator:
    """Safety rules that hold regardless of the external policy engine."""

    def __init__(
        self,
        *,
        max_canary_fraction: float = 0.10,
        freeze_environments: Iterable[str] = (),
    ) -> None:
        self.max_canary_fraction = max_canary_fraction
        self.freeze_environments = {
            normalize_environment(item) or item for item in freeze_environments
        }

    def evaluate(self, plan: PlanRecord, facts: dict[str, Any]) -> PolicyDecision:
        reasons: list[str] = []
        warnings: list[str] = []

        haystack = json.dumps(
            {
                "phases": [phase.params for phase in plan.phases],
                "steps": plan.evidence.get("steps", []),
            }
        ).lower()
        for pattern in DANGEROUS_PATTERNS:
            if pattern in haystack:
                reasons.append(f"dangerous pattern detected: '{pattern}'")

        state_phases = [phase for phase in plan.phases if phase.risk_class in STATE_CHANGE_CLASSES]
        frozen = set(self.freeze_environments)
        frozen.update(normalize_environment(str(item)) or str(item) for item in facts.get("freeze_environments", []))
        if state_phases and normalize_environment(plan.environment) in frozen:
            reasons.append(f"change freeze in effect for {plan.environment}")

        if state_phases and is_production(plan.environment):
            total = sum(len(phase.targets) for phase in state_phases)
            allowed = max(1, int(total * self.max_canary_fraction))
            first = state_phases[0]
            if total > 1 and len(state_phases) < 2:
                reasons.append("production rollout requires a canary phase before the remainder")
            elif len(first.targets) > allowed:
                reasons.append(
                    f"canary phase '{first.name}' targets {len(first.targets)} resources; "
                    f"at most {allowed} allowed"
                )
            if any(phase.wait_seconds <= 0 for phase in state_phases[:-1]):
                warnings.append("production phases have no soak time between them")

        return PolicyDecision(allow=not reasons, reasons=reasons, warnings=warnings)


class OpaPolicyEvaluator:
    """Query an Open Policy Agent data endpoint. Unreachable policy denies."""

    def __init__(self, *, base_url: str, policy_path: str, timeout_s: float = 5.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.policy_path = policy_path.strip("/")
        self.timeout_s = timeout_s

    def evaluate(self, plan: PlanRecord, facts: dict[str, Any]) -> PolicyDecision:
        payload = {"input": {"plan": plan.model_dump(mode="json"), "facts": facts}}
        req = request.Request(
            url=f"{self.base_url}/v1/data/{self.policy_path}",
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                body = json.loads(response.read().decode("utf-8"))
        except (TimeoutError, ValueError, error.URLError) as exc:
            logger.warning("policy event=opa_unavailable url=%s reason=%s", self.base_url, exc)
            return PolicyDecision(allow=False, reasons=[f"policy service unavailable: {exc}"])

        result = body.get("result", {}) if isinstance(body, dict) else {}
        deny = [str(item) for item in result.get("deny", [])]
        warn = [str(item) for item in result.get("warn", [])]
        allow = bool(result.get("allow", not deny)) and not deny
        if not allow and not deny:
            deny = ["denied by policy"]
        return PolicyDecision(allow=allow, reasons=deny, warnings=warn)


class CompositePolicyEvaluator:
    """Deny if any member denies."""

    def __init__(self, evaluators: Iterable[PolicyEvaluator]) -> None:
        self.evaluators = list(evaluators)

    def evaluate(self, plan: PlanRecord, facts: dict[str, Any]) -> PolicyDecision:
        reasons: list[str] = []
        warnings: list[str] = []
        for evaluator in self.evaluators:
            decision = evaluator.evaluate(plan, facts)
            reasons.extend(decision.reasons)
            warnings.extend(decision.warnings)
        return PolicyDecision(allow=not reasons, reasons=reasons, warnings=warnings)
