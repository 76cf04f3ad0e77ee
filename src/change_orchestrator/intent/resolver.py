"""Intent resolution: map free text to one agent (or an ordered pair) and its tool calls."""

from __future__ import annotations

import difflib
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from change_orchestrator.agents.registry import AgentRegistry
from change_orchestrator.capabilities.inventory import normalize_environment
from change_orchestrator.capabilities.registry import CapabilityRegistry
from change_orchestrator.errors import AmbiguousIntent, NoMatchingAgent
from change_orchestrator.storage.models import ToolCall, max_risk_class

logger = logging.getLogger(__name__)

ENVIRONMENT_PATTERN = re.compile(r"\b(production|prod|prd|staging|stage|stg|development|dev)\b")
SEQUENCE_SPLIT = re.compile(r"\s*(?:,\s*)?(?:\band\s+)?\bthen\b\s*", flags=re.IGNORECASE)


class IntentOracle(Protocol):
    def propose(self, text: str, agents: list[dict[str, Any]]) -> str: ...


@dataclass
class IntentSegment:
    agent: str
    text: str
    tool_calls: list[ToolCall]
    risk_class: str


@dataclass
class TaskSpecification:
    segments: list[IntentSegment]
    environment: str
    risk_class: str
    telemetry: dict[str, Any] = field(default_factory=dict)

    @property
    def agent(self) -> str:
        return "+".join(segment.agent for segment in self.segments)

    @property
    def composite(self) -> bool:
        return len(self.segments) > 1

    @property
    def tool_calls(self) -> list[ToolCall]:
        return [call for segment in self.segments for call in segment.tool_calls]


def detect_environment(text: str, context: dict[str, Any]) -> str:
    explicit = normalize_environment(str(context["environment"])) if context.get("environment") else None
    if explicit:
        return explicit
    match = ENVIRONMENT_PATTERN.search(text.lower())
    if match:
        return normalize_environment(match.group(1)) or "development"
    return "development"


class IntentResolver:
    def __init__(
        self,
        agents: AgentRegistry,
        capabilities: CapabilityRegistry,
        *,
        mode: str = "deterministic",
        oracle: IntentOracle | None = None,
    ) -> None:
        self.agents = agents
        self.capabilities = capabilities
        self.mode = mode.lower()
        self.oracle = oracle

    def resolve(self, text: str, context: dict[str, Any] | None = None) -> TaskSpecification:
        task_context = dict(context or {})
        environment = detect_environment(text, task_context)
        scoped = {**task_context, "environment": environment}

        parts = [part.strip() for part in SEQUENCE_SPLIT.split(text) if part.strip()]
        if len(parts) > 1:
            try:
                names = [self._deterministic_choice(part) for part in parts]
            except (AmbiguousIntent, NoMatchingAgent):
                names = []
            if names and len(set(names)) == len(names):
                segments = [self._segment(name, part, scoped) for name, part in zip(names, parts)]
                telemetry = {
                    "requested_mode": self.mode,
                    "effective_mode": "deterministic",
                    "fallback_used": False,
                    "composite": True,
                }
                return self._specification(segments, environment, telemetry)

        name, telemetry = self._choose(text)
        return self._specification([self._segment(name, text, scoped)], environment, telemetry)

    def _choose(self, text: str) -> tuple[str, dict[str, Any]]:
        if self.mode == "llm":
            try:
                if self.oracle is None:
                    raise RuntimeError("LLM resolver mode requested without an oracle")
                proposal = self.oracle.propose(text, self.agents.describe())
                if proposal not in self.agents:
                    raise RuntimeError(f"Oracle proposed unknown agent: {proposal}")
                return proposal, {
                    "requested_mode": "llm",
                    "effective_mode": "llm",
                    "fallback_used": False,
                }
            except Exception as exc:  # noqa: BLE001
                logger.warning("intent_resolve event=llm_fallback reason=%s", exc)
                return self._deterministic_choice(text), {
                    "requested_mode": "llm",
                    "effective_mode": "deterministic",
                    "fallback_used": True,
                    "fallback_reason": str(exc),
                }
        return self._deterministic_choice(text), {
            "requested_mode": self.mode,
            "effective_mode": "deterministic",
            "fallback_used": False,
        }

    def _deterministic_choice(self, text: str) -> str:
        scores = {agent.name: agent.match_score(text) for agent in self.agents}
        best = max(scores.values(), default=0)
        if best <= 0:
            raise NoMatchingAgent(text, self._suggestions(text))
        leaders = sorted(name for name, score in scores.items() if score == best)
        if len(leaders) > 1:
            raise AmbiguousIntent(text, leaders)
        return leaders[0]

    def _suggestions(self, text: str) -> list[str]:
        vocabulary: dict[str, str] = {}
        for agent in self.agents:
            for keyword in agent.keywords:
                vocabulary.setdefault(keyword, agent.name)
        suggested: list[str] = []
        for word in re.findall(r"[a-z0-9]+", text.lower()):
            for keyword in difflib.get_close_matches(word, list(vocabulary), n=2, cutoff=0.75):
                owner = vocabulary[keyword]
                if owner not in suggested:
                    suggested.append(owner)
        return suggested

    def _segment(self, name: str, text: str, context: dict[str, Any]) -> IntentSegment:
        agent = self.agents.get(name)
        if agent is None:
            raise NoMatchingAgent(text, self.agents.names())
        calls = agent.select_tools(text, context)
        risk = max_risk_class(
            self.capabilities[call.tool].risk_class for call in calls if call.tool in self.capabilities
        )
        return IntentSegment(agent=name, text=text, tool_calls=calls, risk_class=risk)

    @staticmethod
    def _specification(
        segments: list[IntentSegment], environment: str, telemetry: dict[str, Any]
    ) -> TaskSpecification:
        spec = TaskSpecification(
            segments=segments,
            environment=environment,
            risk_class=max_risk_class(segment.risk_class for segment in segments),
            telemetry=telemetry,
        )
        logger.info(
            "intent_resolve event=resolved agent=%s environment=%s risk_class=%s mode=%s",
            spec.agent,
            environment,
            spec.risk_class,
            telemetry.get("effective_mode"),
        )
        return spec
