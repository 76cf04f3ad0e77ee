"""Agent registry: the closed set of specialists, fixed at process start."""

from __future__ import annotations

from types import MappingProxyType
from typing import Any, Iterable, Iterator

from change_orchestrator.agents.base import Agent
from change_orchestrator.agents.specialists import SPECIALISTS
from change_orchestrator.capabilities.registry import CapabilityRegistry


class AgentRegistry:
    def __init__(self, agents: Iterable[Agent], *, capabilities: CapabilityRegistry | None = None) -> None:
        entries: dict[str, Agent] = {}
        for agent in agents:
            if agent.name in entries:
                raise ValueError(f"Duplicate agent name: {agent.name}")
            if capabilities is not None:
                unknown = sorted(tool for tool in agent.authorized_tools() if tool not in capabilities)
                if unknown:
                    raise ValueError(f"Agent '{agent.name}' references unknown capabilities: {unknown}")
            entries[agent.name] = agent
        self._agents = MappingProxyType(entries)

    def __contains__(self, name: object) -> bool:
        return name in self._agents

    def __iter__(self) -> Iterator[Agent]:
        return iter(self._agents.values())

    def __len__(self) -> int:
        return len(self._agents)

    def get(self, name: str) -> Agent | None:
        return self._agents.get(name)

    def names(self) -> list[str]:
        return sorted(self._agents)

    def describe(self) -> list[dict[str, Any]]:
        return [self._agents[name].describe() for name in self.names()]


def build_agent_registry(capabilities: CapabilityRegistry | None = None) -> AgentRegistry:
    return AgentRegistry((agent_cls() for agent_cls in SPECIALISTS), capabilities=capabilities)
