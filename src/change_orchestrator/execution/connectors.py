"""Platform connectors that apply a phase operation to one resource."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Protocol

logger = logging.getLogger(__name__)

ApplyHook = Callable[[str, str, dict[str, Any]], None]


@dataclass(frozen=True)
class ApplyOutcome:
    success: bool
    detail: str = ""


class Connector(Protocol):
    def apply(self, resource_id: str, operation: str, params: dict[str, Any]) -> ApplyOutcome: ...


class SimulatedConnector:
    """In-process connector for demos and tests.

    ``failures`` entries are either a bare resource id (fails every operation on it)
    or ``"<resource_id>:<operation>"`` (fails only that operation). ``hook`` runs
    before each apply and may raise to emulate a crash or trigger a control action.
    """

    def __init__(
        self,
        *,
        failures: Iterable[str] = (),
        hook: ApplyHook | None = None,
        latency_s: float = 0.0,
    ) -> None:
        self.failures = set(failures)
        self.hook = hook
        self.latency_s = latency_s
        self._lock = threading.Lock()
        self.calls: list[tuple[str, str]] = []

    def apply(self, resource_id: str, operation: str, params: dict[str, Any]) -> ApplyOutcome:
        if self.hook is not None:
            self.hook(resource_id, operation, params)
        if self.latency_s:
            time.sleep(self.latency_s)
        with self._lock:
            self.calls.append((resource_id, operation))
        if resource_id in self.failures or f"{resource_id}:{operation}" in self.failures:
            return ApplyOutcome(success=False, detail=f"{operation} failed on {resource_id}")
        return ApplyOutcome(success=True, detail=f"{operation} applied")

    def applied(self, operation: str | None = None) -> list[str]:
        with self._lock:
            return [rid for rid, op in self.calls if operation is None or op == operation]


class PlatformRouter:
    """Dispatch each resource to the connector registered for its platform."""

    def __init__(
        self,
        routes: Mapping[str, Connector],
        *,
        resolve_platform: Callable[[str], str | None],
        default: Connector | None = None,
    ) -> None:
        self.routes = dict(routes)
        self.resolve_platform = resolve_platform
        self.default = default

    def apply(self, resource_id: str, operation: str, params: dict[str, Any]) -> ApplyOutcome:
        platform = self.resolve_platform(resource_id)
        connector = self.routes.get(platform) if platform else None
        if connector is None:
            connector = self.default
        if connector is None:
            logger.warning(
                "connector event=unroutable resource_id=%s platform=%s", resource_id, platform
            )
            return ApplyOutcome(success=False, detail=f"No connector for platform '{platform}'")
        return connector.apply(resource_id, operation, params)
