"""Post-apply health checks."""

from __future__ import annotations

import logging
from typing import Iterable, Protocol
from urllib import error, request

from change_orchestrator.storage.models import PhaseState

logger = logging.getLogger(__name__)


class HealthChecker(Protocol):
    def check(self, resource_id: str, phase: PhaseState) -> bool: ...


class ConnectorHealthChecker:
    """Trust the connector's own outcome; ``unhealthy`` forces failures for simulation."""

    def __init__(self, unhealthy: Iterable[str] = ()) -> None:
        self.unhealthy = set(unhealthy)

    def check(self, resource_id: str, phase: PhaseState) -> bool:
        return resource_id not in self.unhealthy


class HttpHealthChecker:
    def __init__(self, *, url_template: str, timeout_s: float = 5.0) -> None:
        self.url_template = url_template
        self.timeout_s = timeout_s

    def check(self, resource_id: str, phase: PhaseState) -> bool:
        url = self.url_template.format(resource_id=resource_id, phase=phase.name)
        try:
            with request.urlopen(request.Request(url=url, method="GET"), timeout=self.timeout_s) as response:
                healthy = 200 <= response.status < 300
        except (error.URLError, TimeoutError, OSError) as exc:
            logger.warning("health_check event=error resource_id=%s reason=%s", resource_id, exc)
            return False
        if not healthy:
            logger.info("health_check event=unhealthy resource_id=%s", resource_id)
        return healthy
