"""Invoke read-only and planning capabilities under schema, timeout and retry control."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from change_orchestrator.capabilities.registry import CapabilityRegistry, CapabilitySpec, build_registry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CapabilityResult:
    capability: str
    ok: bool
    output: dict[str, Any] | None = None
    error: str | None = None
    attempts: int = 0
    duration_ms: float = 0.0
    implementation: str = "unknown"


class CapabilityGateway:
    """Run one capability call.

    Unknown capabilities and execution-only operations are refused without an
    attempt. Bad arguments fail on the first attempt. Timeouts and errors raised
    by the capability itself are retried up to ``max_retries`` times.
    """

    def __init__(
        self,
        *,
        registry: CapabilityRegistry | None = None,
        tool_timeout_s: float = 2.0,
        max_retries: int = 0,
        backoff_s: float = 0.0,
        max_workers: int = 4,
    ) -> None:
        self.registry = registry or build_registry()
        self.tool_timeout_s = tool_timeout_s
        self.max_retries = max_retries
        self.backoff_s = backoff_s
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="capability")

    def execute(self, name: str, args: dict[str, Any]) -> CapabilityResult:
        started_at = time.perf_counter()
        spec = self.registry.get(name)
        if spec is None:
            return self._refuse(name, f"Unknown capability: {name}", started_at)
        if not spec.invocable or spec.output_model is None:
            return self._refuse(
                name,
                f"Capability '{name}' is applied through connectors, not invoked",
                started_at,
                implementation=spec.implementation,
            )

        try:
            payload = spec.input_model.model_validate(args)
        except ValidationError as exc:
            return CapabilityResult(
                capability=name,
                ok=False,
                error=str(exc),
                attempts=1,
                duration_ms=_duration_ms(started_at),
                implementation=spec.implementation,
            )

        error = "unknown error"
        attempts = 0
        while attempts <= self.max_retries:
            attempts += 1
            try:
                output = self._run(spec, payload)
            except Exception as exc:  # noqa: BLE001
                error = str(exc)
                logger.info(
                    "capability event=attempt_failed name=%s attempt=%d reason=%s", name, attempts, error
                )
                if attempts <= self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s * attempts)
                continue
            return CapabilityResult(
                capability=name,
                ok=True,
                output=output,
                attempts=attempts,
                duration_ms=_duration_ms(started_at),
                implementation=spec.implementation,
            )

        return CapabilityResult(
            capability=name,
            ok=False,
            error=error,
            attempts=attempts,
            duration_ms=_duration_ms(started_at),
            implementation=spec.implementation,
        )

    def _run(self, spec: CapabilitySpec, payload: Any) -> dict[str, Any]:
        future = self._pool.submit(spec.fn, payload)
        try:
            raw = future.result(timeout=self.tool_timeout_s)
        except TimeoutError as exc:
            future.cancel()
            raise TimeoutError(f"Capability '{spec.name}' timed out after {self.tool_timeout_s:.2f}s") from exc
        return spec.output_model.model_validate(raw).model_dump(mode="json")

    @staticmethod
    def _refuse(name: str, reason: str, started_at: float, *, implementation: str = "unknown") -> CapabilityResult:
        logger.warning("capability event=refused name=%s reason=%s", name, reason)
        return CapabilityResult(
            capability=name,
            ok=False,
            error=reason,
            duration_ms=_duration_ms(started_at),
            implementation=implementation,
        )


def _duration_ms(started_at: float) -> float:
    return round((time.perf_counter() - started_at) * 1000.0, 2)
