"""Append-only audit ledger backed by the orchestrator storage."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from change_orchestrator.clock import Clock, SystemClock
from change_orchestrator.storage.base import OrchestratorStorage
from change_orchestrator.storage.models import AuditEvent

logger = logging.getLogger(__name__)


class AuditLedger:
    """Record every decision and transition so a task trace can be rebuilt from here alone."""

    def __init__(self, storage: OrchestratorStorage, clock: Clock | None = None) -> None:
        self.storage = storage
        self.clock = clock or SystemClock()

    def record(
        self,
        task_id: str,
        kind: str,
        *,
        actor: str = "system",
        subject_id: str | None = None,
        from_state: str | None = None,
        to_state: str | None = None,
        reason: str | None = None,
        payload: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> AuditEvent:
        event = self.storage.append_audit_event(
            task_id=task_id,
            kind=kind,
            timestamp=timestamp or self.clock.now(),
            actor=actor,
            subject_id=subject_id,
            from_state=from_state,
            to_state=to_state,
            reason=reason,
            payload=payload or {},
        )
        logger.debug(
            "audit event=%s task_id=%s subject_id=%s from=%s to=%s seq=%s",
            kind,
            task_id,
            subject_id,
            from_state,
            to_state,
            event.seq,
        )
        return event

    def transition(
        self,
        task_id: str,
        kind: str,
        *,
        subject_id: str,
        from_state: str | None,
        to_state: str,
        actor: str = "system",
        reason: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> AuditEvent:
        return self.record(
            task_id,
            kind,
            actor=actor,
            subject_id=subject_id,
            from_state=from_state,
            to_state=to_state,
            reason=reason,
            payload=payload,
        )

    def trace(self, task_id: str) -> list[AuditEvent]:
        events = self.storage.list_audit_events(task_id)
        return sorted(events, key=lambda event: (event.timestamp, event.seq))
