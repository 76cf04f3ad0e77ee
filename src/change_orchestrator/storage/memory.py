"""In-memory storage backend for tests and local simulation."""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Any
from uuid import uuid4

from change_orchestrator.errors import ConcurrentModification, ExecutionNotFound, TaskNotFound
from change_orchestrator.storage.models import (
    ApprovalRecord,
    AuditEvent,
    ExecutionRecord,
    PlanRecord,
    TaskRecord,
    ToolInvocationRecord,
)

CONTROL_FIELDS = ("pause_requested", "cancel_requested")
LEASE_FIELDS = ("lease_owner", "lease_expires_at")


class InMemoryOrchestratorStorage:
    """Thread-safe dictionary-backed implementation with the same contract as Postgres."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._tasks: dict[str, TaskRecord] = {}
        self._plans: dict[str, PlanRecord] = {}
        self._invocations: list[ToolInvocationRecord] = []
        self._approvals: list[ApprovalRecord] = []
        self._executions: dict[str, ExecutionRecord] = {}
        self._events: list[AuditEvent] = []
        self._next_seq = 1

    def migrate(self) -> None:
        return None

    def create_task(
        self,
        *,
        intent_text: str,
        context: dict[str, Any],
        submitter_id: str,
        client_request_id: str | None,
        now: datetime,
    ) -> TaskRecord:
        record = TaskRecord(
            task_id=str(uuid4()),
            intent_text=intent_text,
            context=dict(context),
            submitter_id=submitter_id,
            client_request_id=client_request_id,
            status="draft",
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._tasks[record.task_id] = record
        return record.model_copy(deep=True)

    def get_task(self, task_id: str) -> TaskRecord | None:
        with self._lock:
            record = self._tasks.get(task_id)
            return record.model_copy(deep=True) if record else None

    def find_task_by_request_id(
        self, submitter_id: str, client_request_id: str
    ) -> TaskRecord | None:
        with self._lock:
            for record in self._tasks.values():
                if (
                    record.submitter_id == submitter_id
                    and record.client_request_id == client_request_id
                ):
                    return record.model_copy(deep=True)
        return None

    def list_tasks(self, *, status: str | None = None) -> list[TaskRecord]:
        with self._lock:
            return [
                record.model_copy(deep=True)
                for record in self._tasks.values()
                if status is None or record.status == status
            ]

    def update_task(self, task_id: str, **changes: Any) -> TaskRecord:
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                raise TaskNotFound(task_id)
            updated = current.model_copy(update=changes)
            self._tasks[task_id] = updated
            return updated.model_copy(deep=True)

    def save_plan(self, plan: PlanRecord) -> PlanRecord:
        with self._lock:
            self._plans[plan.plan_id] = plan.model_copy(deep=True)
        return plan

    def get_plan(self, plan_id: str) -> PlanRecord | None:
        with self._lock:
            record = self._plans.get(plan_id)
            return record.model_copy(deep=True) if record else None

    def list_plans(self, task_id: str) -> list[PlanRecord]:
        with self._lock:
            plans = [plan for plan in self._plans.values() if plan.task_id == task_id]
            return [plan.model_copy(deep=True) for plan in sorted(plans, key=lambda p: p.created_at)]

    def update_plan(self, plan_id: str, **changes: Any) -> PlanRecord:
        with self._lock:
            current = self._plans.get(plan_id)
            if current is None:
                raise KeyError(f"Plan {plan_id} does not exist")
            updated = current.model_copy(update=changes)
            self._plans[plan_id] = updated
            return updated.model_copy(deep=True)

    def record_tool_invocation(self, record: ToolInvocationRecord) -> None:
        with self._lock:
            self._invocations.append(record.model_copy(deep=True))

    def list_tool_invocations(self, task_id: str) -> list[ToolInvocationRecord]:
        with self._lock:
            return [item.model_copy(deep=True) for item in self._invocations if item.task_id == task_id]

    def add_approval(self, record: ApprovalRecord) -> bool:
        with self._lock:
            for existing in self._approvals:
                if (
                    existing.task_id == record.task_id
                    and existing.plan_id == record.plan_id
                    and existing.scope == record.scope
                    and existing.approver_id == record.approver_id
                ):
                    return False
            self._approvals.append(record.model_copy(deep=True))
            return True

    def list_approvals(
        self, task_id: str, *, plan_id: str | None = None, scope: str | None = None
    ) -> list[ApprovalRecord]:
        with self._lock:
            return [
                item.model_copy(deep=True)
                for item in self._approvals
                if item.task_id == task_id
                and (plan_id is None or item.plan_id == plan_id)
                and (scope is None or item.scope == scope)
            ]

    def create_execution(self, record: ExecutionRecord) -> ExecutionRecord:
        with self._lock:
            self._executions[record.execution_id] = record.model_copy(deep=True)
        return record

    def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        with self._lock:
            record = self._executions.get(execution_id)
            return record.model_copy(deep=True) if record else None

    def list_executions(self, *, status: str | None = None) -> list[ExecutionRecord]:
        with self._lock:
            return [
                record.model_copy(deep=True)
                for record in self._executions.values()
                if status is None or record.status == status
            ]

    def update_execution(
        self,
        record: ExecutionRecord,
        *,
        expected_phase_index: int,
        owner: str | None = None,
    ) -> ExecutionRecord:
        with self._lock:
            current = self._executions.get(record.execution_id)
            if current is None:
                raise ExecutionNotFound(record.execution_id)
            if current.current_phase_index != expected_phase_index:
                raise ConcurrentModification(record.execution_id, expected_phase_index)
            if owner is not None and current.lease_owner != owner:
                raise ConcurrentModification(record.execution_id, expected_phase_index)
            merged = record.model_copy(
                deep=True,
                update={field: getattr(current, field) for field in (*CONTROL_FIELDS, *LEASE_FIELDS)},
            )
            self._executions[record.execution_id] = merged
            return merged.model_copy(deep=True)

    def claim_execution(
        self, execution_id: str, *, owner: str, now: datetime, lease_until: datetime
    ) -> bool:
        with self._lock:
            current = self._executions.get(execution_id)
            if current is None:
                raise ExecutionNotFound(execution_id)
            if (
                current.lease_owner not in (None, owner)
                and current.lease_expires_at is not None
                and current.lease_expires_at > now
            ):
                return False
            self._executions[execution_id] = current.model_copy(
                update={"lease_owner": owner, "lease_expires_at": lease_until}
            )
            return True

    def release_execution(self, execution_id: str, *, owner: str) -> None:
        with self._lock:
            current = self._executions.get(execution_id)
            if current is None or current.lease_owner != owner:
                return
            self._executions[execution_id] = current.model_copy(
                update={"lease_owner": None, "lease_expires_at": None}
            )

    def set_execution_control(
        self,
        execution_id: str,
        *,
        pause_requested: bool | None = None,
        cancel_requested: bool | None = None,
    ) -> ExecutionRecord:
        changes: dict[str, Any] = {}
        if pause_requested is not None:
            changes["pause_requested"] = pause_requested
        if cancel_requested is not None:
            changes["cancel_requested"] = cancel_requested
        with self._lock:
            current = self._executions.get(execution_id)
            if current is None:
                raise ExecutionNotFound(execution_id)
            updated = current.model_copy(update=changes)
            self._executions[execution_id] = updated
            return updated.model_copy(deep=True)

    def append_audit_event(
        self,
        *,
        task_id: str,
        kind: str,
        timestamp: datetime,
        actor: str,
        subject_id: str | None,
        from_state: str | None,
        to_state: str | None,
        reason: str | None,
        payload: dict[str, Any],
    ) -> AuditEvent:
        with self._lock:
            event = AuditEvent(
                event_id=str(uuid4()),
                task_id=task_id,
                seq=self._next_seq,
                timestamp=timestamp,
                kind=kind,
                actor=actor,
                subject_id=subject_id,
                from_state=from_state,
                to_state=to_state,
                reason=reason,
                payload=dict(payload),
            )
            self._next_seq += 1
            self._events.append(event)
            return event.model_copy(deep=True)

    def list_audit_events(self, task_id: str) -> list[AuditEvent]:
        with self._lock:
            return [event.model_copy(deep=True) for event in self._events if event.task_id == task_id]
