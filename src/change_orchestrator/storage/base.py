"""Storage interface for the orchestration lifecycle."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from change_orchestrator.storage.models import (
    ApprovalRecord,
    AuditEvent,
    ExecutionRecord,
    PlanRecord,
    TaskRecord,
    ToolInvocationRecord,
)


class OrchestratorStorage(Protocol):
    def migrate(self) -> None: ...

    def create_task(
        self,
        *,
        intent_text: str,
        context: dict[str, Any],
        submitter_id: str,
        client_request_id: str | None,
        now: datetime,
    ) -> TaskRecord: ...

    def get_task(self, task_id: str) -> TaskRecord | None: ...

    def find_task_by_request_id(
        self, submitter_id: str, client_request_id: str
    ) -> TaskRecord | None: ...

    def list_tasks(self, *, status: str | None = None) -> list[TaskRecord]: ...

    def update_task(self, task_id: str, **changes: Any) -> TaskRecord: ...

    def save_plan(self, plan: PlanRecord) -> PlanRecord: ...

    def get_plan(self, plan_id: str) -> PlanRecord | None: ...

    def list_plans(self, task_id: str) -> list[PlanRecord]: ...

    def update_plan(self, plan_id: str, **changes: Any) -> PlanRecord: ...

    def record_tool_invocation(self, record: ToolInvocationRecord) -> None: ...

    def list_tool_invocations(self, task_id: str) -> list[ToolInvocationRecord]: ...

    def add_approval(self, record: ApprovalRecord) -> bool:
        """Insert unless (task, plan, scope, approver) already exists; return inserted."""
        ...

    def list_approvals(
        self, task_id: str, *, plan_id: str | None = None, scope: str | None = None
    ) -> list[ApprovalRecord]: ...

    def create_execution(self, record: ExecutionRecord) -> ExecutionRecord: ...

    def get_execution(self, execution_id: str) -> ExecutionRecord | None: ...

    def list_executions(self, *, status: str | None = None) -> list[ExecutionRecord]: ...

    def update_execution(
        self,
        record: ExecutionRecord,
        *,
        expected_phase_index: int,
        owner: str | None = None,
    ) -> ExecutionRecord:
        """Persist progress; control flags and the driver lease are never written here.

        With ``owner`` set the write only lands while that owner holds the lease.
        """
        ...

    def claim_execution(
        self, execution_id: str, *, owner: str, now: datetime, lease_until: datetime
    ) -> bool:
        """Take or renew the driver lease unless another owner holds a live one."""
        ...

    def release_execution(self, execution_id: str, *, owner: str) -> None: ...

    def set_execution_control(
        self,
        execution_id: str,
        *,
        pause_requested: bool | None = None,
        cancel_requested: bool | None = None,
    ) -> ExecutionRecord: ...

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
    ) -> AuditEvent: ...

    def list_audit_events(self, task_id: str) -> list[AuditEvent]: ...
