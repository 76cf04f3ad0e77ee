"""PostgreSQL-backed storage with automatic table migration."""

from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from typing import Any

from change_orchestrator.errors import ConcurrentModification, ExecutionNotFound, TaskNotFound
from change_orchestrator.storage.models import (
    ApprovalRecord,
    AuditEvent,
    ExecutionRecord,
    PlanRecord,
    TaskRecord,
    ToolInvocationRecord,
)

TASK_COLUMNS = (
    "intent_text",
    "submitter_id",
    "client_request_id",
    "status",
    "agent",
    "environment",
    "risk_class",
    "active_plan_id",
    "active_execution_id",
    "status_reason",
    "trace_url",
    "approval_deadline",
    "created_at",
    "updated_at",
    "completed_at",
)


class PostgresOrchestratorStorage:
    """Persist tasks, plans, approvals, executions and the audit ledger in PostgreSQL."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("CHANGE_ORCHESTRATOR_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    intent_text TEXT NOT NULL,
                    context_json JSONB NOT NULL DEFAULT '{}'::jsonb,
                    submitter_id TEXT NOT NULL,
                    client_request_id TEXT,
                    status TEXT NOT NULL,
                    agent TEXT,
                    environment TEXT,
                    risk_class TEXT,
                    active_plan_id TEXT,
                    active_execution_id TEXT,
                    status_reason TEXT,
                    trace_url TEXT,
                    approval_deadline TIMESTAMPTZ,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL,
                    completed_at TIMESTAMPTZ
                )
                """)
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_tasks_client_request
                ON tasks(submitter_id, client_request_id)
                WHERE client_request_id IS NOT NULL
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_tasks_status
                ON tasks(status)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS plans (
                    plan_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL REFERENCES tasks(task_id) ON DELETE CASCADE,
                    status TEXT NOT NULL,
                    plan_json JSONB NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_plans_task_id
                ON plans(task_id, created_at)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tool_invocations (
                    invocation_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL REFERENCES tasks(task_id) ON DELETE CASCADE,
                    tool TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    invocation_json JSONB NOT NULL,
                    invoked_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS approvals (
                    approval_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL REFERENCES tasks(task_id) ON DELETE CASCADE,
                    plan_id TEXT NOT NULL,
                    scope TEXT NOT NULL,
                    approver_id TEXT NOT NULL,
                    decision TEXT NOT NULL,
                    approval_json JSONB NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL,
                    UNIQUE (task_id, plan_id, scope, approver_id)
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS executions (
                    execution_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL REFERENCES tasks(task_id) ON DELETE CASCADE,
                    plan_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    current_phase_index INTEGER NOT NULL,
                    pause_requested BOOLEAN NOT NULL DEFAULT FALSE,
                    cancel_requested BOOLEAN NOT NULL DEFAULT FALSE,
                    lease_owner TEXT,
                    lease_expires_at TIMESTAMPTZ,
                    wait_until TIMESTAMPTZ,
                    execution_json JSONB NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                ALTER TABLE executions
                ADD COLUMN IF NOT EXISTS lease_owner TEXT,
                ADD COLUMN IF NOT EXISTS lease_expires_at TIMESTAMPTZ
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_executions_status
                ON executions(status)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS audit_events (
                    seq BIGSERIAL PRIMARY KEY,
                    event_id TEXT NOT NULL UNIQUE,
                    task_id TEXT NOT NULL,
                    event_timestamp TIMESTAMPTZ NOT NULL,
                    kind TEXT NOT NULL,
                    actor TEXT NOT NULL,
                    subject_id TEXT,
                    from_state TEXT,
                    to_state TEXT,
                    reason TEXT,
                    payload_json JSONB NOT NULL DEFAULT '{}'::jsonb
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_audit_events_task
                ON audit_events(task_id, event_timestamp, seq)
                """)
            conn.commit()

    # Tasks

    def create_task(
        self,
        *,
        intent_text: str,
        context: dict[str, Any],
        submitter_id: str,
        client_request_id: str | None,
        now: datetime,
    ) -> TaskRecord:
        task_id = str(uuid.uuid4())
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tasks (
                    task_id,
                    intent_text,
                    context_json,
                    submitter_id,
                    client_request_id,
                    status,
                    created_at,
                    updated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    task_id,
                    intent_text,
                    self._json_wrapper(context),
                    submitter_id,
                    client_request_id,
                    "draft",
                    now,
                    now,
                ),
            )
            conn.commit()
        created = self.get_task(task_id)
        if created is None:
            raise RuntimeError("Failed to load created task")
        return created

    def get_task(self, task_id: str) -> TaskRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tasks WHERE task_id = %s",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def find_task_by_request_id(
        self, submitter_id: str, client_request_id: str
    ) -> TaskRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT *
                FROM tasks
                WHERE submitter_id = %s AND client_request_id = %s
                """,
                (submitter_id, client_request_id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def list_tasks(self, *, status: str | None = None) -> list[TaskRecord]:
        with self._lock, self._connect() as conn:
            if status is None:
                rows = conn.execute("SELECT * FROM tasks ORDER BY created_at").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM tasks WHERE status = %s ORDER BY created_at",
                    (status,),
                ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def update_task(self, task_id: str, **changes: Any) -> TaskRecord:
        assignments: list[str] = []
        values: list[Any] = []
        for key, value in changes.items():
            if key == "context":
                assignments.append("context_json = %s")
                values.append(self._json_wrapper(value))
            elif key in TASK_COLUMNS:
                assignments.append(f"{key} = %s")
                values.append(value)
            else:
                raise ValueError(f"Unknown task field: {key}")
        if assignments:
            with self._lock, self._connect() as conn:
                conn.execute(
                    f"UPDATE tasks SET {', '.join(assignments)} WHERE task_id = %s",
                    (*values, task_id),
                )
                conn.commit()
        refreshed = self.get_task(task_id)
        if refreshed is None:
            raise TaskNotFound(task_id)
        return refreshed

    # Plans

    def save_plan(self, plan: PlanRecord) -> PlanRecord:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO plans (plan_id, task_id, status, plan_json, created_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (plan_id) DO UPDATE
                SET status = EXCLUDED.status,
                    plan_json = EXCLUDED.plan_json
                """,
                (
                    plan.plan_id,
                    plan.task_id,
                    plan.status,
                    self._json_wrapper(plan.model_dump(mode="json")),
                    plan.created_at,
                ),
            )
            conn.commit()
        return plan

    def get_plan(self, plan_id: str) -> PlanRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT plan_json FROM plans WHERE plan_id = %s",
                (plan_id,),
            ).fetchone()
        if row is None:
            return None
        return PlanRecord.model_validate(self._parse_json(row["plan_json"]))

    def list_plans(self, task_id: str) -> list[PlanRecord]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT plan_json
                FROM plans
                WHERE task_id = %s
                ORDER BY created_at
                """,
                (task_id,),
            ).fetchall()
        return [PlanRecord.model_validate(self._parse_json(row["plan_json"])) for row in rows]

    def update_plan(self, plan_id: str, **changes: Any) -> PlanRecord:
        current = self.get_plan(plan_id)
        if current is None:
            raise KeyError(f"Plan {plan_id} does not exist")
        updated = PlanRecord.model_validate({**current.model_dump(), **changes})
        return self.save_plan(updated)

    # Tool invocations

    def record_tool_invocation(self, record: ToolInvocationRecord) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tool_invocations (
                    invocation_id, task_id, tool, outcome, invocation_json, invoked_at
                ) VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    record.invocation_id,
                    record.task_id,
                    record.tool,
                    record.outcome,
                    self._json_wrapper(record.model_dump(mode="json")),
                    record.invoked_at,
                ),
            )
            conn.commit()

    def list_tool_invocations(self, task_id: str) -> list[ToolInvocationRecord]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT invocation_json
                FROM tool_invocations
                WHERE task_id = %s
                ORDER BY invoked_at
                """,
                (task_id,),
            ).fetchall()
        return [
            ToolInvocationRecord.model_validate(self._parse_json(row["invocation_json"]))
            for row in rows
        ]

    # Approvals

    def add_approval(self, record: ApprovalRecord) -> bool:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO approvals (
                    approval_id, task_id, plan_id, scope, approver_id, decision,
                    approval_json, created_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (task_id, plan_id, scope, approver_id) DO NOTHING
                RETURNING approval_id
                """,
                (
                    record.approval_id,
                    record.task_id,
                    record.plan_id,
                    record.scope,
                    record.approver_id,
                    record.decision,
                    self._json_wrapper(record.model_dump(mode="json")),
                    record.created_at,
                ),
            ).fetchone()
            conn.commit()
        return row is not None

    def list_approvals(
        self, task_id: str, *, plan_id: str | None = None, scope: str | None = None
    ) -> list[ApprovalRecord]:
        clauses = ["task_id = %s"]
        params: list[Any] = [task_id]
        if plan_id is not None:
            clauses.append("plan_id = %s")
            params.append(plan_id)
        if scope is not None:
            clauses.append("scope = %s")
            params.append(scope)
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"SELECT approval_json FROM approvals WHERE {' AND '.join(clauses)} "
                "ORDER BY created_at",
                tuple(params),
            ).fetchall()
        return [ApprovalRecord.model_validate(self._parse_json(row["approval_json"])) for row in rows]

    # Executions

    def create_execution(self, record: ExecutionRecord) -> ExecutionRecord:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO executions (
                    execution_id, task_id, plan_id, status, current_phase_index,
                    pause_requested, cancel_requested, wait_until, execution_json, updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.execution_id,
                    record.task_id,
                    record.plan_id,
                    record.status,
                    record.current_phase_index,
                    record.pause_requested,
                    record.cancel_requested,
                    record.wait_until,
                    self._json_wrapper(record.model_dump(mode="json")),
                    record.updated_at,
                ),
            )
            conn.commit()
        return record

    def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM executions WHERE execution_id = %s",
                (execution_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_execution(row)

    def list_executions(self, *, status: str | None = None) -> list[ExecutionRecord]:
        with self._lock, self._connect() as conn:
            if status is None:
                rows = conn.execute("SELECT * FROM executions").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM executions WHERE status = %s",
                    (status,),
                ).fetchall()
        return [self._row_to_execution(row) for row in rows]

    def update_execution(
        self,
        record: ExecutionRecord,
        *,
        expected_phase_index: int,
        owner: str | None = None,
    ) -> ExecutionRecord:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE executions
                SET status = %s,
                    current_phase_index = %s,
                    wait_until = %s,
                    execution_json = %s,
                    updated_at = %s
                WHERE execution_id = %s
                  AND current_phase_index = %s
                  AND (%s::text IS NULL OR lease_owner = %s)
                """,
                (
                    record.status,
                    record.current_phase_index,
                    record.wait_until,
                    self._json_wrapper(record.model_dump(mode="json")),
                    record.updated_at,
                    record.execution_id,
                    expected_phase_index,
                    owner,
                    owner,
                ),
            )
            updated_rows = cursor.rowcount
            conn.commit()
        if updated_rows == 0:
            if self.get_execution(record.execution_id) is None:
                raise ExecutionNotFound(record.execution_id)
            raise ConcurrentModification(record.execution_id, expected_phase_index)
        refreshed = self.get_execution(record.execution_id)
        if refreshed is None:
            raise ExecutionNotFound(record.execution_id)
        return refreshed

    def claim_execution(
        self, execution_id: str, *, owner: str, now: datetime, lease_until: datetime
    ) -> bool:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE executions
                SET lease_owner = %s,
                    lease_expires_at = %s
                WHERE execution_id = %s
                  AND (
                    lease_owner IS NULL
                    OR lease_owner = %s
                    OR lease_expires_at <= %s
                  )
                """,
                (owner, lease_until, execution_id, owner, now),
            )
            claimed = cursor.rowcount == 1
            conn.commit()
        if not claimed and self.get_execution(execution_id) is None:
            raise ExecutionNotFound(execution_id)
        return claimed

    def release_execution(self, execution_id: str, *, owner: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                UPDATE executions
                SET lease_owner = NULL,
                    lease_expires_at = NULL
                WHERE execution_id = %s AND lease_owner = %s
                """,
                (execution_id, owner),
            )
            conn.commit()

    def set_execution_control(
        self,
        execution_id: str,
        *,
        pause_requested: bool | None = None,
        cancel_requested: bool | None = None,
    ) -> ExecutionRecord:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                UPDATE executions
                SET pause_requested = COALESCE(%s, pause_requested),
                    cancel_requested = COALESCE(%s, cancel_requested)
                WHERE execution_id = %s
                """,
                (pause_requested, cancel_requested, execution_id),
            )
            conn.commit()
        refreshed = self.get_execution(execution_id)
        if refreshed is None:
            raise ExecutionNotFound(execution_id)
        return refreshed

    # Audit ledger

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
        event_id = str(uuid.uuid4())
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO audit_events (
                    event_id, task_id, event_timestamp, kind, actor, subject_id,
                    from_state, to_state, reason, payload_json
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    event_id,
                    task_id,
                    timestamp,
                    kind,
                    actor,
                    subject_id,
                    from_state,
                    to_state,
                    reason,
                    self._json_wrapper(payload),
                ),
            ).fetchone()
            conn.commit()
        if row is None:
            raise RuntimeError("Failed to persist audit event")
        return self._row_to_event(row)

    def list_audit_events(self, task_id: str) -> list[AuditEvent]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM audit_events
                WHERE task_id = %s
                ORDER BY event_timestamp, seq
                """,
                (task_id,),
            ).fetchall()
        return [self._row_to_event(row) for row in rows]

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json(raw: Any) -> dict[str, Any]:
        if raw is None:
            return {}
        parsed = json.loads(raw) if isinstance(raw, str) else raw
        if isinstance(parsed, dict):
            return parsed
        return {}

    @classmethod
    def _row_to_task(cls, row: Any) -> TaskRecord:
        payload = {column: row.get(column) for column in TASK_COLUMNS}
        payload["task_id"] = str(row["task_id"])
        payload["context"] = cls._parse_json(row.get("context_json"))
        return TaskRecord.model_validate(payload)

    @classmethod
    def _row_to_execution(cls, row: Any) -> ExecutionRecord:
        payload = cls._parse_json(row["execution_json"])
        payload["pause_requested"] = bool(row["pause_requested"])
        payload["cancel_requested"] = bool(row["cancel_requested"])
        payload["lease_owner"] = row.get("lease_owner")
        payload["lease_expires_at"] = row.get("lease_expires_at")
        return ExecutionRecord.model_validate(payload)

    @classmethod
    def _row_to_event(cls, row: Any) -> AuditEvent:
        return AuditEvent(
            event_id=str(row["event_id"]),
            task_id=str(row["task_id"]),
            seq=int(row["seq"]),
            timestamp=row["event_timestamp"],
            kind=row["kind"],
            actor=row["actor"],
            subject_id=row.get("subject_id"),
            from_state=row.get("from_state"),
            to_state=row.get("to_state"),
            reason=row.get("reason"),
            payload=cls._parse_json(row.get("payload_json")),
        )
