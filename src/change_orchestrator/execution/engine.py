"""Phased, rollback-capable execution of approved plans.

The engine is the only writer of an execution record. A driver first claims a
time-bounded lease on the record in storage, so the API process and the timer
sweep never drive the same execution at once, and every write is fenced on that
lease. Every drive re-reads the durable record, so a crashed drive can be picked
up again once its lease lapses: resources that already have an outcome are never
re-applied.
Operator control (pause, cancel) is written as flags on the record and honored
at phase boundaries.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from datetime import timedelta
from typing import Any, Callable, Iterator
from uuid import uuid4

from change_orchestrator.clock import Clock, SystemClock
from change_orchestrator.errors import ConcurrentModification, ExecutionNotFound, InvalidTransition
from change_orchestrator.execution.connectors import ApplyOutcome, Connector
from change_orchestrator.execution.health import HealthChecker
from change_orchestrator.integrations.itsm import ChangeRecordSink, NullChangeRecordSink
from change_orchestrator.integrations.notifier import LogNotifier, Notification, Notifier
from change_orchestrator.ledger import AuditLedger
from change_orchestrator.storage.base import OrchestratorStorage
from change_orchestrator.storage.models import (
    TERMINAL_EXECUTION_STATUSES,
    ExecutionRecord,
    PhaseState,
    PlanRecord,
    ResourceOutcome,
    TaskRecord,
)

logger = logging.getLogger(__name__)

TASK_STATUS_FOR_EXECUTION = {
    "completed": "completed",
    "failed_with_rollback": "failed_with_rollback",
    "cancelled": "cancelled",
    "expired": "cancelled",
}


class ExecutionEngine:
    def __init__(
        self,
        *,
        storage: OrchestratorStorage,
        ledger: AuditLedger,
        connector: Connector,
        health_checker: HealthChecker,
        clock: Clock | None = None,
        notifier: Notifier | None = None,
        change_records: ChangeRecordSink | None = None,
        fan_out_limit: int = 8,
        auto_rollback_threshold: float = 0.05,
        execution_timeout_s: float = 14400.0,
        lease_s: float = 300.0,
        owner_id: str | None = None,
        trace_url: Callable[[str], str] | None = None,
    ) -> None:
        self.storage = storage
        self.ledger = ledger
        self.connector = connector
        self.health_checker = health_checker
        self.clock = clock or SystemClock()
        self.notifier = notifier or LogNotifier()
        self.change_records = change_records or NullChangeRecordSink()
        self.fan_out_limit = max(1, fan_out_limit)
        self.auto_rollback_threshold = auto_rollback_threshold
        self.execution_timeout_s = execution_timeout_s
        self.lease_s = lease_s
        self.owner_id = owner_id or f"engine-{uuid4()}"
        self.trace_url = trace_url or (lambda task_id: f"/tasks/{task_id}/trace")
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # Lifecycle entry points

    def create(self, task: TaskRecord, plan: PlanRecord, *, gated_phases: list[int]) -> ExecutionRecord:
        now = self.clock.now()
        record = ExecutionRecord(
            execution_id=str(uuid4()),
            task_id=task.task_id,
            plan_id=plan.plan_id,
            environment=plan.environment,
            status="created",
            phases=[
                PhaseState(**phase.model_dump(), index=index)
                for index, phase in enumerate(plan.phases)
            ],
            autonomy_mode=plan.autonomy_mode,
            gated_phases=sorted(set(gated_phases)),
            deadline=now + timedelta(seconds=self.execution_timeout_s),
            created_at=now,
            updated_at=now,
        )
        self.storage.create_execution(record)
        self.ledger.transition(
            task.task_id,
            "execution_transition",
            subject_id=record.execution_id,
            from_state=None,
            to_state="created",
            payload={
                "plan_id": plan.plan_id,
                "autonomy_mode": record.autonomy_mode,
                "gated_phases": record.gated_phases,
                "deadline": record.deadline.isoformat(),
            },
        )
        logger.info(
            "execution event=created execution_id=%s task_id=%s phases=%d gated=%s",
            record.execution_id,
            task.task_id,
            len(record.phases),
            record.gated_phases,
        )
        return record

    def drive(self, execution_id: str) -> ExecutionRecord:
        with self._driving(execution_id, blocking=True) as claimed:
            if not claimed:
                return self._load(execution_id)
            return self._drive(execution_id)

    def request_pause(self, execution_id: str, *, actor: str) -> ExecutionRecord:
        record = self._load(execution_id)
        if record.status in TERMINAL_EXECUTION_STATUSES or record.status == "paused":
            raise InvalidTransition("execution", record.status, "pause")
        self.storage.set_execution_control(execution_id, pause_requested=True)
        self.ledger.record(
            record.task_id,
            "execution_control",
            actor=actor,
            subject_id=execution_id,
            reason="pause requested",
        )
        with self._driving(execution_id) as acquired:
            if acquired:
                return self._drive(execution_id)
        return self._load(execution_id)

    def request_cancel(self, execution_id: str, *, actor: str) -> ExecutionRecord:
        record = self._load(execution_id)
        if record.status in TERMINAL_EXECUTION_STATUSES:
            raise InvalidTransition("execution", record.status, "cancel")
        self.storage.set_execution_control(execution_id, cancel_requested=True)
        self.ledger.record(
            record.task_id,
            "execution_control",
            actor=actor,
            subject_id=execution_id,
            reason="cancel requested",
        )
        with self._driving(execution_id) as acquired:
            if acquired:
                return self._drive(execution_id)
        return self._load(execution_id)

    def resume(self, execution_id: str, *, actor: str) -> ExecutionRecord:
        with self._driving(execution_id) as acquired:
            if not acquired:
                raise InvalidTransition("execution", "running", "resume")
            record = self._load(execution_id)
            if record.status != "paused":
                raise InvalidTransition("execution", record.status, "resume")
            if record.awaiting_promotion:
                raise InvalidTransition("execution", "awaiting_promotion", "resume")
            self.storage.set_execution_control(execution_id, pause_requested=False)
            record = self._load(execution_id)
            record.status = "running"
            record.paused_at = None
            self._save(record)
            self.ledger.transition(
                record.task_id,
                "execution_transition",
                subject_id=execution_id,
                from_state="paused",
                to_state="running",
                actor=actor,
                reason="resumed by operator",
            )
            return self._drive(execution_id)

    def promote(self, execution_id: str, *, actor: str) -> ExecutionRecord:
        with self._driving(execution_id) as acquired:
            if not acquired:
                raise InvalidTransition("execution", "running", "promote")
            record = self._load(execution_id)
            if not record.awaiting_promotion:
                raise InvalidTransition("execution", record.status, "promote")
            index = record.current_phase_index
            record.promoted_phases = sorted({*record.promoted_phases, index})
            record.awaiting_promotion = False
            record.status = "running"
            record.paused_at = None
            self._save(record)
            self.ledger.transition(
                record.task_id,
                "phase_promoted",
                subject_id=self._phase_subject(record, record.phases[index]),
                from_state="awaiting_promotion",
                to_state="promoted",
                actor=actor,
                payload={"phase": record.phases[index].name},
            )
            return self._drive(execution_id)

    def sweep(self) -> list[str]:
        """Drive every execution that is due: waits elapsed, deadlines passed, stalled runs."""
        now = self.clock.now()
        driven: list[str] = []
        for record in self.storage.list_executions():
            if record.status in TERMINAL_EXECUTION_STATUSES:
                continue
            due = now >= record.deadline
            if record.status in ("created", "running"):
                due = due or record.wait_until is None or record.wait_until <= now
            if record.status == "paused":
                due = due or record.cancel_requested
            if not due:
                continue
            with self._driving(record.execution_id) as acquired:
                if not acquired:
                    continue
                try:
                    self._drive(record.execution_id)
                except ConcurrentModification as exc:
                    logger.warning("execution event=sweep_conflict execution_id=%s reason=%s", record.execution_id, exc)
                    continue
                except Exception:  # noqa: BLE001
                    logger.exception("execution event=sweep_failed execution_id=%s", record.execution_id)
                    continue
            driven.append(record.execution_id)
        return driven

    # Drive loop

    def _drive(self, execution_id: str) -> ExecutionRecord:
        record = self._load(execution_id)
        if record.status in TERMINAL_EXECUTION_STATUSES:
            return record
        if record.status == "created":
            self._start(record)

        while True:
            self._renew(record)
            self._refresh_controls(record)
            now = self.clock.now()
            if now >= record.deadline:
                return self._rollback_and_finish(
                    record, "expired", "execution exceeded its global deadline"
                )
            index = record.current_phase_index
            if index >= len(record.phases):
                return self._finish(record, "completed", "all phases passed")
            phase = record.phases[index]
            at_boundary = phase.status == "pending"
            if record.cancel_requested and (at_boundary or record.status == "paused"):
                return self._rollback_and_finish(record, "cancelled", "cancelled by operator")
            if record.status == "paused":
                return record
            if at_boundary:
                if record.pause_requested:
                    return self._pause(record)
                if record.wait_until is not None and now < record.wait_until:
                    return record
                if index in record.gated_phases and index not in record.promoted_phases:
                    return self._await_promotion(record)
                self._start_phase(record, phase)

            if phase.status == "in_progress":
                self._dispatch(record, phase)
            if phase.status == "health_check":
                self._evaluate(record, phase)
            if phase.status in ("failed", "rollback_in_progress", "rolled_back"):
                return self._fail_phase(record, phase)
            self._advance(record, phase)

    def _start(self, record: ExecutionRecord) -> None:
        task = self.storage.get_task(record.task_id)
        plan = self.storage.get_plan(record.plan_id)
        if task is not None and plan is not None:
            record.change_record_id = self.change_records.open(task, plan)
        record.status = "running"
        record.started_at = self.clock.now()
        self._save(record)
        self.ledger.transition(
            record.task_id,
            "execution_transition",
            subject_id=record.execution_id,
            from_state="created",
            to_state="running",
            payload={"change_record_id": record.change_record_id},
        )
        self._notify("execution_started", record, "execution started")
        logger.info("execution event=started execution_id=%s", record.execution_id)

    def _start_phase(self, record: ExecutionRecord, phase: PhaseState) -> None:
        phase.started_at = self.clock.now()
        record.wait_until = None
        self._phase_transition(record, phase, "in_progress")
        self._notify("phase_started", record, f"phase {phase.name} started", phase=phase.name)

    def _dispatch(self, record: ExecutionRecord, phase: PhaseState) -> None:
        total = len(phase.targets)
        failed = sum(1 for item in phase.outcomes.values() if item.status == "failed")
        order = max((item.completion_order for item in phase.outcomes.values()), default=0)
        remaining = iter([rid for rid in phase.targets if rid not in phase.outcomes])
        in_flight: dict[Future[tuple[str, str, bool | None]], str] = {}

        with ThreadPoolExecutor(max_workers=self.fan_out_limit, thread_name_prefix="phase") as pool:
            if not self._budget_exhausted(failed, total):
                self._fill(pool, in_flight, remaining, phase)
            while in_flight:
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    resource_id = in_flight.pop(future)
                    status, detail, healthy = future.result()
                    order += 1
                    if status == "failed":
                        failed += 1
                    phase.outcomes[resource_id] = ResourceOutcome(
                        resource_id=resource_id,
                        status=status,
                        detail=detail,
                        healthy=healthy,
                        completion_order=order,
                        completed_at=self.clock.now(),
                    )
                    self._renew(record)
                    self._save(record)
                    self.ledger.record(
                        record.task_id,
                        "resource_outcome",
                        subject_id=resource_id,
                        to_state=status,
                        reason=detail or None,
                        payload={"execution_id": record.execution_id, "phase": phase.name},
                    )
                if not self._budget_exhausted(failed, total):
                    self._fill(pool, in_flight, remaining, phase)

        skipped = list(remaining)
        if skipped:
            now = self.clock.now()
            for resource_id in skipped:
                phase.outcomes[resource_id] = ResourceOutcome(
                    resource_id=resource_id,
                    status="skipped",
                    detail="failure budget exhausted",
                    completed_at=now,
                )
            self._save(record)
            self.ledger.record(
                record.task_id,
                "resources_skipped",
                subject_id=self._phase_subject(record, phase),
                reason="failure budget exhausted",
                payload={"resources": skipped, "phase": phase.name},
            )
            logger.warning(
                "execution event=early_abort execution_id=%s phase=%s skipped=%d",
                record.execution_id,
                phase.name,
                len(skipped),
            )
        self._phase_transition(record, phase, "health_check")

    def _fill(
        self,
        pool: ThreadPoolExecutor,
        in_flight: dict[Future[tuple[str, str, bool | None]], str],
        remaining: Iterator[str],
        phase: PhaseState,
    ) -> None:
        while len(in_flight) < self.fan_out_limit:
            resource_id = next(remaining, None)
            if resource_id is None:
                return
            in_flight[pool.submit(self._apply_one, resource_id, phase)] = resource_id

    def _apply_one(self, resource_id: str, phase: PhaseState) -> tuple[str, str, bool | None]:
        try:
            outcome = self.connector.apply(resource_id, phase.operation, dict(phase.params))
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "execution event=apply_error resource_id=%s operation=%s reason=%s",
                resource_id,
                phase.operation,
                exc,
            )
            return "failed", f"{type(exc).__name__}: {exc}", None
        if not outcome.success:
            return "failed", outcome.detail, None
        if not self._healthy(resource_id, phase):
            return "failed", "health check failed", False
        return "succeeded", outcome.detail, True

    def _healthy(self, resource_id: str, phase: PhaseState) -> bool:
        try:
            return bool(self.health_checker.check(resource_id, phase))
        except Exception as exc:  # noqa: BLE001
            logger.warning("execution event=health_check_error resource_id=%s reason=%s", resource_id, exc)
            return False

    def _budget_exhausted(self, failed: int, total: int) -> bool:
        return failed > 0 and total > 0 and failed / total >= self.auto_rollback_threshold

    def _evaluate(self, record: ExecutionRecord, phase: PhaseState) -> None:
        total = len(phase.targets)
        failed = sum(1 for item in phase.outcomes.values() if item.status == "failed")
        phase.failure_fraction = failed / total if total else 0.0
        phase.completed_at = self.clock.now()
        if self._budget_exhausted(failed, total):
            self._phase_transition(
                record,
                phase,
                "failed",
                reason=(
                    f"failure fraction {phase.failure_fraction:.4f} reached threshold "
                    f"{self.auto_rollback_threshold:.4f}"
                ),
            )
            self._notify(
                "phase_failed",
                record,
                f"phase {phase.name} failed",
                phase=phase.name,
                failure_fraction=phase.failure_fraction,
            )
            return
        self._phase_transition(record, phase, "passed")
        self._notify("phase_completed", record, f"phase {phase.name} passed", phase=phase.name)

    def _advance(self, record: ExecutionRecord, phase: PhaseState) -> None:
        previous = record.current_phase_index
        record.current_phase_index = previous + 1
        has_next = record.current_phase_index < len(record.phases)
        if has_next and phase.wait_seconds > 0:
            record.wait_until = self.clock.now() + timedelta(seconds=phase.wait_seconds)
        else:
            record.wait_until = None
        self._save(record, expected_phase_index=previous)
        logger.info(
            "execution event=phase_advanced execution_id=%s from=%d to=%d wait_until=%s",
            record.execution_id,
            previous,
            record.current_phase_index,
            record.wait_until,
        )

    def _pause(self, record: ExecutionRecord) -> ExecutionRecord:
        previous = record.status
        record.status = "paused"
        record.paused_at = self.clock.now()
        self._save(record)
        self.ledger.transition(
            record.task_id,
            "execution_transition",
            subject_id=record.execution_id,
            from_state=previous,
            to_state="paused",
            reason="pause requested",
            payload={"phase_index": record.current_phase_index},
        )
        self._notify("execution_paused", record, "execution paused at phase boundary")
        return record

    def _await_promotion(self, record: ExecutionRecord) -> ExecutionRecord:
        phase = record.phases[record.current_phase_index]
        previous = record.status
        record.status = "paused"
        record.awaiting_promotion = True
        record.paused_at = self.clock.now()
        self._save(record)
        self.ledger.transition(
            record.task_id,
            "execution_transition",
            subject_id=record.execution_id,
            from_state=previous,
            to_state="paused",
            reason=f"promotion required before phase {phase.name}",
            payload={"phase_index": phase.index, "autonomy_mode": record.autonomy_mode},
        )
        self._notify("promotion_required", record, f"approval required to start {phase.name}", phase=phase.name)
        return record

    # Rollback and terminal states

    def _fail_phase(self, record: ExecutionRecord, phase: PhaseState) -> ExecutionRecord:
        reason = (
            f"phase {phase.name} failure fraction {phase.failure_fraction:.4f} "
            f"reached threshold {self.auto_rollback_threshold:.4f}"
        )
        if phase.rollback_operation is None:
            if phase.status == "failed":
                self._phase_transition(record, phase, "rolled_back", reason="nothing to revert")
            return self._finish(record, "failed_with_rollback", f"{reason}; nothing to revert")
        if phase.status == "failed":
            self._phase_transition(record, phase, "rollback_in_progress")
        if phase.status == "rollback_in_progress":
            self._revert(record, phase)
            self._phase_transition(record, phase, "rolled_back")
        stuck = self._manual_intervention(phase)
        if stuck:
            reason = f"{reason}; manual intervention required for {', '.join(stuck)}"
        return self._finish(record, "failed_with_rollback", reason)

    def _rollback_and_finish(self, record: ExecutionRecord, status: str, reason: str) -> ExecutionRecord:
        stuck: list[str] = []
        for phase in reversed(record.phases):
            if phase.rollback_operation is None or not phase.succeeded_in_completion_order():
                continue
            self._phase_transition(record, phase, "rollback_in_progress", reason=reason)
            self._revert(record, phase)
            self._phase_transition(record, phase, "rolled_back", reason=reason)
            stuck.extend(self._manual_intervention(phase))
        if stuck:
            reason = f"{reason}; manual intervention required for {', '.join(stuck)}"
        return self._finish(record, status, reason)

    def _revert(self, record: ExecutionRecord, phase: PhaseState) -> None:
        operation = phase.rollback_operation
        assert operation is not None
        for outcome in reversed(phase.succeeded_in_completion_order()):
            resource_id = outcome.resource_id
            try:
                result = self.connector.apply(resource_id, operation, dict(phase.params))
            except Exception as exc:  # noqa: BLE001
                result = ApplyOutcome(success=False, detail=f"{type(exc).__name__}: {exc}")
            reverted = result.success and self._healthy(resource_id, phase)
            if reverted:
                status = "rolled_back"
                detail = result.detail
            else:
                status = "manual_intervention_required"
                detail = result.detail if not result.success else "health check failed after revert"
                logger.error(
                    "execution event=revert_failed execution_id=%s resource_id=%s detail=%s",
                    record.execution_id,
                    resource_id,
                    detail,
                )
            phase.outcomes[resource_id] = outcome.model_copy(
                update={"status": status, "detail": detail, "completed_at": self.clock.now()}
            )
            self._save(record)
            self.ledger.record(
                record.task_id,
                "resource_rolled_back" if reverted else "rollback_partial_failure",
                subject_id=resource_id,
                from_state="succeeded",
                to_state=status,
                reason=detail or None,
                payload={"execution_id": record.execution_id, "phase": phase.name, "operation": operation},
            )

    @staticmethod
    def _manual_intervention(phase: PhaseState) -> list[str]:
        return sorted(
            rid for rid, item in phase.outcomes.items() if item.status == "manual_intervention_required"
        )

    def _finish(self, record: ExecutionRecord, status: str, reason: str) -> ExecutionRecord:
        now = self.clock.now()
        previous = record.status
        record.status = status
        record.status_reason = reason
        record.completed_at = now
        record.wait_until = None
        record.awaiting_promotion = False
        self._save(record)
        self.ledger.transition(
            record.task_id,
            "execution_transition",
            subject_id=record.execution_id,
            from_state=previous,
            to_state=status,
            reason=reason,
        )

        task = self.storage.get_task(record.task_id)
        task_status = TASK_STATUS_FOR_EXECUTION[status]
        self.storage.update_task(
            record.task_id,
            status=task_status,
            status_reason=reason,
            trace_url=self.trace_url(record.task_id),
            completed_at=now,
            updated_at=now,
        )
        self.ledger.transition(
            record.task_id,
            "task_transition",
            subject_id=record.task_id,
            from_state=task.status if task else None,
            to_state=task_status,
            reason=reason,
        )
        if status == "completed":
            self.storage.update_plan(record.plan_id, status="executed")

        if record.change_record_id:
            self.change_records.close(record.change_record_id, outcome=status, notes=reason)
        event = {
            "completed": "execution_completed",
            "failed_with_rollback": "execution_failed",
        }.get(status, "execution_cancelled")
        self._notify(event, record, reason)
        logger.info(
            "execution event=finished execution_id=%s status=%s reason=%s",
            record.execution_id,
            status,
            reason,
        )
        return record

    # Persistence helpers

    def _load(self, execution_id: str) -> ExecutionRecord:
        record = self.storage.get_execution(execution_id)
        if record is None:
            raise ExecutionNotFound(execution_id)
        return record

    def _save(self, record: ExecutionRecord, *, expected_phase_index: int | None = None) -> None:
        record.updated_at = self.clock.now()
        expected = record.current_phase_index if expected_phase_index is None else expected_phase_index
        saved = self.storage.update_execution(
            record, expected_phase_index=expected, owner=self.owner_id
        )
        record.pause_requested = saved.pause_requested
        record.cancel_requested = saved.cancel_requested

    def _refresh_controls(self, record: ExecutionRecord) -> None:
        stored = self._load(record.execution_id)
        record.pause_requested = stored.pause_requested
        record.cancel_requested = stored.cancel_requested

    def _phase_transition(
        self,
        record: ExecutionRecord,
        phase: PhaseState,
        to_state: str,
        *,
        reason: str | None = None,
    ) -> None:
        previous = phase.status
        phase.status = to_state
        self._save(record)
        payload: dict[str, Any] = {"phase": phase.name, "index": phase.index}
        if to_state in ("passed", "failed"):
            payload["failure_fraction"] = phase.failure_fraction
        self.ledger.transition(
            record.task_id,
            "phase_transition",
            subject_id=self._phase_subject(record, phase),
            from_state=previous,
            to_state=to_state,
            reason=reason,
            payload=payload,
        )

    @staticmethod
    def _phase_subject(record: ExecutionRecord, phase: PhaseState) -> str:
        return f"{record.execution_id}/phase/{phase.index}"

    def _notify(self, event: str, record: ExecutionRecord, message: str, **payload: Any) -> None:
        self.notifier.notify(
            Notification(
                event=event,
                task_id=record.task_id,
                occurred_at=self.clock.now(),
                subject_id=record.execution_id,
                message=message,
                payload=payload,
            )
        )

    def _lock_for(self, execution_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(execution_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[execution_id] = lock
            return lock

    @contextmanager
    def _driving(self, execution_id: str, *, blocking: bool = False) -> Iterator[bool]:
        """Yield whether this engine holds both the local lock and the durable lease."""
        lock = self._lock_for(execution_id)
        if not lock.acquire(blocking=blocking):
            yield False
            return
        try:
            claimed = self._claim(execution_id)
            if not claimed:
                logger.info(
                    "execution event=lease_held execution_id=%s owner=%s", execution_id, self.owner_id
                )
            try:
                yield claimed
            finally:
                if claimed:
                    self.storage.release_execution(execution_id, owner=self.owner_id)
        finally:
            lock.release()

    def _claim(self, execution_id: str) -> bool:
        now = self.clock.now()
        return self.storage.claim_execution(
            execution_id,
            owner=self.owner_id,
            now=now,
            lease_until=now + timedelta(seconds=self.lease_s),
        )

    def _renew(self, record: ExecutionRecord) -> None:
        if not self._claim(record.execution_id):
            raise ConcurrentModification(record.execution_id, record.current_phase_index)
