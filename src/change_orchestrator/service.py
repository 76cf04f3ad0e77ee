"""Orchestrator facade: the task lifecycle from intent to executed change."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable
from uuid import uuid4

from pydantic import ValidationError

from change_orchestrator.agents.registry import AgentRegistry, build_agent_registry
from change_orchestrator.approval.gate import ApprovalGate
from change_orchestrator.approval.scoring import HeuristicQualityScorer, QualityScorer
from change_orchestrator.capabilities.gateway import CapabilityGateway
from change_orchestrator.capabilities.inventory import InventoryProvider, StaticInventory, demo_inventory
from change_orchestrator.capabilities.registry import build_registry
from change_orchestrator.clock import Clock, SystemClock
from change_orchestrator.config.settings import Settings, get_settings
from change_orchestrator.errors import (
    ApprovalTimeout,
    ExecutionNotFound,
    InvalidTransition,
    PolicyDenied,
    QualityThresholdNotMet,
    TaskNotFound,
    UnauthorizedCapability,
    ValidationViolation,
)
from change_orchestrator.execution.autonomy import gated_phases
from change_orchestrator.execution.connectors import Connector, PlatformRouter, SimulatedConnector
from change_orchestrator.execution.engine import ExecutionEngine
from change_orchestrator.execution.health import ConnectorHealthChecker, HealthChecker, HttpHealthChecker
from change_orchestrator.integrations.itsm import (
    ChangeRecordSink,
    NullChangeRecordSink,
    SafeChangeRecordSink,
    ServiceNowChangeRecordSink,
)
from change_orchestrator.integrations.notifier import (
    LogNotifier,
    Notification,
    Notifier,
    SafeNotifier,
    WebhookNotifier,
)
from change_orchestrator.intent.llm_oracle import LlmIntentOracle
from change_orchestrator.intent.resolver import IntentOracle, IntentResolver, TaskSpecification
from change_orchestrator.ledger import AuditLedger
from change_orchestrator.planning import PlanningContext, build_graph, initial_state
from change_orchestrator.storage.base import OrchestratorStorage
from change_orchestrator.storage.models import (
    TERMINAL_EXECUTION_STATUSES,
    TERMINAL_TASK_STATUSES,
    ApprovalRecord,
    AuditEvent,
    ExecutionRecord,
    PlanRecord,
    TaskContext,
    TaskRecord,
    ToolInvocationRecord,
)
from change_orchestrator.validation.pipeline import ValidationPipeline
from change_orchestrator.validation.policy import (
    BuiltinPolicyEvaluator,
    CompositePolicyEvaluator,
    OpaPolicyEvaluator,
    PolicyEvaluator,
)

logger = logging.getLogger(__name__)


class OrchestratorService:
    def __init__(
        self,
        *,
        storage: OrchestratorStorage,
        resolver: IntentResolver,
        planning: PlanningContext,
        gate: ApprovalGate,
        engine: ExecutionEngine,
        ledger: AuditLedger,
        clock: Clock,
        notifier: Notifier | None = None,
        approval_timeout_s: float = 86400.0,
        risk_based_auto_max_score: int = 40,
        revalidate_after_pause_s: float | None = None,
        trace_url: Callable[[str], str] | None = None,
    ) -> None:
        self.storage = storage
        self.resolver = resolver
        self.planning = planning
        self.gate = gate
        self.engine = engine
        self.ledger = ledger
        self.clock = clock
        self.notifier = notifier or LogNotifier()
        self.approval_timeout_s = approval_timeout_s
        self.risk_based_auto_max_score = risk_based_auto_max_score
        self.revalidate_after_pause_s = revalidate_after_pause_s
        self.trace_url = trace_url or (lambda task_id: f"/tasks/{task_id}/trace")
        if self.planning.on_invocation is None:
            self.planning.on_invocation = self._record_invocation
        self.workflow = build_graph(self.planning)
        self._task_locks: dict[str, threading.RLock] = {}
        self._task_locks_guard = threading.Lock()

    # Tasks

    def submit(
        self,
        intent_text: str,
        *,
        submitter_id: str,
        context: dict[str, Any] | None = None,
        client_request_id: str | None = None,
    ) -> TaskRecord:
        if not client_request_id:
            return self._submit(intent_text, submitter_id=submitter_id, context=context)
        # Retries of one request are serialized so only the first creates a task.
        with self._task_lock(f"request:{submitter_id}:{client_request_id}"):
            existing = self.storage.find_task_by_request_id(submitter_id, client_request_id)
            if existing is not None:
                logger.info(
                    "task_submit event=duplicate task_id=%s client_request_id=%s",
                    existing.task_id,
                    client_request_id,
                )
                return existing
            return self._submit(
                intent_text,
                submitter_id=submitter_id,
                context=context,
                client_request_id=client_request_id,
            )

    def _submit(
        self,
        intent_text: str,
        *,
        submitter_id: str,
        context: dict[str, Any] | None,
        client_request_id: str | None = None,
    ) -> TaskRecord:
        task_context = _validated_context(context)
        specification = self.resolver.resolve(intent_text, task_context)
        now = self.clock.now()
        task = self.storage.create_task(
            intent_text=intent_text,
            context=task_context,
            submitter_id=submitter_id,
            client_request_id=client_request_id,
            now=now,
        )
        self.ledger.transition(
            task.task_id,
            "task_transition",
            subject_id=task.task_id,
            from_state=None,
            to_state="draft",
            actor=submitter_id,
            payload={"intent_text": intent_text, "client_request_id": client_request_id},
        )
        self.ledger.record(
            task.task_id,
            "intent_resolved",
            subject_id=task.task_id,
            payload={
                "agent": specification.agent,
                "environment": specification.environment,
                "risk_class": specification.risk_class,
                "tool_calls": [call.tool for call in specification.tool_calls],
                "telemetry": specification.telemetry,
            },
        )
        task = self.storage.update_task(
            task.task_id,
            agent=specification.agent,
            environment=specification.environment,
            risk_class=specification.risk_class,
            updated_at=now,
        )
        logger.info(
            "task_submit event=created task_id=%s agent=%s environment=%s",
            task.task_id,
            specification.agent,
            specification.environment,
        )
        with self._task_lock(task.task_id):
            return self._plan_and_gate(task, specification)

    def get_task(self, task_id: str) -> TaskRecord:
        return self._require_task(task_id)

    def list_tasks(self, *, status: str | None = None) -> list[TaskRecord]:
        return self.storage.list_tasks(status=status)

    def get_plan(self, task_id: str) -> PlanRecord:
        task = self._require_task(task_id)
        if task.active_plan_id is None:
            raise TaskNotFound(task_id)
        plan = self.storage.get_plan(task.active_plan_id)
        if plan is None:
            raise TaskNotFound(task_id)
        return plan

    def list_plans(self, task_id: str) -> list[PlanRecord]:
        self._require_task(task_id)
        return self.storage.list_plans(task_id)

    def list_tool_invocations(self, task_id: str) -> list[ToolInvocationRecord]:
        self._require_task(task_id)
        return self.storage.list_tool_invocations(task_id)

    def trace(self, task_id: str) -> list[AuditEvent]:
        self._require_task(task_id)
        return self.ledger.trace(task_id)

    def approve(
        self,
        task_id: str,
        *,
        approver_id: str,
        decision: str = "approve",
        notes: str = "",
        overrides: dict[str, Any] | None = None,
    ) -> TaskRecord:
        overrides = _validated_context(overrides)
        with self._task_lock(task_id):
            task = self._expire_if_due(self._require_task(task_id))
            if self._already_decided(task, approver_id, decision):
                logger.info(
                    "task_approve event=repeat task_id=%s approver_id=%s decision=%s status=%s",
                    task_id,
                    approver_id,
                    decision,
                    task.status,
                )
                return task
            if task.status == "expired":
                raise ApprovalTimeout(task_id)
            if task.status != "pending_approval" or task.active_plan_id is None:
                raise InvalidTransition("task", task.status, decision)
            plan = self.storage.get_plan(task.active_plan_id)
            if plan is None:
                raise InvalidTransition("task", task.status, decision)

            self.gate.check_eligible(approver_id, task.submitter_id)
            if decision == "approve":
                try:
                    self.gate.check_quality(plan)
                except QualityThresholdNotMet as exc:
                    self.ledger.record(
                        task_id,
                        "approval_blocked",
                        actor=approver_id,
                        subject_id=plan.plan_id,
                        reason=exc.message,
                        payload=exc.detail,
                    )
                    raise

            record = ApprovalRecord(
                approval_id=str(uuid4()),
                task_id=task_id,
                plan_id=plan.plan_id,
                approver_id=approver_id,
                decision=decision,
                scope="plan",
                notes=notes,
                overrides=dict(overrides or {}),
                created_at=self.clock.now(),
            )
            if not self.storage.add_approval(record):
                logger.info(
                    "task_approve event=duplicate task_id=%s approver_id=%s", task_id, approver_id
                )
                return task
            self.ledger.record(
                task_id,
                "approval_recorded",
                actor=approver_id,
                subject_id=plan.plan_id,
                to_state=decision,
                reason=notes or None,
                payload={"overrides": record.overrides},
            )

            outcome = self.gate.decide(
                plan,
                self.storage.list_approvals(task_id, plan_id=plan.plan_id, scope="plan"),
                submitter_id=task.submitter_id,
            )
            logger.info(
                "task_approve event=decided task_id=%s status=%s approvers=%s remaining=%d",
                task_id,
                outcome.status,
                outcome.approvers,
                outcome.remaining,
            )
            if outcome.status == "rejected":
                return self._reject(task, plan, rejected_by=outcome.rejected_by)
            if outcome.status == "modified":
                return self._replan(task, plan, approver_id=approver_id, overrides=record.overrides)
            if outcome.status == "approved":
                reason = f"approved by {', '.join(outcome.approvers)}"
                return self._approve_and_execute(task, plan, actor=approver_id, reason=reason)
            return task

    # Executions

    def get_execution(self, execution_id: str) -> ExecutionRecord:
        record = self.storage.get_execution(execution_id)
        if record is None:
            raise ExecutionNotFound(execution_id)
        return record

    def pause(self, execution_id: str, *, actor: str) -> ExecutionRecord:
        self.get_execution(execution_id)
        return self.engine.request_pause(execution_id, actor=actor)

    def cancel(self, execution_id: str, *, actor: str) -> ExecutionRecord:
        self.get_execution(execution_id)
        return self.engine.request_cancel(execution_id, actor=actor)

    def resume(self, execution_id: str, *, actor: str) -> ExecutionRecord:
        record = self.get_execution(execution_id)
        if record.status == "paused" and not record.awaiting_promotion:
            self._revalidate_if_stale(record)
        return self.engine.resume(execution_id, actor=actor)

    def promote(self, execution_id: str, *, approver_id: str, notes: str = "") -> ExecutionRecord:
        record = self.get_execution(execution_id)
        if not record.awaiting_promotion:
            raise InvalidTransition("execution", record.status, "promote")
        task = self._require_task(record.task_id)
        self.gate.check_eligible(approver_id, task.submitter_id)
        index = record.current_phase_index
        approval = ApprovalRecord(
            approval_id=str(uuid4()),
            task_id=record.task_id,
            plan_id=record.plan_id,
            approver_id=approver_id,
            decision="approve",
            scope=f"phase:{index}",
            notes=notes,
            created_at=self.clock.now(),
        )
        if self.storage.add_approval(approval):
            self.ledger.record(
                record.task_id,
                "approval_recorded",
                actor=approver_id,
                subject_id=record.execution_id,
                to_state="approve",
                reason=notes or None,
                payload={"scope": approval.scope, "phase": record.phases[index].name},
            )
        return self.engine.promote(execution_id, actor=approver_id)

    def recover(self, execution_id: str) -> ExecutionRecord:
        """Re-drive an execution after a crash; recorded resource outcomes are kept."""
        self.get_execution(execution_id)
        return self.engine.drive(execution_id)

    def tick(self) -> dict[str, list[str]]:
        """Timer sweep: expire stale approvals and drive executions that are due."""
        expired: list[str] = []
        for task in self.storage.list_tasks(status="pending_approval"):
            with self._task_lock(task.task_id):
                current = self._require_task(task.task_id)
                if self._expire_if_due(current).status == "expired":
                    expired.append(task.task_id)
        driven = self.engine.sweep()
        if expired or driven:
            logger.info("timer_sweep event=completed expired=%d driven=%d", len(expired), len(driven))
        return {"expired_tasks": expired, "driven_executions": driven}

    # Internals

    def _plan_and_gate(
        self,
        task: TaskRecord,
        specification: TaskSpecification,
        *,
        overrides: dict[str, Any] | None = None,
    ) -> TaskRecord:
        plan_id = str(uuid4())
        context = {**task.context, **(overrides or {})}
        state = initial_state(
            task.task_id,
            plan_id,
            task.intent_text,
            specification,
            task_context=context,
        )
        try:
            result: dict[str, Any] = self.workflow.invoke(state)
        except UnauthorizedCapability as exc:
            self._fail_task(task, exc.message)
            raise
        if result.get("error"):
            reason = f"planning failed: {result['error']}"
            self.ledger.record(task.task_id, "planning_failed", subject_id=plan_id, reason=reason)
            return self._fail_task(task, reason)

        plan: PlanRecord = result["plan"]
        self.storage.save_plan(plan)
        validation = plan.validation
        self.ledger.record(
            task.task_id,
            "plan_proposed",
            subject_id=plan.plan_id,
            to_state=plan.status,
            payload={
                "agent": plan.agent,
                "agent_version": plan.agent_version,
                "risk_class": plan.risk_class,
                "risk_score": plan.risk_score,
                "autonomy_mode": plan.autonomy_mode,
                "phases": [phase.name for phase in plan.phases],
                "quality": plan.quality.total if plan.quality else None,
                "violations": validation.violations if validation else [],
            },
        )
        now = self.clock.now()
        task = self.storage.update_task(
            task.task_id,
            active_plan_id=plan.plan_id,
            risk_class=plan.risk_class,
            updated_at=now,
        )
        if validation is None or not validation.passed:
            violations = validation.violations if validation else ["plan was not validated"]
            self.ledger.record(
                task.task_id,
                "validation_failed",
                subject_id=plan.plan_id,
                reason="; ".join(violations),
                payload={"violations": violations},
            )
            return self.storage.update_task(
                task.task_id,
                status_reason="plan failed validation: " + "; ".join(violations),
                updated_at=now,
            )

        outcome = self.gate.decide(plan, [], submitter_id=task.submitter_id)
        if outcome.status == "approved":
            return self._approve_and_execute(
                task, plan, actor="system", reason=f"auto-approved ({plan.risk_class})"
            )

        deadline = now + timedelta(seconds=self.approval_timeout_s)
        self.ledger.transition(
            task.task_id,
            "task_transition",
            subject_id=task.task_id,
            from_state=task.status,
            to_state="pending_approval",
            payload={
                "required_approvals": self.gate.policy_for(plan).required_approvals,
                "approval_deadline": deadline.isoformat(),
            },
        )
        task = self.storage.update_task(
            task.task_id,
            status="pending_approval",
            status_reason=None,
            approval_deadline=deadline,
            updated_at=now,
        )
        self._notify("task_pending_approval", task, f"{plan.risk_class} plan awaiting approval")
        return task

    def _approve_and_execute(
        self,
        task: TaskRecord,
        plan: PlanRecord,
        *,
        actor: str,
        reason: str,
    ) -> TaskRecord:
        if task.active_execution_id:
            active = self.storage.get_execution(task.active_execution_id)
            if active is not None and active.status not in TERMINAL_EXECUTION_STATUSES:
                raise InvalidTransition("task", "executing", "approve")
        now = self.clock.now()
        self.storage.update_plan(plan.plan_id, status="approved")
        self.ledger.transition(
            task.task_id,
            "plan_transition",
            subject_id=plan.plan_id,
            from_state=plan.status,
            to_state="approved",
            actor=actor,
        )
        self.ledger.transition(
            task.task_id,
            "task_transition",
            subject_id=task.task_id,
            from_state=task.status,
            to_state="approved",
            actor=actor,
            reason=reason,
        )
        task = self.storage.update_task(task.task_id, status="approved", status_reason=reason, updated_at=now)
        self._notify("task_approved", task, reason)

        gated = gated_phases(
            plan.autonomy_mode,
            len(plan.phases),
            risk_score=plan.risk_score,
            risk_based_auto_max_score=self.risk_based_auto_max_score,
        )
        execution = self.engine.create(task, plan, gated_phases=gated)
        self.ledger.transition(
            task.task_id,
            "task_transition",
            subject_id=task.task_id,
            from_state="approved",
            to_state="executing",
            payload={"execution_id": execution.execution_id},
        )
        self.storage.update_task(
            task.task_id,
            status="executing",
            active_execution_id=execution.execution_id,
            updated_at=now,
        )
        self.engine.drive(execution.execution_id)
        return self._require_task(task.task_id)

    def _reject(self, task: TaskRecord, plan: PlanRecord, *, rejected_by: list[str]) -> TaskRecord:
        now = self.clock.now()
        reason = f"rejected by {', '.join(rejected_by)}"
        self.storage.update_plan(plan.plan_id, status="rejected")
        self.ledger.transition(
            task.task_id, "plan_transition", subject_id=plan.plan_id, from_state=plan.status, to_state="rejected"
        )
        return self._terminate(task, "rejected", reason, now=now, event="task_rejected")

    def _replan(
        self,
        task: TaskRecord,
        plan: PlanRecord,
        *,
        approver_id: str,
        overrides: dict[str, Any],
    ) -> TaskRecord:
        now = self.clock.now()
        self.storage.update_plan(plan.plan_id, status="superseded")
        self.ledger.transition(
            task.task_id,
            "plan_transition",
            subject_id=plan.plan_id,
            from_state=plan.status,
            to_state="superseded",
            actor=approver_id,
            reason="modification requested",
        )
        context = {**task.context, **overrides}
        specification = self.resolver.resolve(task.intent_text, context)
        self.ledger.transition(
            task.task_id,
            "task_transition",
            subject_id=task.task_id,
            from_state=task.status,
            to_state="draft",
            actor=approver_id,
            reason="replanning with reviewer overrides",
        )
        task = self.storage.update_task(
            task.task_id,
            status="draft",
            context=context,
            approval_deadline=None,
            updated_at=now,
        )
        return self._plan_and_gate(task, specification)

    def _already_decided(self, task: TaskRecord, approver_id: str, decision: str) -> bool:
        if task.active_plan_id is None:
            return False
        return any(
            existing.approver_id == approver_id and existing.decision == decision
            for existing in self.storage.list_approvals(
                task.task_id, plan_id=task.active_plan_id, scope="plan"
            )
        )

    def _expire_if_due(self, task: TaskRecord) -> TaskRecord:
        if task.status != "pending_approval" or task.approval_deadline is None:
            return task
        now = self.clock.now()
        if now < task.approval_deadline:
            return task
        if task.active_plan_id:
            self.storage.update_plan(task.active_plan_id, status="expired")
            self.ledger.transition(
                task.task_id,
                "plan_transition",
                subject_id=task.active_plan_id,
                from_state="validated",
                to_state="expired",
            )
        return self._terminate(task, "expired", "approval window elapsed", now=now, event="task_expired")

    def _fail_task(self, task: TaskRecord, reason: str) -> TaskRecord:
        return self._terminate(task, "failed", reason, now=self.clock.now(), event=None)

    def _terminate(
        self,
        task: TaskRecord,
        status: str,
        reason: str,
        *,
        now: datetime,
        event: str | None,
    ) -> TaskRecord:
        assert status in TERMINAL_TASK_STATUSES
        self.ledger.transition(
            task.task_id,
            "task_transition",
            subject_id=task.task_id,
            from_state=task.status,
            to_state=status,
            reason=reason,
        )
        task = self.storage.update_task(
            task.task_id,
            status=status,
            status_reason=reason,
            trace_url=self.trace_url(task.task_id),
            completed_at=now,
            updated_at=now,
        )
        if event:
            self._notify(event, task, reason)
        logger.info("task event=terminal task_id=%s status=%s reason=%s", task.task_id, status, reason)
        return task

    def _revalidate_if_stale(self, record: ExecutionRecord) -> None:
        if self.revalidate_after_pause_s is None or record.paused_at is None:
            return
        now = self.clock.now()
        if (now - record.paused_at).total_seconds() <= self.revalidate_after_pause_s:
            return
        plan = self.storage.get_plan(record.plan_id)
        if plan is None:
            return
        task = self._require_task(record.task_id)
        result = self.planning.pipeline.validate(
            plan,
            {"environment": plan.environment, "context": task.context},
            checked_at=now,
        )
        self.storage.update_plan(plan.plan_id, validation=result)
        self.ledger.record(
            record.task_id,
            "plan_revalidated",
            subject_id=plan.plan_id,
            to_state="passed" if result.passed else "failed",
            payload={"violations": result.violations, "paused_at": record.paused_at.isoformat()},
        )
        if not result.passed:
            raise PolicyDenied(result.violations)

    def _record_invocation(self, record: ToolInvocationRecord) -> None:
        self.storage.record_tool_invocation(record)
        self.ledger.record(
            record.task_id,
            "tool_invocation",
            actor=record.agent,
            subject_id=record.invocation_id,
            to_state=record.outcome,
            reason=record.error,
            payload={
                "tool": record.tool,
                "plan_id": record.plan_id,
                "risk_class": record.risk_class,
                "attempts": record.attempts,
                "duration_ms": record.duration_ms,
            },
            timestamp=record.invoked_at,
        )

    def _require_task(self, task_id: str) -> TaskRecord:
        task = self.storage.get_task(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def _task_lock(self, task_id: str) -> threading.RLock:
        with self._task_locks_guard:
            lock = self._task_locks.get(task_id)
            if lock is None:
                lock = threading.RLock()
                self._task_locks[task_id] = lock
            return lock

    def _notify(self, event: str, task: TaskRecord, message: str) -> None:
        self.notifier.notify(
            Notification(
                event=event,
                task_id=task.task_id,
                occurred_at=self.clock.now(),
                subject_id=task.active_plan_id,
                message=message,
            )
        )


def _validated_context(context: dict[str, Any] | None) -> dict[str, Any]:
    try:
        parsed = TaskContext.model_validate(context or {})
    except ValidationError as exc:
        raise ValidationViolation(
            [
                f"context.{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
                for error in exc.errors()
            ],
            message="Task context is invalid",
        ) from exc
    return parsed.model_dump(exclude_none=True)


def build_service(
    settings: Settings | None = None,
    *,
    storage: OrchestratorStorage,
    clock: Clock | None = None,
    inventory: InventoryProvider | None = None,
    connector: Connector | None = None,
    health_checker: HealthChecker | None = None,
    notifier: Notifier | None = None,
    change_records: ChangeRecordSink | None = None,
    scorer: QualityScorer | None = None,
    policy: PolicyEvaluator | None = None,
    oracle: IntentOracle | None = None,
    agents: AgentRegistry | None = None,
) -> OrchestratorService:
    settings = settings or get_settings()
    clock = clock or SystemClock()
    if inventory is None:
        inventory = StaticInventory.from_json(settings.inventory_path) if settings.inventory_path else demo_inventory()

    capabilities = build_registry(inventory)
    if agents is None:
        agents = build_agent_registry(capabilities)
    if oracle is None and settings.resolver_mode.lower() == "llm":
        oracle = LlmIntentOracle(
            api_key=settings.resolved_openai_api_key(),
            model=settings.llm_model,
            base_url=settings.llm_base_url,
            timeout_s=settings.llm_timeout_s,
            max_retries=settings.llm_max_retries,
            backoff_s=settings.llm_backoff_s,
        )
    resolver = IntentResolver(agents, capabilities, mode=settings.resolver_mode, oracle=oracle)
    gateway = CapabilityGateway(
        registry=capabilities,
        tool_timeout_s=settings.tool_timeout_s,
        max_retries=settings.tool_max_retries,
        backoff_s=settings.tool_retry_backoff_s,
    )
    pipeline = ValidationPipeline(capabilities, policy or _build_policy(settings))
    planning = PlanningContext(
        agents=agents,
        capabilities=capabilities,
        gateway=gateway,
        pipeline=pipeline,
        scorer=scorer or HeuristicQualityScorer(settings.quality_weights()),
        clock=clock,
        default_phase_wait_s=settings.default_phase_wait_s,
        autonomy_mode_override=settings.autonomy_mode_override,
    )
    gate = ApprovalGate(
        plan_only_min_quality=settings.plan_only_min_quality,
        prod_min_quality=settings.prod_min_quality,
        prod_required_approvals=settings.prod_required_approvals,
        nonprod_required_approvals=settings.nonprod_required_approvals,
        eligible_approvers=settings.eligible_approvers,
    )

    if notifier is None:
        notifier = (
            WebhookNotifier(
                url=settings.notifier_webhook_url,
                secret=settings.notifier_webhook_secret,
                timeout_s=settings.notifier_timeout_s,
            )
            if settings.notifier_webhook_url
            else LogNotifier()
        )
    if change_records is None:
        change_records = (
            ServiceNowChangeRecordSink(
                base_url=settings.itsm_base_url,
                username=settings.itsm_username,
                password=settings.itsm_password,
                timeout_s=settings.itsm_timeout_s,
            )
            if settings.itsm_base_url
            else NullChangeRecordSink()
        )
    if connector is None:
        platforms = {asset.asset_id: asset.platform for asset in inventory.list_assets()}
        connector = PlatformRouter({}, resolve_platform=platforms.get, default=SimulatedConnector())
    if health_checker is None:
        if settings.health_check_mode == "http" and settings.health_check_url_template:
            health_checker = HttpHealthChecker(
                url_template=settings.health_check_url_template,
                timeout_s=settings.health_check_timeout_s,
            )
        else:
            health_checker = ConnectorHealthChecker()

    safe_notifier = SafeNotifier(notifier)
    ledger = AuditLedger(storage, clock)
    engine = ExecutionEngine(
        storage=storage,
        ledger=ledger,
        connector=connector,
        health_checker=health_checker,
        clock=clock,
        notifier=safe_notifier,
        change_records=SafeChangeRecordSink(change_records),
        fan_out_limit=settings.fan_out_limit,
        auto_rollback_threshold=settings.auto_rollback_threshold,
        execution_timeout_s=settings.execution_timeout_s,
        lease_s=settings.execution_lease_s,
        trace_url=settings.trace_url,
    )
    return OrchestratorService(
        storage=storage,
        resolver=resolver,
        planning=planning,
        gate=gate,
        engine=engine,
        ledger=ledger,
        clock=clock,
        notifier=safe_notifier,
        approval_timeout_s=settings.approval_timeout_s,
        risk_based_auto_max_score=settings.risk_based_auto_max_score,
        revalidate_after_pause_s=settings.revalidate_after_pause_s,
        trace_url=settings.trace_url,
    )


def _build_policy(settings: Settings) -> PolicyEvaluator:
    builtin = BuiltinPolicyEvaluator(
        max_canary_fraction=settings.max_canary_fraction,
        freeze_environments=settings.freeze_environments,
    )
    if settings.policy_mode == "opa" and settings.opa_url:
        opa = OpaPolicyEvaluator(
            base_url=settings.opa_url,
            policy_path=settings.opa_policy_path,
            timeout_s=settings.opa_timeout_s,
        )
        return CompositePolicyEvaluator([builtin, opa])
    return builtin
