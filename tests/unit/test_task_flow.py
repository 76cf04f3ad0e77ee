from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import pytest

from change_orchestrator.errors import ApprovalTimeout, InvalidTransition, PolicyDenied
from change_orchestrator.execution.connectors import SimulatedConnector
from change_orchestrator.storage.models import PlanRecord
from change_orchestrator.validation.policy import PolicyDecision

PROD_PATCH = "Apply the kernel patch to production"
PROD_DRIFTED = ["prod-web-04", "prod-web-08", "prod-web-12", "prod-web-16", "prod-web-20"]


class SimulatedCrash(BaseException):
    """Escapes ``except Exception`` the way a killed worker would."""


def test_read_only_drift_report_auto_approves_and_completes(make_service, connector, notifier) -> None:
    service = make_service()

    task = service.submit("Show drift status in production", submitter_id="sam")

    assert task.status == "completed"
    assert task.agent == "drift"
    assert task.environment == "production"
    assert task.risk_class == "read_only"
    assert task.trace_url == f"/tasks/{task.task_id}/trace"

    plan = service.get_plan(task.task_id)
    assert plan.status == "executed"
    assert [phase.name for phase in plan.phases] == ["drift-report"]
    assert sorted(plan.affected_resources) == PROD_DRIFTED
    assert sorted(connector.applied("collect_state")) == PROD_DRIFTED
    assert service.storage.list_approvals(task.task_id) == []

    invoked = [item.tool for item in service.list_tool_invocations(task.task_id)]
    assert invoked == ["query_assets", "get_golden_image", "get_drift_status"]

    events = service.trace(task.task_id)
    assert [event.seq for event in events] == sorted(event.seq for event in events)
    assert events[0].kind == "task_transition"
    assert events[0].to_state == "draft"
    assert events[-1].to_state == "completed"
    assert "execution_completed" in notifier.events


def test_prod_patch_waits_for_two_approvals_and_canary_gate(make_service, connector, notifier) -> None:
    service = make_service()

    task = service.submit(PROD_PATCH, submitter_id="sam")
    assert task.status == "pending_approval"
    assert task.approval_deadline is not None
    assert "task_pending_approval" in notifier.events

    plan = service.get_plan(task.task_id)
    assert plan.risk_class == "state_change_prod"
    assert plan.autonomy_mode == "canary_only"
    assert [len(phase.targets) for phase in plan.phases] == [2, 5, 13]
    assert connector.calls == []

    after_first = service.approve(task.task_id, approver_id="alice")
    assert after_first.status == "pending_approval"

    after_second = service.approve(task.task_id, approver_id="bob")
    assert after_second.status == "executing"

    execution = service.get_execution(after_second.active_execution_id)
    assert execution.status == "paused"
    assert execution.awaiting_promotion is True
    assert execution.current_phase_index == 2
    assert [phase.status for phase in execution.phases] == ["passed", "passed", "pending"]
    assert len(connector.applied("apply_patch")) == 7
    assert "promotion_required" in notifier.events

    done = service.promote(execution.execution_id, approver_id="alice")
    assert done.status == "completed"
    assert len(connector.applied("apply_patch")) == 20
    assert service.get_task(task.task_id).status == "completed"
    assert len(service.storage.list_approvals(task.task_id, scope="phase:2")) == 1


def test_prod_canary_failure_rolls_back_only_succeeded_resources(make_service) -> None:
    connector = SimulatedConnector(failures={"prod-web-02"})
    service = make_service(connector=connector)

    task = service.submit(PROD_PATCH, submitter_id="sam")
    service.approve(task.task_id, approver_id="alice")
    result = service.approve(task.task_id, approver_id="bob")

    assert result.status == "failed_with_rollback"
    assert result.trace_url == f"/tasks/{task.task_id}/trace"
    assert sorted(connector.applied("apply_patch")) == ["prod-web-01", "prod-web-02"]
    assert connector.applied("revert_patch") == ["prod-web-01"]

    execution = service.get_execution(result.active_execution_id)
    assert execution.status == "failed_with_rollback"
    canary = execution.phases[0]
    assert canary.status == "rolled_back"
    assert canary.failure_fraction == pytest.approx(0.5)
    assert canary.outcomes["prod-web-01"].status == "rolled_back"
    assert canary.outcomes["prod-web-02"].status == "failed"
    assert [phase.status for phase in execution.phases[1:]] == ["pending", "pending"]

    kinds = [event.kind for event in service.trace(task.task_id)]
    assert "resource_rolled_back" in kinds


def test_pending_approval_expires_on_timer_sweep(make_service, clock, notifier) -> None:
    service = make_service()
    task = service.submit(PROD_PATCH, submitter_id="sam")

    clock.advance(86399)
    assert service.tick()["expired_tasks"] == []

    clock.advance(1)
    result = service.tick()

    assert result["expired_tasks"] == [task.task_id]
    expired = service.get_task(task.task_id)
    assert expired.status == "expired"
    assert service.storage.get_plan(expired.active_plan_id).status == "expired"
    assert "task_expired" in notifier.events
    with pytest.raises(ApprovalTimeout):
        service.approve(task.task_id, approver_id="alice")


def test_late_approval_expires_the_task_lazily(make_service, clock) -> None:
    service = make_service()
    task = service.submit(PROD_PATCH, submitter_id="sam")
    clock.advance(90000)

    with pytest.raises(ApprovalTimeout):
        service.approve(task.task_id, approver_id="alice")

    assert service.get_task(task.task_id).status == "expired"
    assert service.storage.list_approvals(task.task_id) == []


def test_pause_mid_phase_takes_effect_at_next_boundary(make_service) -> None:
    holder: dict[str, Any] = {}

    def pause_during_wave(resource_id: str, operation: str, params: dict[str, Any]) -> None:
        if resource_id == "prod-web-03" and operation == "apply_patch" and "paused" not in holder:
            holder["paused"] = holder["service"].pause(holder["execution_id"](), actor="ops")

    connector = SimulatedConnector(hook=pause_during_wave)
    service = make_service(connector=connector)
    holder["service"] = service
    holder["execution_id"] = lambda: service.storage.list_executions()[0].execution_id

    task = service.submit(PROD_PATCH, submitter_id="sam")
    service.approve(task.task_id, approver_id="alice")
    service.approve(task.task_id, approver_id="bob")

    # The request lands while the wave is in flight, so it is only recorded.
    assert holder["paused"].status == "running"
    execution = service.get_execution(holder["execution_id"]())
    assert execution.status == "paused"
    assert execution.awaiting_promotion is False
    assert execution.current_phase_index == 2
    wave = execution.phases[1]
    assert wave.status == "passed"
    assert sorted(wave.outcomes) == [f"prod-web-{index:02d}" for index in range(3, 8)]
    assert len(connector.applied("apply_patch")) == 7

    with pytest.raises(InvalidTransition):
        service.promote(execution.execution_id, approver_id="alice")

    resumed = service.resume(execution.execution_id, actor="ops")
    assert resumed.status == "paused"
    assert resumed.awaiting_promotion is True

    done = service.promote(execution.execution_id, approver_id="alice")
    assert done.status == "completed"
    assert len(connector.applied("apply_patch")) == 20


def test_cancel_while_awaiting_promotion_rolls_back_completed_phases(make_service, connector) -> None:
    service = make_service()
    task = service.submit(PROD_PATCH, submitter_id="sam")
    service.approve(task.task_id, approver_id="alice")
    executing = service.approve(task.task_id, approver_id="bob")

    cancelled = service.cancel(executing.active_execution_id, actor="ops")

    assert cancelled.status == "cancelled"
    assert cancelled.status_reason == "cancelled by operator"
    # Later phases are reverted first.
    reverted = connector.applied("revert_patch")
    assert sorted(reverted[:5]) == [f"prod-web-{index:02d}" for index in range(3, 8)]
    assert sorted(reverted[5:]) == ["prod-web-01", "prod-web-02"]
    assert service.get_task(task.task_id).status == "cancelled"


def test_crashed_execution_resumes_without_reapplying(make_service) -> None:
    crashed: list[str] = []

    def crash_once(resource_id: str, operation: str, params: dict[str, Any]) -> None:
        if resource_id == "stg-web-05" and not crashed:
            crashed.append(resource_id)
            raise SimulatedCrash(resource_id)

    connector = SimulatedConnector(hook=crash_once)
    service = make_service(connector=connector, fan_out_limit=1, autonomy_mode_override="full_auto")
    task = service.submit("Patch the staging servers", submitter_id="sam")
    assert task.status == "pending_approval"

    with pytest.raises(SimulatedCrash):
        service.approve(task.task_id, approver_id="alice")

    stalled = service.get_task(task.task_id)
    assert stalled.status == "executing"
    execution = service.get_execution(stalled.active_execution_id)
    assert execution.status == "running"
    assert execution.phases[2].status == "in_progress"
    assert sorted(execution.phases[2].outcomes) == ["stg-web-04"]

    recovered = service.recover(execution.execution_id)

    assert recovered.status == "completed"
    applied = connector.applied("apply_patch_nonprod")
    assert applied == [f"stg-web-{index:02d}" for index in range(1, 9)]
    assert service.get_task(task.task_id).status == "completed"


def test_phase_wait_is_resumed_by_timer_sweep(make_service, clock, connector) -> None:
    service = make_service(default_phase_wait_s=600.0, autonomy_mode_override="full_auto")
    task = service.submit("Patch the staging servers", submitter_id="sam")
    executing = service.approve(task.task_id, approver_id="alice")

    execution = service.get_execution(executing.active_execution_id)
    assert execution.status == "running"
    assert execution.current_phase_index == 1
    assert execution.wait_until is not None
    assert connector.applied("apply_patch_nonprod") == ["stg-web-01"]

    clock.advance(300)
    assert service.tick()["driven_executions"] == []

    clock.advance(300)
    assert service.tick()["driven_executions"] == [execution.execution_id]
    assert service.get_execution(execution.execution_id).current_phase_index == 2

    clock.advance(600)
    service.tick()
    assert service.get_execution(execution.execution_id).status == "completed"
    assert len(connector.applied("apply_patch_nonprod")) == 8


def test_duplicate_client_request_id_returns_the_same_task(make_service) -> None:
    service = make_service()

    first = service.submit(PROD_PATCH, submitter_id="sam", client_request_id="req-1")
    second = service.submit(PROD_PATCH, submitter_id="sam", client_request_id="req-1")

    assert second.task_id == first.task_id
    assert len(service.list_tasks()) == 1


def test_change_freeze_leaves_task_in_draft(make_service) -> None:
    service = make_service(freeze_environments=["production"])

    task = service.submit(PROD_PATCH, submitter_id="sam")

    assert task.status == "draft"
    assert "change freeze in effect for production" in (task.status_reason or "")
    plan = service.get_plan(task.task_id)
    assert plan.status == "invalid"
    assert plan.validation is not None and plan.validation.passed is False
    assert "validation_failed" in [event.kind for event in service.trace(task.task_id)]


class SwitchablePolicy:
    def __init__(self) -> None:
        self.deny = False

    def evaluate(self, plan: PlanRecord, facts: dict[str, Any]) -> PolicyDecision:
        if self.deny:
            return PolicyDecision(allow=False, reasons=["maintenance window closed"])
        return PolicyDecision(allow=True)


def test_long_pause_is_revalidated_before_resume(make_service, clock, connector) -> None:
    policy = SwitchablePolicy()
    service = make_service(
        policy=policy,
        default_phase_wait_s=600.0,
        revalidate_after_pause_s=3600.0,
        autonomy_mode_override="full_auto",
    )
    task = service.submit("Patch the staging servers", submitter_id="sam")
    executing = service.approve(task.task_id, approver_id="alice")
    execution_id = executing.active_execution_id

    paused = service.pause(execution_id, actor="ops")
    assert paused.status == "paused"
    assert paused.paused_at == clock.now()

    clock.advance(7200)
    policy.deny = True
    with pytest.raises(PolicyDenied) as excinfo:
        service.resume(execution_id, actor="ops")

    assert excinfo.value.reasons == ["maintenance window closed"]
    assert service.get_execution(execution_id).status == "paused"
    assert connector.applied("apply_patch_nonprod") == ["stg-web-01"]
    assert "plan_revalidated" in [event.kind for event in service.trace(task.task_id)]

    policy.deny = False
    resumed = service.resume(execution_id, actor="ops")
    assert resumed.status == "running"
    assert resumed.current_phase_index == 2

    clock.advance(601)
    service.tick()
    assert service.get_execution(execution_id).status == "completed"
    assert len(connector.applied("apply_patch_nonprod")) == 8


@pytest.mark.parametrize("approvers", [("alice", "bob"), ("bob", "alice")])
def test_prod_wave_failure_rolls_back_that_wave_and_keeps_the_canary(make_service, approvers) -> None:
    connector = SimulatedConnector(failures={"prod-web-05"})
    service = make_service(quality=85.0, connector=connector)
    task = service.submit(PROD_PATCH, submitter_id="sam")
    assert [len(phase.targets) for phase in service.get_plan(task.task_id).phases] == [2, 5, 13]

    first, second = approvers
    assert service.approve(task.task_id, approver_id=first).status == "pending_approval"
    result = service.approve(task.task_id, approver_id=second)

    assert result.status == "failed_with_rollback"
    execution = service.get_execution(result.active_execution_id)
    assert execution.status == "failed_with_rollback"
    assert [phase.status for phase in execution.phases] == ["passed", "rolled_back", "pending"]

    canary, wave, remainder = execution.phases
    assert {rid: item.status for rid, item in canary.outcomes.items()} == {
        "prod-web-01": "succeeded",
        "prod-web-02": "succeeded",
    }
    assert wave.failure_fraction == pytest.approx(0.2)
    assert wave.outcomes["prod-web-05"].status == "failed"
    reverted = ["prod-web-03", "prod-web-04", "prod-web-06", "prod-web-07"]
    assert sorted(rid for rid, item in wave.outcomes.items() if item.status == "rolled_back") == reverted
    assert sorted(connector.applied("revert_patch")) == reverted
    assert remainder.outcomes == {}
    assert len(connector.applied("apply_patch")) == 7


def test_sweeper_in_another_process_never_drives_a_leased_execution(make_service) -> None:
    holder: dict[str, Any] = {}

    def sweep_during_first_apply(resource_id: str, operation: str, params: dict[str, Any]) -> None:
        if resource_id == "stg-web-01" and "swept" not in holder:
            holder["swept"] = holder["sweeper"].tick()

    connector = SimulatedConnector(hook=sweep_during_first_apply)
    service = make_service(connector=connector, autonomy_mode_override="full_auto")
    holder["sweeper"] = make_service(connector=connector, autonomy_mode_override="full_auto")

    task = service.submit("Patch the staging servers", submitter_id="sam")
    done = service.approve(task.task_id, approver_id="alice")

    assert holder["swept"]["driven_executions"] == []
    assert done.status == "completed"
    assert sorted(connector.applied("apply_patch_nonprod")) == [f"stg-web-{index:02d}" for index in range(1, 9)]
    assert service.get_execution(done.active_execution_id).lease_owner is None


def _run_together(calls: list[Any]) -> list[Any]:
    barrier = threading.Barrier(len(calls))

    def _call(call: Any) -> Any:
        barrier.wait()
        return call()

    with ThreadPoolExecutor(max_workers=len(calls)) as pool:
        return [future.result() for future in [pool.submit(_call, call) for call in calls]]


def test_concurrent_retries_of_one_request_create_a_single_task(make_service) -> None:
    service = make_service()

    results = _run_together(
        [
            lambda: service.submit(PROD_PATCH, submitter_id="sam", client_request_id="req-7")
            for _ in range(6)
        ]
    )

    assert len({task.task_id for task in results}) == 1
    assert len(service.list_tasks()) == 1
    assert len(service.list_plans(results[0].task_id)) == 1


def test_concurrent_approvals_start_at_most_one_execution_per_task(make_service, connector) -> None:
    service = make_service()
    tasks = [service.submit(PROD_PATCH, submitter_id="sam") for _ in range(3)]

    results = _run_together(
        [
            lambda task_id=task.task_id, approver=approver: service.approve(task_id, approver_id=approver)
            for task in tasks
            for approver in ("alice", "bob", "alice")
        ]
    )

    assert {item.status for item in results} <= {"pending_approval", "executing"}
    executions = service.storage.list_executions()
    assert sorted(item.task_id for item in executions) == sorted(task.task_id for task in tasks)
    for task in tasks:
        current = service.get_task(task.task_id)
        assert current.status == "executing"
        (execution,) = [item for item in executions if item.task_id == task.task_id]
        assert current.active_execution_id == execution.execution_id
        assert execution.awaiting_promotion is True
        active = [plan for plan in service.list_plans(task.task_id) if plan.status != "superseded"]
        assert [plan.plan_id for plan in active] == [current.active_plan_id]
        assert len(service.storage.list_approvals(task.task_id, scope="plan")) == 2
    assert len(connector.applied("apply_patch")) == 21
