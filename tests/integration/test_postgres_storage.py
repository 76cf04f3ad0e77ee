from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest

from change_orchestrator.clock import ManualClock
from change_orchestrator.errors import ConcurrentModification
from change_orchestrator.storage.models import ApprovalRecord, ExecutionRecord, PhaseState
from change_orchestrator.storage.postgres import PostgresOrchestratorStorage

pytestmark = pytest.mark.integration


@pytest.fixture
def storage(database_url: str) -> PostgresOrchestratorStorage:
    backend = PostgresOrchestratorStorage(database_url)
    backend.migrate()
    return backend


def test_task_round_trip_and_request_id_lookup(storage: PostgresOrchestratorStorage) -> None:
    clock = ManualClock()
    request_id = f"req-{uuid4()}"
    task = storage.create_task(
        intent_text="Patch the staging servers",
        context={"limit": 3},
        submitter_id="sam",
        client_request_id=request_id,
        now=clock.now(),
    )

    updated = storage.update_task(task.task_id, status="pending_approval", agent="patch")

    assert updated.status == "pending_approval"
    assert storage.get_task(task.task_id).context == {"limit": 3}
    assert storage.find_task_by_request_id("sam", request_id).task_id == task.task_id


def test_approval_dedupe_and_optimistic_execution_updates(storage: PostgresOrchestratorStorage) -> None:
    clock = ManualClock()
    task = storage.create_task(
        intent_text="Patch the staging servers",
        context={},
        submitter_id="sam",
        client_request_id=None,
        now=clock.now(),
    )
    approval = ApprovalRecord(
        approval_id=str(uuid4()),
        task_id=task.task_id,
        plan_id="plan-1",
        approver_id="alice",
        decision="approve",
        created_at=clock.now(),
    )
    assert storage.add_approval(approval) is True
    assert storage.add_approval(approval.model_copy(update={"approval_id": str(uuid4())})) is False

    record = ExecutionRecord(
        execution_id=str(uuid4()),
        task_id=task.task_id,
        plan_id="plan-1",
        environment="staging",
        status="running",
        phases=[PhaseState(index=0, name="all", operation="apply_patch_nonprod", targets=["a"])],
        deadline=clock.now() + timedelta(hours=1),
        created_at=clock.now(),
        updated_at=clock.now(),
    )
    storage.create_execution(record)
    storage.set_execution_control(record.execution_id, pause_requested=True)

    saved = storage.update_execution(
        record.model_copy(update={"current_phase_index": 1}), expected_phase_index=0
    )
    assert saved.pause_requested is True

    with pytest.raises(ConcurrentModification):
        storage.update_execution(record, expected_phase_index=0)


def test_execution_lease_is_exclusive_and_fences_writes(storage: PostgresOrchestratorStorage) -> None:
    clock = ManualClock()
    task = storage.create_task(
        intent_text="Patch the staging servers",
        context={},
        submitter_id="sam",
        client_request_id=None,
        now=clock.now(),
    )
    record = ExecutionRecord(
        execution_id=str(uuid4()),
        task_id=task.task_id,
        plan_id="plan-1",
        environment="staging",
        status="running",
        phases=[PhaseState(index=0, name="all", operation="apply_patch_nonprod", targets=["a"])],
        deadline=clock.now() + timedelta(hours=1),
        created_at=clock.now(),
        updated_at=clock.now(),
    )
    storage.create_execution(record)
    lease_until = clock.now() + timedelta(seconds=300)

    assert storage.claim_execution(record.execution_id, owner="api", now=clock.now(), lease_until=lease_until)
    assert not storage.claim_execution(
        record.execution_id, owner="sweeper", now=clock.now(), lease_until=lease_until
    )
    with pytest.raises(ConcurrentModification):
        storage.update_execution(record, expected_phase_index=0, owner="sweeper")

    saved = storage.update_execution(
        record.model_copy(update={"status_reason": "phase started"}), expected_phase_index=0, owner="api"
    )
    assert (saved.status_reason, saved.lease_owner) == ("phase started", "api")

    clock.advance(301)
    assert storage.claim_execution(
        record.execution_id,
        owner="sweeper",
        now=clock.now(),
        lease_until=clock.now() + timedelta(seconds=300),
    )
    storage.release_execution(record.execution_id, owner="sweeper")
    assert storage.get_execution(record.execution_id).lease_owner is None


def test_audit_sequence_is_monotonic(storage: PostgresOrchestratorStorage) -> None:
    clock = ManualClock()
    task_id = str(uuid4())

    first = storage.append_audit_event(
        task_id=task_id,
        kind="task_transition",
        timestamp=clock.now(),
        actor="sam",
        subject_id=task_id,
        from_state=None,
        to_state="draft",
        reason=None,
        payload={},
    )
    second = storage.append_audit_event(
        task_id=task_id,
        kind="intent_resolved",
        timestamp=clock.now(),
        actor="system",
        subject_id=task_id,
        from_state=None,
        to_state=None,
        reason=None,
        payload={"agent": "patch"},
    )

    assert second.seq > first.seq
    assert [event.kind for event in storage.list_audit_events(task_id)] == ["task_transition", "intent_resolved"]


def test_prod_patch_flow_over_http(api_base_url: str, post_json, get_json) -> None:
    status, task = post_json(
        api_base_url,
        "/tasks",
        {"intent": "Apply the kernel patch to production", "submitter_id": "sam"},
    )
    assert status == 200
    assert task["status"] == "pending_approval"
    task_id = task["task_id"]

    post_json(api_base_url, f"/tasks/{task_id}/approvals", {"approver_id": "alice"})
    status, executing = post_json(api_base_url, f"/tasks/{task_id}/approvals", {"approver_id": "bob"})
    assert status == 200
    assert executing["status"] == "executing"

    execution_id = executing["active_execution_id"]
    status, promoted = post_json(
        api_base_url, f"/executions/{execution_id}/promote", {"approver_id": "alice"}
    )
    assert status == 200
    assert promoted["status"] == "completed"

    status, trace = get_json(api_base_url, f"/tasks/{task_id}/trace")
    assert status == 200
    assert trace["events"][-1]["to_state"] == "completed"


def test_unknown_task_returns_404(api_base_url: str, get_json) -> None:
    status, body = get_json(api_base_url, "/tasks/does-not-exist")

    assert status == 404
    assert body["error"] == "TaskNotFound"
