from __future__ import annotations

import hashlib
import hmac
from datetime import UTC, datetime

from change_orchestrator.execution.autonomy import gated_phases
from change_orchestrator.execution.connectors import ApplyOutcome, PlatformRouter, SimulatedConnector
from change_orchestrator.execution.health import HttpHealthChecker
from change_orchestrator.integrations.itsm import SafeChangeRecordSink, ServiceNowChangeRecordSink
from change_orchestrator.integrations.notifier import (
    Notification,
    SafeNotifier,
    WebhookNotifier,
    sign_payload,
)
from change_orchestrator.storage.models import PhaseState, PlanRecord, TaskRecord

NOW = datetime(2024, 1, 1, tzinfo=UTC)


class ExplodingNotifier:
    def notify(self, notification: Notification) -> None:
        raise RuntimeError("webhook down")


class RecordingChangeRecords:
    def __init__(self) -> None:
        self.opened: list[str] = []
        self.closed: list[tuple[str, str]] = []

    def open(self, task: TaskRecord, plan: PlanRecord) -> str | None:
        self.opened.append(task.task_id)
        return "CHG0001"

    def close(self, change_id: str, *, outcome: str, notes: str) -> None:
        self.closed.append((change_id, outcome))


class BrokenChangeRecords:
    def open(self, task: TaskRecord, plan: PlanRecord) -> str | None:
        raise ConnectionError("itsm unreachable")

    def close(self, change_id: str, *, outcome: str, notes: str) -> None:
        raise ConnectionError("itsm unreachable")


def _task() -> TaskRecord:
    return TaskRecord(
        task_id="task-1",
        intent_text="patch staging",
        submitter_id="sam",
        created_at=NOW,
        updated_at=NOW,
    )


def _plan() -> PlanRecord:
    return PlanRecord(
        plan_id="plan-1",
        task_id="task-1",
        agent="patch",
        agent_version="1.0.0",
        environment="staging",
        created_at=NOW,
    )


def test_sign_payload_is_hmac_sha256() -> None:
    body = b'{"event": "task_approved"}'

    assert sign_payload("s3cret", body) == hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()


def test_notification_serializes_timestamp() -> None:
    notification = Notification(event="task_approved", task_id="task-1", occurred_at=NOW, payload={"n": 1})

    body = notification.to_json()

    assert body["occurred_at"] == "2024-01-01T00:00:00+00:00"
    assert body["payload"] == {"n": 1}
    assert body["subject_id"] is None


def test_safe_notifier_swallows_delivery_failures() -> None:
    notification = Notification(event="task_approved", task_id="task-1", occurred_at=NOW)

    SafeNotifier(ExplodingNotifier()).notify(notification)
    SafeNotifier(WebhookNotifier(url="http://127.0.0.1:9/hook", secret="s", timeout_s=0.5)).notify(notification)


def test_safe_change_record_sink_swallows_outages() -> None:
    sink = SafeChangeRecordSink(BrokenChangeRecords())

    assert sink.open(_task(), _plan()) is None
    sink.close("CHG0001", outcome="completed", notes="done")

    unreachable = SafeChangeRecordSink(
        ServiceNowChangeRecordSink(base_url="http://127.0.0.1:9", username="u", password="p", timeout_s=0.5)
    )
    assert unreachable.open(_task(), _plan()) is None


def test_change_record_is_opened_and_closed_around_execution(make_service) -> None:
    records = RecordingChangeRecords()
    service = make_service(change_records=records)

    task = service.submit("Show drift status in production", submitter_id="sam")

    assert task.status == "completed"
    assert records.opened == [task.task_id]
    assert records.closed == [("CHG0001", "completed")]
    execution = service.get_execution(task.active_execution_id)
    assert execution.change_record_id == "CHG0001"


def test_outage_in_change_records_does_not_block_execution(make_service) -> None:
    service = make_service(change_records=BrokenChangeRecords())

    task = service.submit("Show drift status in production", submitter_id="sam")

    assert task.status == "completed"
    assert service.get_execution(task.active_execution_id).change_record_id is None


def test_gated_phases_by_autonomy_mode() -> None:
    assert gated_phases("approve_all", 3) == [1, 2]
    assert gated_phases("canary_only", 3) == [2]
    assert gated_phases("full_auto", 3) == []
    assert gated_phases("risk_based", 3, risk_score=30) == []
    assert gated_phases("risk_based", 3, risk_score=70) == [1, 2]
    assert gated_phases("approve_all", 1) == []


def test_platform_router_dispatches_by_platform() -> None:
    aws, azure = SimulatedConnector(), SimulatedConnector()
    platforms = {"i-1": "aws", "vm-1": "azure", "host-1": "vmware"}
    router = PlatformRouter(
        {"aws": aws, "azure": azure},
        resolve_platform=platforms.get,
    )

    assert router.apply("i-1", "apply_patch", {}).success is True
    assert router.apply("vm-1", "apply_patch", {}).success is True
    unroutable = router.apply("host-1", "apply_patch", {})

    assert aws.applied() == ["i-1"]
    assert azure.applied() == ["vm-1"]
    assert unroutable == ApplyOutcome(success=False, detail="No connector for platform 'vmware'")

    fallback = SimulatedConnector()
    router.default = fallback
    assert router.apply("host-1", "apply_patch", {}).success is True
    assert fallback.applied() == ["host-1"]


def test_http_health_checker_treats_unreachable_as_unhealthy() -> None:
    checker = HttpHealthChecker(url_template="http://127.0.0.1:9/health/{resource_id}", timeout_s=0.5)
    phase = PhaseState(index=0, name="canary", operation="apply_patch", targets=["i-1"])

    assert checker.check("i-1", phase) is False
