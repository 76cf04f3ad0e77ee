from __future__ import annotations

from fastapi.testclient import TestClient

from change_orchestrator.api.main import create_app


def _client(make_service, make_settings, **kwargs) -> TestClient:
    service = make_service(**kwargs)
    return TestClient(create_app(service=service, settings_override=make_settings()))


def test_health(make_service, make_settings) -> None:
    client = _client(make_service, make_settings)

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "change-orchestrator"}


def test_tools_and_agents_are_listed(make_service, make_settings) -> None:
    client = _client(make_service, make_settings)

    tools = {item["name"]: item for item in client.get("/tools").json()["tools"]}
    assert tools["apply_patch"]["risk_class"] == "state_change_prod"
    assert tools["apply_patch"]["rollback"] == "revert_patch"
    assert tools["query_assets"]["kind"] == "query"

    agents = {item["name"] for item in client.get("/agents").json()["agents"]}
    assert {"drift", "patch", "compliance"} <= agents


def test_create_task_read_only_completes(make_service, make_settings) -> None:
    client = _client(make_service, make_settings)

    response = client.post(
        "/tasks",
        json={"intent": "Show drift status in production", "submitter_id": "sam"},
    )

    assert response.status_code == 200
    task = response.json()
    assert task["status"] == "completed"
    assert task["agent"] == "drift"

    trace = client.get(f"/tasks/{task['task_id']}/trace").json()
    assert trace["task_id"] == task["task_id"]
    assert trace["events"][-1]["to_state"] == "completed"

    plans = client.get(f"/tasks/{task['task_id']}/plans").json()
    assert [plan["status"] for plan in plans] == ["executed"]

    invocations = client.get(f"/tasks/{task['task_id']}/invocations").json()
    assert [item["tool"] for item in invocations] == ["query_assets", "get_golden_image", "get_drift_status"]

    listed = client.get("/tasks", params={"status": "completed"}).json()
    assert [item["task_id"] for item in listed] == [task["task_id"]]


def test_ambiguous_and_unknown_intents_are_unprocessable(make_service, make_settings) -> None:
    client = _client(make_service, make_settings)

    ambiguous = client.post("/tasks", json={"intent": "patch the drift", "submitter_id": "sam"})
    assert ambiguous.status_code == 422
    assert ambiguous.json()["error"] == "AmbiguousIntent"
    assert ambiguous.json()["candidates"] == ["drift", "patch"]

    unknown = client.post("/tasks", json={"intent": "order lunch for the team", "submitter_id": "sam"})
    assert unknown.status_code == 422
    assert unknown.json()["error"] == "NoMatchingAgent"

    assert client.get("/tasks").json() == []


def test_malformed_context_is_unprocessable(make_service, make_settings) -> None:
    client = _client(make_service, make_settings)

    response = client.post(
        "/tasks",
        json={
            "intent": "Patch the staging servers",
            "submitter_id": "sam",
            "context": {"canary_fraction": 1.5},
        },
    )

    assert response.status_code == 422
    body = response.json()
    assert body["error"] == "ValidationViolation"
    assert body["message"] == "Task context is invalid"
    assert [item.split(":")[0] for item in body["violations"]] == ["context.canary_fraction"]
    assert client.get("/tasks").json() == []


def test_missing_records_return_404(make_service, make_settings) -> None:
    client = _client(make_service, make_settings)

    task = client.get("/tasks/missing")
    assert task.status_code == 404
    assert task.json() == {"error": "TaskNotFound", "message": "Task not found", "task_id": "missing"}

    execution = client.post("/executions/missing/pause", json={"actor": "ops"})
    assert execution.status_code == 404
    assert execution.json()["error"] == "ExecutionNotFound"


def test_prod_patch_approvals_and_promotion_over_http(make_service, make_settings) -> None:
    client = _client(make_service, make_settings)
    task = client.post(
        "/tasks",
        json={"intent": "Apply the kernel patch to production", "submitter_id": "sam"},
    ).json()
    task_id = task["task_id"]
    assert task["status"] == "pending_approval"

    self_approval = client.post(f"/tasks/{task_id}/approvals", json={"approver_id": "sam"})
    assert self_approval.status_code == 403
    assert self_approval.json()["error"] == "ApproverNotEligible"

    first = client.post(f"/tasks/{task_id}/approvals", json={"approver_id": "alice"}).json()
    assert first["status"] == "pending_approval"
    second = client.post(f"/tasks/{task_id}/approvals", json={"approver_id": "bob"}).json()
    assert second["status"] == "executing"

    execution_id = second["active_execution_id"]
    execution = client.get(f"/executions/{execution_id}").json()
    assert execution["awaiting_promotion"] is True

    resumed = client.post(f"/executions/{execution_id}/resume", json={"actor": "ops"})
    assert resumed.status_code == 409
    assert resumed.json()["error"] == "InvalidTransition"

    promoted = client.post(f"/executions/{execution_id}/promote", json={"approver_id": "alice"})
    assert promoted.status_code == 200
    assert promoted.json()["status"] == "completed"
    assert client.get(f"/tasks/{task_id}").json()["status"] == "completed"


def test_cancel_over_http_and_rejects_second_cancel(make_service, make_settings) -> None:
    client = _client(make_service, make_settings)
    task = client.post(
        "/tasks",
        json={"intent": "Apply the kernel patch to production", "submitter_id": "sam"},
    ).json()
    client.post(f"/tasks/{task['task_id']}/approvals", json={"approver_id": "alice"})
    executing = client.post(f"/tasks/{task['task_id']}/approvals", json={"approver_id": "bob"}).json()
    execution_id = executing["active_execution_id"]

    cancelled = client.post(f"/executions/{execution_id}/cancel", json={"actor": "ops"})
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert client.get(f"/tasks/{task['task_id']}").json()["status"] == "cancelled"

    again = client.post(f"/executions/{execution_id}/cancel", json={"actor": "ops"})
    assert again.status_code == 409


def test_rejection_over_http(make_service, make_settings) -> None:
    client = _client(make_service, make_settings)
    task = client.post(
        "/tasks",
        json={"intent": "Apply the kernel patch to production", "submitter_id": "sam"},
    ).json()

    rejected = client.post(
        f"/tasks/{task['task_id']}/approvals",
        json={"approver_id": "bob", "decision": "reject", "notes": "not this week"},
    ).json()

    assert rejected["status"] == "rejected"
    assert client.get(f"/tasks/{task['task_id']}/plan").json()["status"] == "rejected"


def test_timer_tick_expires_stale_approvals(make_service, make_settings, clock) -> None:
    client = _client(make_service, make_settings)
    task = client.post(
        "/tasks",
        json={"intent": "Apply the kernel patch to production", "submitter_id": "sam"},
    ).json()

    assert client.post("/timers/tick").json() == {"expired_tasks": [], "driven_executions": []}

    clock.advance(86_401)
    swept = client.post("/timers/tick").json()

    assert swept["expired_tasks"] == [task["task_id"]]
    assert client.get(f"/tasks/{task['task_id']}").json()["status"] == "expired"
