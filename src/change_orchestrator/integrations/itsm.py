"""Best-effort ITSM change records (opened on execution start, closed at the end)."""

from __future__ import annotations

import base64
import json
import logging
from typing import Any, Protocol
from urllib import request

from change_orchestrator.storage.models import PlanRecord, TaskRecord

logger = logging.getLogger(__name__)


class ChangeRecordSink(Protocol):
    def open(self, task: TaskRecord, plan: PlanRecord) -> str | None: ...

    def close(self, change_id: str, *, outcome: str, notes: str) -> None: ...


class NullChangeRecordSink:
    def open(self, task: TaskRecord, plan: PlanRecord) -> str | None:
        return None

    def close(self, change_id: str, *, outcome: str, notes: str) -> None:
        return None


class ServiceNowChangeRecordSink:
    def __init__(self, *, base_url: str, username: str, password: str, timeout_s: float = 5.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
        self._auth_header = f"Basic {token}"

    def open(self, task: TaskRecord, plan: PlanRecord) -> str | None:
        body = {
            "short_description": plan.summary or task.intent_text[:160],
            "description": task.intent_text,
            "type": "normal" if plan.risk_class == "state_change_prod" else "standard",
            "risk": plan.risk_level,
            "correlation_id": task.task_id,
        }
        response = self._send("POST", "/api/now/table/change_request", body)
        result = response.get("result", {})
        return str(result["sys_id"]) if isinstance(result, dict) and result.get("sys_id") else None

    def close(self, change_id: str, *, outcome: str, notes: str) -> None:
        close_code = "successful" if outcome == "completed" else "unsuccessful"
        self._send(
            "PATCH",
            f"/api/now/table/change_request/{change_id}",
            {"state": "closed", "close_code": close_code, "close_notes": notes},
        )

    def _send(self, method: str, path: str, body: dict[str, Any]) -> dict[str, Any]:
        req = request.Request(
            url=f"{self.base_url}{path}",
            data=json.dumps(body).encode("utf-8"),
            method=method,
            headers={
                "Authorization": self._auth_header,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )
        with request.urlopen(req, timeout=self.timeout_s) as response:
            raw = response.read().decode("utf-8")
        return json.loads(raw) if raw else {}


class SafeChangeRecordSink:
    """ITSM outages never block orchestration."""

    def __init__(self, inner: ChangeRecordSink) -> None:
        self.inner = inner

    def open(self, task: TaskRecord, plan: PlanRecord) -> str | None:
        try:
            return self.inner.open(task, plan)
        except Exception as exc:  # noqa: BLE001
            logger.warning("itsm event=open_failed task_id=%s reason=%s", task.task_id, exc)
            return None

    def close(self, change_id: str, *, outcome: str, notes: str) -> None:
        try:
            self.inner.close(change_id, outcome=outcome, notes=notes)
        except Exception as exc:  # noqa: BLE001
            logger.warning("itsm event=close_failed change_id=%s reason=%s", change_id, exc)
