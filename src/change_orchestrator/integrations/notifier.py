"""Fire-and-forget notifications for lifecycle events."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Protocol
from urllib import request

logger = logging.getLogger(__name__)

NOTIFICATION_EVENTS = frozenset(
    {
        "task_pending_approval",
        "task_approved",
        "task_rejected",
        "task_expired",
        "execution_started",
        "execution_paused",
        "execution_completed",
        "execution_failed",
        "execution_cancelled",
        "phase_started",
        "phase_completed",
        "phase_failed",
        "promotion_required",
    }
)


@dataclass(frozen=True)
class Notification:
    event: str
    task_id: str
    occurred_at: datetime
    subject_id: str | None = None
    message: str = ""
    payload: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> dict[str, Any]:
        body = asdict(self)
        body["occurred_at"] = self.occurred_at.isoformat()
        return body


class Notifier(Protocol):
    def notify(self, notification: Notification) -> None: ...


class LogNotifier:
    def notify(self, notification: Notification) -> None:
        logger.info(
            "notification event=%s task_id=%s subject_id=%s message=%s",
            notification.event,
            notification.task_id,
            notification.subject_id,
            notification.message,
        )


class WebhookNotifier:
    """POST each notification as JSON, signed with HMAC-SHA256 when a secret is set."""

    def __init__(self, *, url: str, secret: str = "", timeout_s: float = 5.0) -> None:
        self.url = url
        self.secret = secret
        self.timeout_s = timeout_s

    def notify(self, notification: Notification) -> None:
        body = json.dumps(notification.to_json(), sort_keys=True).encode("utf-8")
        headers = {"Content-Type": "application/json", "X-Event-Type": notification.event}
        if self.secret:
            headers["X-Signature-256"] = "sha256=" + sign_payload(self.secret, body)
        req = request.Request(url=self.url, data=body, method="POST", headers=headers)
        with request.urlopen(req, timeout=self.timeout_s) as response:
            response.read()


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class SafeNotifier:
    """Delivery failures are logged and never reach the caller."""

    def __init__(self, inner: Notifier) -> None:
        self.inner = inner

    def notify(self, notification: Notification) -> None:
        if notification.event not in NOTIFICATION_EVENTS:
            logger.warning("notification event=unknown name=%s", notification.event)
        try:
            self.inner.notify(notification)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "notification event=delivery_failed name=%s task_id=%s reason=%s",
                notification.event,
                notification.task_id,
                exc,
            )
