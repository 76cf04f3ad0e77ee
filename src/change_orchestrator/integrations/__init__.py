"""Outbound collaborators: notifications and ITSM change records."""

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
    sign_payload,
)

__all__ = [
    "ChangeRecordSink",
    "LogNotifier",
    "Notification",
    "Notifier",
    "NullChangeRecordSink",
    "SafeChangeRecordSink",
    "SafeNotifier",
    "ServiceNowChangeRecordSink",
    "WebhookNotifier",
    "sign_payload",
]
