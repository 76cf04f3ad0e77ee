"""Audit ledger."""

from change_orchestrator.ledger.ledger import AuditLedger

__all__ = ["AuditLedger"]
