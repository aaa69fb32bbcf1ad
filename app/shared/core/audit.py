"""Audit sink boundary. Storage and retention of audit events live elsewhere."""

from typing import Any, Dict, Optional, Protocol

from app.shared.core.logging import audit_log


class AuditSink(Protocol):
    def record(
        self,
        event: str,
        tenant_id: str,
        user_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None: ...


class StructlogAuditSink:
    """Writes audit events to the `audit` structlog channel."""

    def record(
        self,
        event: str,
        tenant_id: str,
        user_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        audit_log(event, user_id, tenant_id, details)


default_audit_sink = StructlogAuditSink()
