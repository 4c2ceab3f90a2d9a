"""Append-only audit trail."""

from vendoreval.audit.sink import (
    AuditSink,
    AuditSinkError,
    InMemoryAuditSink,
    JsonlFileAuditSink,
    build_audit_event,
    emit_audit,
    get_audit_sink,
)

__all__ = [
    "AuditSink",
    "AuditSinkError",
    "InMemoryAuditSink",
    "JsonlFileAuditSink",
    "build_audit_event",
    "emit_audit",
    "get_audit_sink",
]
