"""Append-only, hash-chained audit trail for access-control state changes."""

from .context import AuditContext, audit_context, get_audit_context, set_audit_context
from .integrity import AuditIntegrity, IntegrityReport, IntegrityStatus, IntegrityViolation
from .models import AuditAction, AuditEvent
from .recorder import AuditRecorder

__all__ = [
    "AuditAction",
    "AuditContext",
    "AuditEvent",
    "AuditIntegrity",
    "AuditRecorder",
    "IntegrityReport",
    "IntegrityStatus",
    "IntegrityViolation",
    "audit_context",
    "get_audit_context",
    "set_audit_context",
]
