from eduflare.platform.audit.models import AuditEntry
from eduflare.platform.audit.schemas import AuditEntryCreate, AuditEntryRead, AuditQuery
from eduflare.platform.audit.service import AuditLog, audit_log

__all__ = [
    "AuditEntry",
    "AuditEntryCreate",
    "AuditEntryRead",
    "AuditQuery",
    "AuditLog",
    "audit_log",
]
