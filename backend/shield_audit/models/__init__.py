from shield_audit.models.audit_log import AuditLogArchive, AuditLogRecord

__all__ = [
    "AuditLogArchive",
    "AuditLogRecord",
]
