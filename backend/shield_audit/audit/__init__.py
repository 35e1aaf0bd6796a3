"""PHI audit engine: classification, access control, risk, recording, retention and queries."""

from shield_audit.audit.errors import (
    AuditError,
    EscalationError,
    EventValidationError,
    PersistenceError,
    QueryError,
    QueryTimeoutError,
    UnknownResourceTypeError,
)
from shield_audit.audit.models import (
    AccessDecision,
    AuditEventType,
    AuditLogEntry,
    ClassificationLevel,
    DataClassification,
    RawEvent,
    RecordResult,
    RetentionAction,
    RetentionDecision,
    RiskContext,
    RiskLevel,
)

__all__ = [
    "AccessDecision",
    "AuditError",
    "AuditEventType",
    "AuditLogEntry",
    "ClassificationLevel",
    "DataClassification",
    "EscalationError",
    "EventValidationError",
    "PersistenceError",
    "QueryError",
    "QueryTimeoutError",
    "RawEvent",
    "RecordResult",
    "RetentionAction",
    "RetentionDecision",
    "RiskContext",
    "RiskLevel",
    "UnknownResourceTypeError",
]
