"""Exception hierarchy for the audit engine.

Read-path failures (QueryTimeoutError, QueryError) always reach the caller.
Write-path failures degrade: PersistenceError is caught by the recorder and
EscalationError by the notifier.
"""


class AuditError(Exception):
    """Base class for audit engine errors."""

    pass


class EventValidationError(AuditError):
    """Raised when a raw event is malformed or incomplete.

    Nothing is persisted. Retrying with the same payload will fail again.
    """

    def __init__(self, message: str, fields: dict[str, str] | None = None):
        super().__init__(message)
        self.fields = fields or {}


class UnknownResourceTypeError(AuditError):
    """Raised when a resource type has no classification."""

    def __init__(self, resource_type: str):
        super().__init__(f"Unknown resource type: {resource_type}")
        self.resource_type = resource_type


class PersistenceError(AuditError):
    """Raised when the audit store is unreachable or rejects a write."""

    pass


class QueryTimeoutError(AuditError):
    """Raised when a query exceeds its time budget."""

    def __init__(self, timeout_seconds: float):
        super().__init__(f"Audit query exceeded {timeout_seconds}s")
        self.timeout_seconds = timeout_seconds


class QueryError(AuditError):
    """Raised when the store fails to answer a query."""

    pass


class EscalationError(AuditError):
    """Raised by escalation channels; never propagated past the notifier."""

    pass
