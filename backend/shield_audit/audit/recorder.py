"""Audit event recorder.

This module provides the AuditRecorder class, the single entry point that
turns a producer's RawEvent into a persisted AuditLogEntry:

1. Validate the event (EventValidationError, nothing persisted)
2. Assign id and timestamp server-side
3. Classify the resource type (unknown types are recorded with a warning)
4. Compute the risk tier
5. Sanitize details
6. Append once through the repository
7. Hand high/critical entries to the escalation sink

Write-path trade-off: a persistence failure never fails the business action
that produced the event. The recorder rolls back, writes the complete entry
to the ``shield_audit.audit.fallback`` logger at error level, counts the
failure and returns ``persisted=False``. Read-path errors, by contrast,
always propagate (see query.py). Escalation errors are logged and dropped.
"""

import logging
from datetime import datetime, timezone
from typing import Protocol
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shield_audit.audit.classification import ClassificationRegistry, get_registry
from shield_audit.audit.errors import EventValidationError, PersistenceError
from shield_audit.audit.models import (
    ESCALATION_LEVELS,
    AuditEventType,
    AuditLogEntry,
    RawEvent,
    RecordResult,
)
from shield_audit.audit.redaction import sanitize_details
from shield_audit.audit.repository import AuditRepository
from shield_audit.audit.risk import RiskClassifier

logger = logging.getLogger(__name__)
fallback_logger = logging.getLogger("shield_audit.audit.fallback")


class EscalationSink(Protocol):
    """Receives high and critical entries. Must not block the caller."""

    def notify(self, entry: AuditLogEntry) -> None: ...


def validate_event(event: RawEvent) -> AuditEventType:
    """Check required fields and return the parsed event type.

    Raises:
        EventValidationError: If event_type is unknown or user_id/action
            is missing or empty
    """
    invalid: dict[str, str] = {}

    event_type: AuditEventType | None = None
    if not event.event_type:
        invalid["event_type"] = "required"
    else:
        try:
            event_type = AuditEventType(event.event_type)
        except ValueError:
            invalid["event_type"] = f"unknown event type: {event.event_type}"

    if not event.user_id or not event.user_id.strip():
        invalid["user_id"] = "required"
    if not event.action or not event.action.strip():
        invalid["action"] = "required"

    if invalid:
        raise EventValidationError("Invalid audit event", fields=invalid)
    return event_type


class AuditRecorder:
    """Records audit events.

    The recorder keeps no lock and no per-event state; each call opens its
    own session from ``session_factory``.

    Args:
        session_factory: Factory for database sessions
        registry: Classification registry (process-wide registry if None)
        classifier: Risk classifier (default policy if None)
        escalation: Sink for high/critical entries (None disables escalation)
        pii_hash_salt: Salt for hash references in sanitized details
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: ClassificationRegistry | None = None,
        classifier: RiskClassifier | None = None,
        escalation: EscalationSink | None = None,
        pii_hash_salt: str = "",
    ) -> None:
        self._session_factory = session_factory
        self._registry = registry or get_registry()
        self._classifier = classifier or RiskClassifier()
        self._escalation = escalation
        self._pii_hash_salt = pii_hash_salt
        self._persistence_failures = 0

    @property
    def persistence_failures(self) -> int:
        """Number of entries that could not be persisted since startup."""
        return self._persistence_failures

    async def record(self, event: RawEvent) -> RecordResult:
        """Record one event.

        Args:
            event: Producer-supplied event

        Returns:
            RecordResult; ``persisted`` is False when the store rejected the
            write (the entry is then in the fallback log)

        Raises:
            EventValidationError: If the event fails validation
        """
        event_type = validate_event(event)

        if event.id is not None or event.timestamp is not None or event.risk_level is not None:
            logger.debug(
                f"Ignoring client-supplied id/timestamp/risk_level for {event_type.value} "
                f"from user {event.user_id}"
            )

        warnings: list[str] = []
        if not self._registry.is_known(event.resource_type):
            warnings.append(f"unknown resource type: {event.resource_type}")
            logger.warning(f"Recording event for unknown resource type {event.resource_type}")

        risk_level = self._classifier.classify_event(event, event_type)
        details, truncated = sanitize_details(
            event.details, event.resource_type, self._pii_hash_salt
        )
        if truncated:
            warnings.append("details exceeded size limit and were replaced by a hash reference")

        entry = AuditLogEntry(
            id=str(uuid4()),
            timestamp=datetime.now(tz=timezone.utc),
            event_type=event_type,
            user_id=event.user_id,
            action=event.action,
            risk_level=risk_level,
            resource_type=event.resource_type,
            resource_id=event.resource_id,
            patient_id=event.patient_id,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            success=event.success,
            details=details,
        )

        persisted = True
        error: str | None = None
        try:
            async with self._session_factory() as session:
                await AuditRepository(session).append(entry)
        except PersistenceError as e:
            persisted = False
            error = str(e)
            self._persistence_failures += 1
            fallback_logger.error(entry.model_dump_json())
            logger.error(f"Audit entry {entry.id} not persisted: {e}")

        escalated = False
        if risk_level in ESCALATION_LEVELS and self._escalation is not None:
            escalated = self._escalate(entry)

        return RecordResult(
            entry=entry, persisted=persisted, escalated=escalated, warnings=warnings, error=error
        )

    def _escalate(self, entry: AuditLogEntry) -> bool:
        try:
            self._escalation.notify(entry)
        except Exception as e:
            logger.warning(f"Escalation of audit entry {entry.id} failed: {e}")
            return False
        return True
