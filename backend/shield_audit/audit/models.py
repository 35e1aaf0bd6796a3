"""Core data structures for the PHI audit engine.

Enums:
    AuditEventType: Kinds of audited events
    RiskLevel: Computed risk tier of an event
    ClassificationLevel: Sensitivity level of a resource type
    RetentionAction: Outcome of a retention evaluation
    RetentionState: Lifecycle marker of a stored audit row

Models:
    RawEvent: Producer-supplied event, untrusted
    RiskContext: Contextual signals consumed by the risk classifier
    AuditLogEntry: Immutable audit row as written by the recorder
    DataClassification: Static registry entry for a resource type
    AccessDecision: Result of an access-control check
    RetentionDecision: Result of a retention evaluation
    RecordResult: Outcome of a recorder call
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class AuditEventType(str, Enum):
    """Types of audited events."""

    DATA_ACCESS = "data_access"
    DATA_MODIFICATION = "data_modification"
    DATA_DELETION = "data_deletion"
    LOGIN_ATTEMPT = "login_attempt"
    LOGOUT = "logout"
    FAILED_ACCESS = "failed_access"
    EXPORT_DATA = "export_data"
    PRINT_DATA = "print_data"
    BIOMARKER_EXTRACTION = "biomarker_extraction"
    LAB_REPORT_UPLOAD = "lab_report_upload"
    HEALTH_ALERT_GENERATED = "health_alert_generated"
    SECURITY_EVENT = "security_event"
    API_REQUEST = "api_request"
    SYSTEM_ACCESS = "system_access"


class RiskLevel(str, Enum):
    """Risk tier, ordered from least to most severe."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return RISK_LEVEL_ORDER.index(self)

    @classmethod
    def from_rank(cls, rank: int) -> "RiskLevel":
        """Return the tier at ``rank``, clamped to the valid range."""
        rank = max(0, min(rank, len(RISK_LEVEL_ORDER) - 1))
        return RISK_LEVEL_ORDER[rank]


RISK_LEVEL_ORDER: list[RiskLevel] = [
    RiskLevel.LOW,
    RiskLevel.MEDIUM,
    RiskLevel.HIGH,
    RiskLevel.CRITICAL,
]

ESCALATION_LEVELS: frozenset[RiskLevel] = frozenset({RiskLevel.HIGH, RiskLevel.CRITICAL})


class ClassificationLevel(str, Enum):
    """Sensitivity level of a classified resource type."""

    PUBLIC = "public"
    INTERNAL = "internal"
    CONFIDENTIAL = "confidential"
    RESTRICTED = "restricted"


class RetentionAction(str, Enum):
    RETAIN = "retain"
    ARCHIVE = "archive"
    DELETE = "delete"


class RetentionState(str, Enum):
    """Lifecycle marker of a stored row. Deleted rows no longer exist."""

    ACTIVE = "active"
    ARCHIVED = "archived"


@dataclass(frozen=True)
class RiskContext:
    """Contextual signals for risk classification.

    Attributes:
        off_hours: Access happened outside business hours
        new_device: Request came from a device not seen before for this user
        geolocation_anomaly: Request origin is unusual for this user
        repeated_failures: Recent failure count for the same principal
        bulk_access_count: Number of records touched by the operation
        high_privilege: Operation requires elevated privileges
        response_status: HTTP status of the audited request, if any
    """

    off_hours: bool = False
    new_device: bool = False
    geolocation_anomaly: bool = False
    repeated_failures: int = 0
    bulk_access_count: int = 0
    high_privilege: bool = False
    response_status: int | None = None


class RawEvent(BaseModel):
    """Event as supplied by a producer.

    Nothing here is trusted. ``id``, ``timestamp`` and ``risk_level`` are
    accepted so that payloads carrying them still parse, but the recorder
    always replaces them with server-side values.
    """

    model_config = ConfigDict(extra="ignore")

    event_type: str | None = None
    user_id: str | None = None
    action: str | None = None
    resource_type: str = "unknown"
    resource_id: str | None = None
    patient_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    success: bool = True
    details: dict[str, Any] = Field(default_factory=dict)

    off_hours: bool = False
    new_device: bool = False
    geolocation_anomaly: bool = False
    repeated_failures: int = 0
    bulk_access_count: int = 0
    high_privilege: bool = False

    id: str | None = None
    timestamp: datetime | None = None
    risk_level: str | None = None

    def risk_context(self) -> RiskContext:
        """Build the classifier context from flags and well-known detail keys."""
        response_status = self.details.get("response_status")
        record_count = self.details.get("record_count")
        bulk = self.bulk_access_count
        if not bulk and isinstance(record_count, int):
            bulk = record_count
        return RiskContext(
            off_hours=self.off_hours,
            new_device=self.new_device or bool(self.details.get("new_device")),
            geolocation_anomaly=self.geolocation_anomaly
            or bool(self.details.get("geolocation_anomaly")),
            repeated_failures=self.repeated_failures,
            bulk_access_count=bulk,
            high_privilege=self.high_privilege,
            response_status=response_status if isinstance(response_status, int) else None,
        )


class AuditLogEntry(BaseModel):
    """Immutable audit log entry.

    Once persisted the content never changes; corrections are recorded as
    new compensating entries.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: datetime
    event_type: AuditEventType
    user_id: str
    action: str
    risk_level: RiskLevel
    resource_type: str
    resource_id: str | None = None
    patient_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    success: bool = True
    details: dict[str, Any] = Field(default_factory=dict)

    @property
    def duration_ms(self) -> float | None:
        value = self.details.get("duration_ms")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return float(value)

    @property
    def session_id(self) -> str | None:
        return self.details.get("session_id")


@dataclass(frozen=True)
class DataClassification:
    """Static classification of a resource type.

    Attributes:
        level: Sensitivity level
        categories: Labels such as PII, PHI, biometric
        retention_period_days: Days a record is kept (> 0)
        encryption_required: Whether data at rest must be encrypted
        access_controls: Roles permitted to act on the resource type
    """

    level: ClassificationLevel
    categories: frozenset[str]
    retention_period_days: int
    encryption_required: bool
    access_controls: frozenset[str]

    def __post_init__(self) -> None:
        if self.retention_period_days <= 0:
            raise ValueError("retention_period_days must be positive")


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: str | None = None


@dataclass(frozen=True)
class RetentionDecision:
    """Retention outcome for a single record, computed on demand."""

    resource_age_days: int
    days_until_expiry: int
    action: RetentionAction

    @property
    def should_retain(self) -> bool:
        return self.action != RetentionAction.DELETE


@dataclass
class RecordResult:
    """Outcome of a recorder call.

    Attributes:
        entry: The entry as built by the recorder
        persisted: Whether the store accepted the write
        escalated: Whether the entry was handed to the escalation notifier
        warnings: Non-fatal conditions observed while recording
        error: Persistence error text when ``persisted`` is False
    """

    entry: AuditLogEntry
    persisted: bool
    escalated: bool = False
    warnings: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def degraded(self) -> bool:
        return not self.persisted
