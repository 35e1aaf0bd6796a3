"""Audit risk policy and redaction configuration.

This module defines the tunable policy for the audit engine:
- Base risk tier per event type
- Declared risk floors per event type
- Actions that count as high-privilege
- Redaction rules that keep raw PHI out of the details map
- Size limits for the details map

Numeric thresholds live on RiskPolicy so tier boundaries can be tuned from
settings without touching the classifier.
"""

from dataclasses import dataclass, field

from shield_audit.audit.models import AuditEventType, RiskLevel
from shield_audit.config import Settings

# =============================================================================
# RISK TIERS
# =============================================================================

BASE_RISK_LEVELS: dict[AuditEventType, RiskLevel] = {
    # Reads and session lifecycle
    AuditEventType.DATA_ACCESS: RiskLevel.LOW,
    AuditEventType.LOGIN_ATTEMPT: RiskLevel.LOW,
    AuditEventType.LOGOUT: RiskLevel.LOW,
    AuditEventType.API_REQUEST: RiskLevel.LOW,
    AuditEventType.SYSTEM_ACCESS: RiskLevel.LOW,
    AuditEventType.HEALTH_ALERT_GENERATED: RiskLevel.LOW,
    # Denials start low; the floor below lifts them to medium
    AuditEventType.FAILED_ACCESS: RiskLevel.LOW,
    # Writes and data leaving the system
    AuditEventType.DATA_MODIFICATION: RiskLevel.MEDIUM,
    AuditEventType.DATA_DELETION: RiskLevel.MEDIUM,
    AuditEventType.LAB_REPORT_UPLOAD: RiskLevel.MEDIUM,
    AuditEventType.BIOMARKER_EXTRACTION: RiskLevel.MEDIUM,
    AuditEventType.EXPORT_DATA: RiskLevel.MEDIUM,
    AuditEventType.PRINT_DATA: RiskLevel.MEDIUM,
    # Security monitoring
    AuditEventType.SECURITY_EVENT: RiskLevel.HIGH,
}
"""Starting tier for an event before outcome and context are applied.

Event types not in this mapping start at LOW.
"""

RISK_FLOORS: dict[AuditEventType, RiskLevel] = {
    AuditEventType.DATA_DELETION: RiskLevel.MEDIUM,
    AuditEventType.FAILED_ACCESS: RiskLevel.MEDIUM,
    AuditEventType.EXPORT_DATA: RiskLevel.MEDIUM,
    AuditEventType.SECURITY_EVENT: RiskLevel.HIGH,
}
"""Lowest tier an event type may ever be classified at.

Lab uploads have no floor; their tier comes from BASE_RISK_LEVELS and the
normal escalation rules.
"""

HIGH_PRIVILEGE_ACTIONS: frozenset[str] = frozenset(
    {
        "delete",
        "export",
        "export_data",
        "bulk_export",
        "purge",
        "grant_role",
        "revoke_role",
        "admin",
        "impersonate",
    }
)
"""Actions treated as high-privilege even when the producer does not flag them."""


# =============================================================================
# REDACTION RULES
# =============================================================================

REDACTION_RULES: dict[str, list[str]] = {
    "user_profile": ["first_name", "last_name", "name", "date_of_birth", "dob", "address"],
    "lab_reports": ["result_text", "raw_text", "diagnosis", "file_name"],
    "biomarkers": ["value", "raw_value", "result_text"],
    "*": ["email", "phone", "ssn", "mrn", "password", "token", "secret", "api_key"],
}
"""Mapping of resource_type to detail keys that must never be stored raw.

The "*" key applies to all resource types.
"""

SECRET_FIELDS: frozenset[str] = frozenset({"password", "token", "secret", "api_key"})
"""Redacted keys that are replaced outright instead of hashed."""


# =============================================================================
# SIZE LIMITS
# =============================================================================

MAX_DETAILS_SIZE_BYTES: int = 16384
"""Maximum serialized size of the details map (16 KB)."""


# =============================================================================
# POLICY
# =============================================================================


@dataclass(frozen=True)
class RiskPolicy:
    """Tunable thresholds for the risk classifier.

    Attributes:
        repeated_failure_threshold: Failures that add one context point
        repeated_failure_critical_threshold: Failures that add two context points
        bulk_access_threshold: Records touched that add one context point
        context_points_per_tier: Context points needed to escalate one tier
        base_levels: Starting tier per event type
        floors: Minimum tier per event type
        high_privilege_actions: Actions treated as high-privilege
    """

    repeated_failure_threshold: int = 3
    repeated_failure_critical_threshold: int = 10
    bulk_access_threshold: int = 100
    context_points_per_tier: int = 2
    base_levels: dict[AuditEventType, RiskLevel] = field(
        default_factory=lambda: dict(BASE_RISK_LEVELS)
    )
    floors: dict[AuditEventType, RiskLevel] = field(default_factory=lambda: dict(RISK_FLOORS))
    high_privilege_actions: frozenset[str] = HIGH_PRIVILEGE_ACTIONS

    @classmethod
    def from_settings(cls, settings: Settings) -> "RiskPolicy":
        return cls(
            repeated_failure_threshold=settings.risk_repeated_failure_threshold,
            repeated_failure_critical_threshold=settings.risk_repeated_failure_critical_threshold,
            bulk_access_threshold=settings.risk_bulk_access_threshold,
            context_points_per_tier=settings.risk_context_points_per_tier,
        )


def get_base_level(event_type: AuditEventType, policy: RiskPolicy | None = None) -> RiskLevel:
    """Get the starting risk tier for an event type.

    Args:
        event_type: The audit event type.
        policy: Policy to consult (default thresholds if None).

    Returns:
        The configured base tier, or LOW when the type is not listed.
    """
    levels = policy.base_levels if policy is not None else BASE_RISK_LEVELS
    return levels.get(event_type, RiskLevel.LOW)


def get_floor(event_type: AuditEventType, policy: RiskPolicy | None = None) -> RiskLevel:
    """Get the minimum risk tier for an event type (LOW when none is declared)."""
    floors = policy.floors if policy is not None else RISK_FLOORS
    return floors.get(event_type, RiskLevel.LOW)


def is_high_privilege_action(action: str, policy: RiskPolicy | None = None) -> bool:
    actions = policy.high_privilege_actions if policy is not None else HIGH_PRIVILEGE_ACTIONS
    return action.lower() in actions
