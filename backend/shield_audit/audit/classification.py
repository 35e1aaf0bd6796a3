"""Data classification registry.

Static mapping from resource type to sensitivity level, retention period and
permitted roles. The registry is built once at process start and is read-only
afterwards, so evaluators share it without locking.
"""

from collections.abc import Iterable, Mapping
from types import MappingProxyType

from shield_audit.audit.errors import UnknownResourceTypeError
from shield_audit.audit.models import ClassificationLevel, DataClassification

# HIPAA requires six years; seven covers state-level extensions.
SEVEN_YEARS_DAYS = 2555

PHI_ROLES = frozenset({"authenticated_user", "data_owner", "healthcare_provider"})

DEFAULT_CLASSIFICATIONS: dict[str, DataClassification] = {
    "user_profile": DataClassification(
        level=ClassificationLevel.CONFIDENTIAL,
        categories=frozenset({"PII", "demographic"}),
        retention_period_days=SEVEN_YEARS_DAYS,
        encryption_required=True,
        access_controls=frozenset({"authenticated_user", "data_owner"}),
    ),
    "sleep_data": DataClassification(
        level=ClassificationLevel.RESTRICTED,
        categories=frozenset({"PHI", "biometric"}),
        retention_period_days=SEVEN_YEARS_DAYS,
        encryption_required=True,
        access_controls=PHI_ROLES,
    ),
    "lab_reports": DataClassification(
        level=ClassificationLevel.RESTRICTED,
        categories=frozenset({"PHI", "medical_records"}),
        retention_period_days=SEVEN_YEARS_DAYS,
        encryption_required=True,
        access_controls=PHI_ROLES,
    ),
    "biomarkers": DataClassification(
        level=ClassificationLevel.RESTRICTED,
        categories=frozenset({"PHI", "diagnostic_data"}),
        retention_period_days=SEVEN_YEARS_DAYS,
        encryption_required=True,
        access_controls=PHI_ROLES,
    ),
    "health_alerts": DataClassification(
        level=ClassificationLevel.RESTRICTED,
        categories=frozenset({"PHI", "clinical_alerts"}),
        retention_period_days=SEVEN_YEARS_DAYS,
        encryption_required=True,
        access_controls=PHI_ROLES,
    ),
    "health_metrics": DataClassification(
        level=ClassificationLevel.RESTRICTED,
        categories=frozenset({"PHI", "biometric"}),
        retention_period_days=SEVEN_YEARS_DAYS,
        encryption_required=True,
        access_controls=PHI_ROLES,
    ),
    "user_data": DataClassification(
        level=ClassificationLevel.CONFIDENTIAL,
        categories=frozenset({"PII"}),
        retention_period_days=SEVEN_YEARS_DAYS,
        encryption_required=True,
        access_controls=frozenset({"authenticated_user", "data_owner"}),
    ),
    "audit_logs": DataClassification(
        level=ClassificationLevel.CONFIDENTIAL,
        categories=frozenset({"audit_trail"}),
        retention_period_days=SEVEN_YEARS_DAYS,
        encryption_required=False,
        access_controls=frozenset({"compliance_officer", "admin"}),
    ),
    "security_monitoring": DataClassification(
        level=ClassificationLevel.INTERNAL,
        categories=frozenset({"security_telemetry"}),
        retention_period_days=365,
        encryption_required=False,
        access_controls=frozenset({"security_analyst", "admin"}),
    ),
}

FALLBACK_CLASSIFICATION = DataClassification(
    level=ClassificationLevel.RESTRICTED,
    categories=frozenset({"unclassified"}),
    retention_period_days=SEVEN_YEARS_DAYS,
    encryption_required=True,
    access_controls=frozenset(),
)
"""Used for records whose resource type is not registered.

Most restrictive level, no roles, full retention window: an unknown type is
never granted access and never expires early.
"""


class ClassificationRegistry:
    """Read-only registry of data classifications.

    Args:
        classifications: Mapping of resource type to classification
        default: Classification reported by classify_or_default() on a miss
    """

    def __init__(
        self,
        classifications: Mapping[str, DataClassification] | None = None,
        default: DataClassification = FALLBACK_CLASSIFICATION,
    ) -> None:
        source = DEFAULT_CLASSIFICATIONS if classifications is None else classifications
        self._classifications: Mapping[str, DataClassification] = MappingProxyType(dict(source))
        self._default = default

    def classify(self, resource_type: str) -> DataClassification:
        """Look up the classification of a resource type.

        Raises:
            UnknownResourceTypeError: If the resource type is not registered
        """
        try:
            return self._classifications[resource_type]
        except KeyError:
            raise UnknownResourceTypeError(resource_type) from None

    def classify_or_default(self, resource_type: str) -> DataClassification:
        return self._classifications.get(resource_type, self._default)

    def is_known(self, resource_type: str) -> bool:
        return resource_type in self._classifications

    def resource_types(self) -> list[str]:
        return sorted(self._classifications)

    def items(self) -> Iterable[tuple[str, DataClassification]]:
        return self._classifications.items()


_registry = ClassificationRegistry()


def get_registry() -> ClassificationRegistry:
    """Return the process-wide registry built at import time."""
    return _registry
