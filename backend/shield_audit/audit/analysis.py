"""Read-time security analysis of a single audit entry.

The analysis is computed when an entry is viewed and is never stored. It is
deterministic: the same entry and related events always give the same
result.
"""

from pydantic import BaseModel

from shield_audit.audit.config import RiskPolicy, is_high_privilege_action
from shield_audit.audit.models import AuditEventType, AuditLogEntry, RiskLevel

FLAG_REPEATED_FAILURES = "Multiple failed attempts"
FLAG_OFF_HOURS = "Off-hours access"
FLAG_NEW_DEVICE = "New device detected"
FLAG_GEOLOCATION = "Geolocation anomaly"
FLAG_HIGH_PRIVILEGE = "High-privilege operation"
FLAG_BULK_ACCESS = "Bulk data access"
FLAG_SUSPICIOUS_AGENT = "Suspicious user agent"

FLAG_WEIGHTS: dict[str, int] = {
    FLAG_REPEATED_FAILURES: 25,
    FLAG_OFF_HOURS: 10,
    FLAG_NEW_DEVICE: 15,
    FLAG_GEOLOCATION: 20,
    FLAG_HIGH_PRIVILEGE: 15,
    FLAG_BULK_ACCESS: 20,
    FLAG_SUSPICIOUS_AGENT: 10,
}

RISK_WEIGHTS: dict[RiskLevel, int] = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 10,
    RiskLevel.HIGH: 20,
    RiskLevel.CRITICAL: 30,
}

RECOMMENDATIONS: dict[str, str] = {
    FLAG_REPEATED_FAILURES: "Review recent authentication failures and consider locking the account",
    FLAG_OFF_HOURS: "Confirm the access was expected outside business hours",
    FLAG_NEW_DEVICE: "Verify the new device with the account owner",
    FLAG_GEOLOCATION: "Verify the request origin and require re-authentication",
    FLAG_HIGH_PRIVILEGE: "Confirm the operation was authorized",
    FLAG_BULK_ACCESS: "Review the volume of records accessed for data exfiltration",
    FLAG_SUSPICIOUS_AGENT: "Investigate the client; automated tooling is not an expected caller",
}

SUSPICIOUS_AGENT_SIGNATURES = (
    "curl",
    "wget",
    "python-requests",
    "sqlmap",
    "nikto",
    "nmap",
    "scrapy",
    "masscan",
)

HIGH_PRIVILEGE_EVENT_TYPES = frozenset({AuditEventType.DATA_DELETION, AuditEventType.EXPORT_DATA})


class SecurityAnalysis(BaseModel):
    threat_level: str
    anomaly_score: int
    flags: list[str]
    recommendations: list[str]


def threat_level_for(score: int) -> str:
    if score <= 0:
        return "none"
    if score < 25:
        return "low"
    if score < 50:
        return "medium"
    if score < 75:
        return "high"
    return "critical"


def is_suspicious_user_agent(user_agent: str | None) -> bool:
    if not user_agent or not user_agent.strip():
        return True
    agent = user_agent.strip().lower()
    if agent == "unknown":
        return True
    return any(signature in agent for signature in SUSPICIOUS_AGENT_SIGNATURES)


class SecurityAnalyzer:
    """Flag anomalies on an entry and score them.

    Args:
        policy: Risk thresholds (repeated failures, bulk access)
        business_hours_start: First business hour, UTC (inclusive)
        business_hours_end: End of business hours, UTC (exclusive)
    """

    def __init__(
        self,
        policy: RiskPolicy | None = None,
        business_hours_start: int = 7,
        business_hours_end: int = 20,
    ) -> None:
        self.policy = policy or RiskPolicy()
        self.business_hours_start = business_hours_start
        self.business_hours_end = business_hours_end

    def analyze(self, entry: AuditLogEntry, related: list[AuditLogEntry]) -> SecurityAnalysis:
        flags = self.flags_for(entry, related)
        score = sum(FLAG_WEIGHTS[flag] for flag in flags) + RISK_WEIGHTS[entry.risk_level]
        score = min(score, 100)
        return SecurityAnalysis(
            threat_level=threat_level_for(score),
            anomaly_score=score,
            flags=flags,
            recommendations=[RECOMMENDATIONS[flag] for flag in flags],
        )

    def flags_for(self, entry: AuditLogEntry, related: list[AuditLogEntry]) -> list[str]:
        flags: list[str] = []

        failures = sum(
            1 for other in related if other.user_id == entry.user_id and not other.success
        )
        if not entry.success:
            failures += 1
        if failures >= self.policy.repeated_failure_threshold:
            flags.append(FLAG_REPEATED_FAILURES)

        hour = entry.timestamp.hour
        if not self.business_hours_start <= hour < self.business_hours_end:
            flags.append(FLAG_OFF_HOURS)

        if entry.details.get("new_device"):
            flags.append(FLAG_NEW_DEVICE)
        if entry.details.get("geolocation_anomaly"):
            flags.append(FLAG_GEOLOCATION)

        if entry.event_type in HIGH_PRIVILEGE_EVENT_TYPES or is_high_privilege_action(
            entry.action, self.policy
        ):
            flags.append(FLAG_HIGH_PRIVILEGE)

        record_count = entry.details.get("record_count")
        if isinstance(record_count, int) and record_count >= self.policy.bulk_access_threshold:
            flags.append(FLAG_BULK_ACCESS)

        if is_suspicious_user_agent(entry.user_agent):
            flags.append(FLAG_SUSPICIOUS_AGENT)

        return flags
