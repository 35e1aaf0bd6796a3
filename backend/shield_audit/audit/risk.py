"""Risk classifier for audit events.

classify() is a pure function of the event type, the outcome, the action and
a RiskContext. The tier is built in this order:

1. Start at the event type's base tier.
2. Failed events escalate one tier, failed high-privilege events one more.
   Successful high-privilege events escalate one tier.
3. Context signals add points; every ``context_points_per_tier`` points
   escalate one more tier.
4. HTTP error statuses impose a floor (>= 500: high, >= 400: medium).
5. The event type's declared floor applies last.

The result is capped at critical. Client-supplied risk levels are never an
input.
"""

from shield_audit.audit.config import (
    RiskPolicy,
    get_base_level,
    get_floor,
    is_high_privilege_action,
)
from shield_audit.audit.models import AuditEventType, RawEvent, RiskContext, RiskLevel


class RiskClassifier:
    """Map an event to a risk tier under a configurable policy.

    Args:
        policy: Thresholds and per-event-type tables (defaults if None)
    """

    def __init__(self, policy: RiskPolicy | None = None) -> None:
        self.policy = policy or RiskPolicy()
        if self.policy.context_points_per_tier < 1:
            raise ValueError("context_points_per_tier must be at least 1")

    def classify(
        self,
        event_type: AuditEventType,
        success: bool,
        action: str = "",
        context: RiskContext | None = None,
    ) -> RiskLevel:
        """Classify an event.

        Args:
            event_type: Type of the audited event
            success: Whether the audited operation succeeded
            action: Free-form verb, checked against high-privilege actions
            context: Contextual signals (empty context if None)

        Returns:
            The computed RiskLevel
        """
        context = context or RiskContext()
        high_privilege = context.high_privilege or is_high_privilege_action(action, self.policy)

        rank = get_base_level(event_type, self.policy).rank

        if not success:
            rank += 1
            if high_privilege:
                rank += 1
        elif high_privilege:
            rank += 1

        rank += self.context_points(context) // self.policy.context_points_per_tier

        if context.response_status is not None:
            if context.response_status >= 500:
                rank = max(rank, RiskLevel.HIGH.rank)
            elif context.response_status >= 400:
                rank = max(rank, RiskLevel.MEDIUM.rank)

        rank = max(rank, get_floor(event_type, self.policy).rank)
        return RiskLevel.from_rank(rank)

    def classify_event(self, event: RawEvent, event_type: AuditEventType) -> RiskLevel:
        """Classify a validated raw event.

        ``event.risk_level`` is ignored.
        """
        return self.classify(
            event_type=event_type,
            success=event.success,
            action=event.action or "",
            context=event.risk_context(),
        )

    def context_points(self, context: RiskContext) -> int:
        """Score contextual anomaly signals."""
        points = 0
        if context.off_hours:
            points += 1
        if context.new_device:
            points += 1
        if context.geolocation_anomaly:
            points += 1
        if context.repeated_failures >= self.policy.repeated_failure_critical_threshold:
            points += 2
        elif context.repeated_failures >= self.policy.repeated_failure_threshold:
            points += 1
        if context.bulk_access_count >= self.policy.bulk_access_threshold:
            points += 1
        return points
