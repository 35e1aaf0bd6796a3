"""Escalation of high and critical audit entries."""

from shield_audit.escalation.channels import (
    DeliveryResult,
    EmailChannel,
    NotificationChannel,
    WebhookChannel,
)
from shield_audit.escalation.notifier import EscalationNotifier

__all__ = [
    "DeliveryResult",
    "EmailChannel",
    "EscalationNotifier",
    "NotificationChannel",
    "WebhookChannel",
]
