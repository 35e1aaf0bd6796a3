"""Audit engine initialization.

This module provides functions to initialize and access the process-wide
AuditRecorder and EscalationNotifier. The recorder is the entry point for
writing audit events throughout the application.

Usage:
    from shield_audit.audit.setup import init_audit_services, get_recorder

    # During startup:
    recorder = init_audit_services(async_session, settings)

    # Later, anywhere in the app:
    recorder = get_recorder()
    if recorder:
        await recorder.record(RawEvent(event_type="data_access", user_id="u-1", action="read"))
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shield_audit.audit.analysis import SecurityAnalyzer
from shield_audit.audit.classification import get_registry
from shield_audit.audit.config import RiskPolicy
from shield_audit.audit.recorder import AuditRecorder
from shield_audit.audit.retention import RetentionPolicyEngine
from shield_audit.audit.risk import RiskClassifier
from shield_audit.config import Settings
from shield_audit.escalation.channels import EmailChannel, NotificationChannel, WebhookChannel
from shield_audit.escalation.notifier import EscalationNotifier

logger = logging.getLogger(__name__)

_recorder: AuditRecorder | None = None
_notifier: EscalationNotifier | None = None


def build_notifier(settings: Settings) -> EscalationNotifier:
    """Create the notifier with a route per configured destination.

    Webhook when ``escalation_webhook_url`` is set; email when both
    ``smtp_host`` and ``escalation_email_to`` are set.
    """
    routes: list[tuple[NotificationChannel, str]] = []

    if settings.escalation_webhook_url:
        routes.append((WebhookChannel(), settings.escalation_webhook_url))
        logger.info("Escalation webhook channel configured")

    if settings.smtp_host and settings.escalation_email_to:
        routes.append(
            (
                EmailChannel(
                    smtp_host=settings.smtp_host,
                    smtp_port=settings.smtp_port,
                    sender=settings.smtp_sender,
                    username=settings.smtp_username,
                    password=settings.smtp_password,
                ),
                settings.escalation_email_to,
            )
        )
        logger.info("Escalation email channel configured")

    if not routes:
        logger.warning("No escalation channels configured; high-risk entries are only stored")

    return EscalationNotifier(routes=routes)


def build_analyzer(settings: Settings) -> SecurityAnalyzer:
    return SecurityAnalyzer(
        policy=RiskPolicy.from_settings(settings),
        business_hours_start=settings.business_hours_start,
        business_hours_end=settings.business_hours_end,
    )


def build_retention_engine(settings: Settings) -> RetentionPolicyEngine:
    return RetentionPolicyEngine(
        registry=get_registry(),
        archive_window_days=settings.archive_window_days,
        batch_size=settings.retention_batch_size,
    )


def init_audit_services(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
) -> AuditRecorder:
    """Initialize the recorder and notifier.

    Args:
        session_factory: Factory the recorder opens its sessions from
        settings: Application settings

    Returns:
        Configured AuditRecorder instance
    """
    global _recorder, _notifier

    _notifier = build_notifier(settings)
    _recorder = AuditRecorder(
        session_factory=session_factory,
        registry=get_registry(),
        classifier=RiskClassifier(RiskPolicy.from_settings(settings)),
        escalation=_notifier,
        pii_hash_salt=settings.pii_hash_salt,
    )
    logger.info("AuditRecorder initialized")

    return _recorder


def get_recorder() -> AuditRecorder | None:
    """Get the global recorder.

    Returns:
        The initialized AuditRecorder, or None if not yet initialized.
    """
    return _recorder


def get_notifier() -> EscalationNotifier | None:
    return _notifier


async def shutdown_audit_services(timeout: float = 5.0) -> None:
    """Wait for in-flight escalations and forget the global services."""
    global _recorder, _notifier

    if _notifier is not None:
        await _notifier.drain(timeout=timeout)
    _recorder = None
    _notifier = None
