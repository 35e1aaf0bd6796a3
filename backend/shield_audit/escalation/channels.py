"""Notification channels for escalated audit entries.

This module provides:
- DeliveryResult: Result dataclass for notification delivery
- NotificationChannel: Abstract base class for notification channels
- WebhookChannel: HTTP webhook channel posting {entry, triggered_at, idempotency_key}
- EmailChannel: SMTP-based email channel
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from email.message import EmailMessage

import aiosmtplib
import httpx

from shield_audit.audit.models import AuditLogEntry

IDEMPOTENCY_HEADER = "Idempotency-Key"


@dataclass
class DeliveryResult:
    """Result of a notification delivery attempt.

    Attributes:
        success: Whether the delivery succeeded
        response_code: HTTP status code or SMTP response code (if applicable)
        error_message: Error message if delivery failed
    """

    success: bool
    response_code: int | None = None
    error_message: str | None = None


class NotificationChannel(ABC):
    """Abstract base class for notification channels."""

    name: str = "channel"

    @abstractmethod
    async def send(self, entry: AuditLogEntry, destination: str) -> DeliveryResult:
        """Send a notification for the given entry.

        Args:
            entry: The escalated audit entry
            destination: Channel-specific destination (webhook URL, email address)

        Returns:
            DeliveryResult indicating success or failure
        """
        pass


class WebhookChannel(NotificationChannel):
    """HTTP webhook channel.

    Posts ``{"entry": <entry>, "triggered_at": <ISO timestamp>,
    "idempotency_key": <entry id>}`` as JSON, with the key repeated in the
    Idempotency-Key header. A retry after a timeout may deliver an entry the
    receiver already has; receivers deduplicate on the key.
    """

    name = "webhook"

    def __init__(self, timeout_seconds: float = 10.0):
        self.timeout_seconds = timeout_seconds

    async def send(self, entry: AuditLogEntry, destination: str) -> DeliveryResult:
        payload = {
            "entry": entry.model_dump(mode="json"),
            "triggered_at": datetime.now(tz=timezone.utc).isoformat(),
            "idempotency_key": entry.id,
        }
        headers = {IDEMPOTENCY_HEADER: entry.id}

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(destination, json=payload, headers=headers)
                response.raise_for_status()
                return DeliveryResult(success=True, response_code=response.status_code)
        except httpx.TimeoutException:
            return DeliveryResult(
                success=False,
                error_message="Request timed out",
            )
        except httpx.HTTPStatusError as e:
            return DeliveryResult(
                success=False,
                response_code=e.response.status_code,
                error_message=str(e),
            )
        except httpx.RequestError as e:
            return DeliveryResult(
                success=False,
                error_message=str(e),
            )


class EmailChannel(NotificationChannel):
    """SMTP-based email channel.

    Subject format: "[AUDIT {RISK}] {event_type} by {user_id}". The body
    carries entry metadata only; details are never mailed.
    """

    name = "email"

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int,
        sender: str,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.sender = sender
        self.username = username
        self.password = password
        self.use_tls = use_tls

    async def send(self, entry: AuditLogEntry, destination: str) -> DeliveryResult:
        message = EmailMessage()
        message["Subject"] = (
            f"[AUDIT {entry.risk_level.value.upper()}] {entry.event_type.value} by {entry.user_id}"
        )
        message["From"] = self.sender
        message["To"] = destination

        body_lines = [
            f"Entry ID: {entry.id}",
            f"Time: {entry.timestamp.isoformat()}",
            f"Event: {entry.event_type.value}",
            f"Risk: {entry.risk_level.value}",
            f"User: {entry.user_id}",
            f"Resource: {entry.resource_type}",
            f"Action: {entry.action}",
            f"Success: {entry.success}",
        ]
        if entry.resource_id:
            body_lines.append(f"Resource ID: {entry.resource_id}")
        if entry.ip_address:
            body_lines.append(f"IP Address: {entry.ip_address}")

        message.set_content("\n".join(body_lines))

        try:
            await aiosmtplib.send(
                message=message,
                hostname=self.smtp_host,
                port=self.smtp_port,
                username=self.username,
                password=self.password,
                start_tls=self.use_tls,
            )
            return DeliveryResult(success=True, response_code=250)
        except aiosmtplib.SMTPException as e:
            return DeliveryResult(success=False, error_message=str(e))
