"""EscalationNotifier for fire-and-forget delivery of high-risk entries.

This module provides the EscalationNotifier class which handles:
- Scheduling one tracked delivery task per escalated entry
- Exponential backoff retry per destination
- Logging (never raising) delivery failures

Usage:
    from shield_audit.escalation.notifier import EscalationNotifier

    notifier = EscalationNotifier(
        routes=[(WebhookChannel(), "https://hooks.example.com/audit")],
    )
    notifier.notify(entry)  # returns immediately

    # Shutdown gracefully
    await notifier.drain()
"""

import asyncio
import logging

from shield_audit.audit.errors import EscalationError
from shield_audit.audit.models import AuditLogEntry
from shield_audit.escalation.channels import NotificationChannel

logger = logging.getLogger(__name__)


class EscalationNotifier:
    """Deliver escalated entries to every configured destination.

    notify() never blocks and never raises for delivery problems; each
    entry is delivered in its own asyncio task, tracked so drain() can wait
    for in-flight deliveries at shutdown.

    Args:
        routes: (channel, destination) pairs every entry is sent to
        max_retries: Delivery attempts per destination (default: 3)
        retry_base_delay: Initial retry delay in seconds (default: 1.0)
        retry_multiplier: Multiplier for exponential backoff (default: 2.0)
    """

    def __init__(
        self,
        routes: list[tuple[NotificationChannel, str]] | None = None,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        retry_multiplier: float = 2.0,
    ):
        self.routes = list(routes or [])
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.retry_multiplier = retry_multiplier
        self._tasks: set[asyncio.Task[None]] = set()
        self.delivered = 0
        self.failed = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def notify(self, entry: AuditLogEntry) -> None:
        """Schedule delivery of ``entry`` and return immediately.

        Raises:
            RuntimeError: If called outside a running event loop
        """
        if not self.routes:
            logger.debug(f"No escalation routes configured; entry {entry.id} not sent")
            return

        task = asyncio.get_running_loop().create_task(
            self._deliver(entry), name=f"escalation_{entry.id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight deliveries, cancelling what is left after ``timeout``."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(f"Cancelled {len(pending)} escalation deliveries at shutdown")

    async def _deliver(self, entry: AuditLogEntry) -> None:
        for channel, destination in self.routes:
            try:
                await self._deliver_with_retry(entry, channel, destination)
            except EscalationError as e:
                self.failed += 1
                logger.warning(str(e))
            except Exception as e:
                self.failed += 1
                logger.warning(
                    f"Escalation of entry {entry.id} via {channel.name} raised: {e}",
                    exc_info=True,
                )
            else:
                self.delivered += 1

    async def _deliver_with_retry(
        self,
        entry: AuditLogEntry,
        channel: NotificationChannel,
        destination: str,
    ) -> None:
        """Deliver to one destination with exponential backoff retry.

        For defaults (base=1.0, multiplier=2.0) the delays are 1s, 2s.

        Raises:
            EscalationError: If every attempt failed
        """
        last_error: str | None = None

        for attempt in range(1, self.max_retries + 1):
            result = await channel.send(entry, destination)
            if result.success:
                logger.debug(
                    f"Entry {entry.id} escalated via {channel.name} (attempt {attempt})"
                )
                return

            last_error = result.error_message or "Unknown error"
            logger.warning(
                f"Escalation of entry {entry.id} via {channel.name} failed "
                f"(attempt {attempt}/{self.max_retries}): {last_error}"
            )
            if attempt < self.max_retries:
                delay = self.retry_base_delay * (self.retry_multiplier ** (attempt - 1))
                await asyncio.sleep(delay)

        raise EscalationError(
            f"Giving up on escalation of entry {entry.id} via {channel.name}: {last_error}"
        )
