"""Retention policy engine.

evaluate() decides, for one record, whether it is retained, archived or
deleted, based on its resource type's retention period. run_sweep() applies
those decisions to the audit store in keyset batches.

Lifecycle of a row: active -> archived -> deleted, or active -> deleted.
Transitions never go backward, and every transition is a guarded statement,
so running a sweep twice (or two sweeps at once) has no extra effect.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shield_audit.audit.classification import ClassificationRegistry, get_registry
from shield_audit.audit.errors import PersistenceError
from shield_audit.audit.models import (
    AuditLogEntry,
    RetentionAction,
    RetentionDecision,
    RetentionState,
)
from shield_audit.audit.repository import AuditRepository, RetentionCandidate, ensure_utc
from shield_audit.models.audit_log import AuditLogArchive

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


class ColdStore(Protocol):
    """Write-once archive for audit entries, keyed by the original id."""

    async def archive(self, entry: AuditLogEntry) -> None: ...


class DatabaseColdStore:
    """Cold store backed by the ``audit_log_archive`` table.

    Writes join the caller's transaction, so a failed archive rolls back
    the state change that preceded it. Archiving an id twice is a no-op.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def archive(self, entry: AuditLogEntry) -> None:
        existing = await self._session.get(AuditLogArchive, entry.id)
        if existing is not None:
            return
        self._session.add(
            AuditLogArchive(
                id=entry.id,
                timestamp=entry.timestamp,
                archived_at=datetime.now(tz=timezone.utc),
                resource_type=entry.resource_type,
                entry=entry.model_dump(mode="json"),
            )
        )
        await self._session.flush()


@dataclass(frozen=True)
class SweepCursor:
    """Resume point of a sweep.

    Attributes:
        started_at: Sweep start; only rows created before it are visited
        after_timestamp: Timestamp of the last visited row
        after_id: Id of the last visited row
    """

    started_at: datetime
    after_timestamp: datetime | None = None
    after_id: str | None = None

    @property
    def after(self) -> tuple[datetime, str] | None:
        if self.after_timestamp is None or self.after_id is None:
            return None
        return self.after_timestamp, self.after_id


@dataclass
class SweepReport:
    scanned: int = 0
    retained: int = 0
    archived: int = 0
    deleted: int = 0
    skipped: int = 0
    cursor: SweepCursor | None = None
    completed: bool = False


class RetentionPolicyEngine:
    """Evaluate and enforce retention on classified audit records.

    Args:
        registry: Classification registry (process-wide registry if None)
        archive_window_days: Records this close to expiry are archived
        batch_size: Rows fetched per sweep batch
    """

    def __init__(
        self,
        registry: ClassificationRegistry | None = None,
        archive_window_days: int = 30,
        batch_size: int = 500,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._registry = registry or get_registry()
        self._archive_window_days = archive_window_days
        self._batch_size = batch_size

    def evaluate(
        self,
        resource_type: str,
        created_at: datetime,
        now: datetime | None = None,
    ) -> RetentionDecision:
        """Decide what to do with one record.

        Unknown resource types use the registry default, so they are kept
        for the full default window. Records created in the future count as
        age 0.

        Args:
            resource_type: Resource type of the record
            created_at: Creation time of the record
            now: Evaluation time (current UTC time if None)

        Returns:
            RetentionDecision; ``days_until_expiry`` is 0 when deleting
        """
        now = ensure_utc(now) if now is not None else datetime.now(tz=timezone.utc)
        classification = self._registry.classify_or_default(resource_type)

        elapsed = (now - ensure_utc(created_at)).total_seconds()
        age_days = max(0, int(elapsed // SECONDS_PER_DAY))
        days_until_expiry = classification.retention_period_days - age_days

        if days_until_expiry <= 0:
            return RetentionDecision(
                resource_age_days=age_days, days_until_expiry=0, action=RetentionAction.DELETE
            )
        if days_until_expiry <= self._archive_window_days:
            return RetentionDecision(
                resource_age_days=age_days,
                days_until_expiry=days_until_expiry,
                action=RetentionAction.ARCHIVE,
            )
        return RetentionDecision(
            resource_age_days=age_days,
            days_until_expiry=days_until_expiry,
            action=RetentionAction.RETAIN,
        )

    async def run_sweep(
        self,
        session: AsyncSession,
        cold_store: ColdStore | None = None,
        cursor: SweepCursor | None = None,
        max_batches: int | None = None,
    ) -> SweepReport:
        """Apply retention decisions to stored rows.

        Rows are visited in (timestamp, id) order, one transaction per row.
        Pass the returned cursor back in to resume an incomplete sweep.

        Args:
            session: Session used for the sweep
            cold_store: Archive target (DatabaseColdStore on ``session`` if None)
            cursor: Resume point (fresh sweep starting now if None)
            max_batches: Stop after this many batches (no limit if None)

        Returns:
            SweepReport with counts and the cursor to resume from
        """
        repository = AuditRepository(session)
        cold_store = cold_store or DatabaseColdStore(session)
        cursor = cursor or SweepCursor(started_at=datetime.now(tz=timezone.utc))
        report = SweepReport(cursor=cursor)

        batches = 0
        while max_batches is None or batches < max_batches:
            batch = await repository.fetch_retention_batch(
                created_before=cursor.started_at, after=cursor.after, limit=self._batch_size
            )
            batches += 1

            for candidate in batch:
                report.scanned += 1
                await self._apply(repository, cold_store, candidate, cursor.started_at, report)

            if batch:
                last = batch[-1]
                cursor = SweepCursor(
                    started_at=cursor.started_at,
                    after_timestamp=last.timestamp,
                    after_id=last.id,
                )
                report.cursor = cursor

            if len(batch) < self._batch_size:
                report.completed = True
                break

        logger.info(
            f"Retention sweep: scanned={report.scanned} retained={report.retained} "
            f"archived={report.archived} deleted={report.deleted} skipped={report.skipped} "
            f"completed={report.completed}"
        )
        return report

    async def _apply(
        self,
        repository: AuditRepository,
        cold_store: ColdStore,
        candidate: RetentionCandidate,
        now: datetime,
        report: SweepReport,
    ) -> None:
        decision = self.evaluate(candidate.resource_type, candidate.timestamp, now)

        if decision.action == RetentionAction.RETAIN:
            report.retained += 1
            return

        if decision.action == RetentionAction.DELETE:
            deleted = await repository.delete_entry(candidate.id)
            await repository.session.commit()
            if deleted:
                report.deleted += 1
            else:
                report.skipped += 1
            return

        if candidate.retention_state == RetentionState.ARCHIVED:
            report.skipped += 1
            return

        try:
            if not await repository.mark_archived(candidate.id):
                await repository.session.rollback()
                report.skipped += 1
                return
            entry = await repository.get_entry(candidate.id)
            await cold_store.archive(entry)
            await repository.session.commit()
        except (SQLAlchemyError, OSError, PersistenceError) as e:
            await repository.session.rollback()
            logger.error(f"Archiving audit entry {candidate.id} failed: {e}", exc_info=True)
            report.skipped += 1
            return

        report.archived += 1
