"""Audit repository for persisting and querying audit entries.

This module provides the AuditRepository class for database operations:
- append: Insert one audit entry (the only write of entry content)
- get_entry: Fetch a single entry by id
- count / fetch_page / statistics: Filtered reads for the query engine
- related_entries: Entries near another entry for the same user or session
- fetch_retention_batch / mark_archived / delete_entry: Retention lifecycle

Filters are built from hardcoded column expressions only; user input is always
bound as parameters.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shield_audit.audit.errors import PersistenceError
from shield_audit.audit.models import (
    RISK_LEVEL_ORDER,
    AuditEventType,
    AuditLogEntry,
    RetentionState,
    RiskLevel,
)
from shield_audit.models.audit_log import AuditLogRecord

logger = logging.getLogger(__name__)

TIME_RANGES: dict[str, timedelta | None] = {
    "1h": timedelta(hours=1),
    "6h": timedelta(hours=6),
    "12h": timedelta(hours=12),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "all": None,
}

SORT_FIELDS = ("timestamp", "duration_ms", "risk_level", "user_id")


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime.

    Naive values are assumed to already be UTC (SQLite drops tzinfo).
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class AuditQueryFilters:
    """Filter parameters for querying audit logs. All filters are AND-combined.

    Attributes:
        user_id: Exact principal id
        resource_type: Exact resource type
        event_type: Exact event type
        action: Exact action verb
        success: Outcome
        risk_level: Exact risk tier
        ip_address: Exact client address
        start_date: First day included (UTC)
        end_date: Last day included (UTC)
        time_range: Relative window (1h, 6h, 12h, 24h, 7d, 30d, all)
        search: Case-insensitive substring over user, resource type, action,
            address and API endpoint
        http_method: HTTP method recorded in details
        min_duration: Lower bound on details.duration_ms (inclusive)
        max_duration: Upper bound on details.duration_ms (inclusive)
        cache_hit: details.cache_hit value
    """

    user_id: str | None = None
    resource_type: str | None = None
    event_type: AuditEventType | None = None
    action: str | None = None
    success: bool | None = None
    risk_level: RiskLevel | None = None
    ip_address: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    time_range: str | None = None
    search: str | None = None
    http_method: str | None = None
    min_duration: float | None = None
    max_duration: float | None = None
    cache_hit: bool | None = None

    def __post_init__(self) -> None:
        if self.time_range is not None and self.time_range not in TIME_RANGES:
            raise ValueError(f"Unsupported time range: {self.time_range}")

    def resolve_window(self, now: datetime) -> tuple[datetime | None, datetime | None]:
        """Resolve the date filters into a concrete [start, end] window.

        Explicit dates take precedence: when either is given, ``time_range``
        is ignored. Dates are inclusive, so the end bound is the last
        microsecond of ``end_date``.
        """
        if self.start_date is not None or self.end_date is not None:
            start = (
                datetime.combine(self.start_date, time.min, tzinfo=timezone.utc)
                if self.start_date is not None
                else None
            )
            end = (
                datetime.combine(self.end_date, time.max, tzinfo=timezone.utc)
                if self.end_date is not None
                else None
            )
            return start, end

        if self.time_range is not None:
            span = TIME_RANGES[self.time_range]
            if span is None:
                return None, None
            now = ensure_utc(now)
            return now - span, now

        return None, None

    def as_dict(self) -> dict[str, Any]:
        """Active filters, JSON-friendly, for response envelopes."""
        result: dict[str, Any] = {}
        for key, value in self.__dict__.items():
            if value is None:
                continue
            if isinstance(value, (AuditEventType, RiskLevel)):
                value = value.value
            elif isinstance(value, date):
                value = value.isoformat()
            result[key] = value
        return result


@dataclass
class AuditStatistics:
    """Aggregates over a filtered set. Empty sets report zeros."""

    total: int
    success_rate: float
    avg_response_time: float
    cache_hit_rate: float
    risk_distribution: dict[str, int]


@dataclass(frozen=True)
class RetentionCandidate:
    id: str
    timestamp: datetime
    resource_type: str
    retention_state: RetentionState


def _duration_expr():
    return AuditLogRecord.details["duration_ms"].as_float()


def _cache_hit_expr():
    return AuditLogRecord.details["cache_hit"].as_boolean()


def _http_method_expr():
    return AuditLogRecord.details["http_method"].as_string()


def _endpoint_expr():
    return AuditLogRecord.details["api_endpoint"].as_string()


def _risk_rank_expr():
    return case(
        {level.value: rank for rank, level in enumerate(RISK_LEVEL_ORDER)},
        value=AuditLogRecord.risk_level,
        else_=-1,
    )


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def build_conditions(filters: AuditQueryFilters, now: datetime) -> list[Any]:
    """Translate filters into SQLAlchemy WHERE conditions."""
    conditions: list[Any] = []

    if filters.user_id is not None:
        conditions.append(AuditLogRecord.user_id == filters.user_id)
    if filters.resource_type is not None:
        conditions.append(AuditLogRecord.resource_type == filters.resource_type)
    if filters.event_type is not None:
        conditions.append(AuditLogRecord.event_type == filters.event_type.value)
    if filters.action is not None:
        conditions.append(AuditLogRecord.action == filters.action)
    if filters.success is not None:
        conditions.append(AuditLogRecord.success.is_(filters.success))
    if filters.risk_level is not None:
        conditions.append(AuditLogRecord.risk_level == filters.risk_level.value)
    if filters.ip_address is not None:
        conditions.append(AuditLogRecord.ip_address == filters.ip_address)

    start, end = filters.resolve_window(now)
    if start is not None:
        conditions.append(AuditLogRecord.timestamp >= start)
    if end is not None:
        conditions.append(AuditLogRecord.timestamp <= end)

    if filters.search:
        pattern = f"%{_escape_like(filters.search.strip())}%"
        conditions.append(
            or_(
                AuditLogRecord.user_id.ilike(pattern, escape="\\"),
                AuditLogRecord.resource_type.ilike(pattern, escape="\\"),
                AuditLogRecord.action.ilike(pattern, escape="\\"),
                AuditLogRecord.ip_address.ilike(pattern, escape="\\"),
                _endpoint_expr().ilike(pattern, escape="\\"),
            )
        )

    if filters.http_method is not None:
        conditions.append(func.upper(_http_method_expr()) == filters.http_method.upper())
    if filters.min_duration is not None:
        conditions.append(_duration_expr() >= filters.min_duration)
    if filters.max_duration is not None:
        conditions.append(_duration_expr() <= filters.max_duration)
    if filters.cache_hit is not None:
        conditions.append(_cache_hit_expr() == filters.cache_hit)

    return conditions


def build_order_by(sort_by: str, direction: str) -> list[Any]:
    """ORDER BY clauses with ``id`` as the tie-breaker so pages never overlap."""
    if sort_by not in SORT_FIELDS:
        raise ValueError(f"Unsupported sort field: {sort_by}")
    if direction not in ("asc", "desc"):
        raise ValueError(f"Unsupported sort direction: {direction}")

    if sort_by == "duration_ms":
        column = _duration_expr()
    elif sort_by == "risk_level":
        column = _risk_rank_expr()
    else:
        column = getattr(AuditLogRecord, sort_by)

    if direction == "asc":
        primary = column.asc()
        tie_breaker = AuditLogRecord.id.asc()
    else:
        primary = column.desc()
        tie_breaker = AuditLogRecord.id.desc()

    if sort_by == "duration_ms":
        primary = primary.nulls_last()

    return [primary, tie_breaker]


def record_to_entry(record: AuditLogRecord) -> AuditLogEntry:
    """Convert an ORM row to an immutable entry."""
    return AuditLogEntry(
        id=record.id,
        timestamp=ensure_utc(record.timestamp),
        event_type=AuditEventType(record.event_type),
        user_id=record.user_id,
        action=record.action,
        risk_level=RiskLevel(record.risk_level),
        resource_type=record.resource_type,
        resource_id=record.resource_id,
        patient_id=record.patient_id,
        ip_address=record.ip_address,
        user_agent=record.user_agent,
        success=bool(record.success),
        details=dict(record.details or {}),
    )


class AuditRepository:
    """Repository for audit log database operations.

    Args:
        session: SQLAlchemy async session for database operations
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @property
    def session(self) -> AsyncSession:
        return self._session

    async def append(self, entry: AuditLogEntry) -> None:
        """Insert one entry and commit.

        This is the only operation that writes entry content. It is attempted
        once; retries belong to the caller's store client, not here.

        Raises:
            PersistenceError: If the store rejects the write
        """
        record = AuditLogRecord(
            id=entry.id,
            timestamp=entry.timestamp,
            event_type=entry.event_type.value,
            user_id=entry.user_id,
            patient_id=entry.patient_id,
            resource_type=entry.resource_type,
            resource_id=entry.resource_id,
            action=entry.action,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            success=entry.success,
            risk_level=entry.risk_level.value,
            details=entry.details,
        )
        try:
            self._session.add(record)
            await self._session.commit()
        except (SQLAlchemyError, OSError) as e:
            await self._session.rollback()
            raise PersistenceError(f"Failed to append audit entry {entry.id}: {e}") from e

    async def get_entry(self, entry_id: str) -> AuditLogEntry | None:
        result = await self._session.execute(
            select(AuditLogRecord).where(AuditLogRecord.id == entry_id)
        )
        record = result.scalar_one_or_none()
        if record is None:
            return None
        return record_to_entry(record)

    async def count(self, conditions: list[Any]) -> int:
        result = await self._session.execute(
            select(func.count()).select_from(AuditLogRecord).where(*conditions)
        )
        return result.scalar() or 0

    async def fetch_page(
        self,
        conditions: list[Any],
        order_by: list[Any],
        limit: int,
        offset: int = 0,
    ) -> list[AuditLogEntry]:
        result = await self._session.execute(
            select(AuditLogRecord)
            .where(*conditions)
            .order_by(*order_by)
            .limit(limit)
            .offset(offset)
        )
        return [record_to_entry(record) for record in result.scalars().all()]

    async def statistics(self, conditions: list[Any]) -> AuditStatistics:
        """Compute aggregates over the filtered set.

        ``avg_response_time`` averages entries that report a duration and
        ``cache_hit_rate`` is taken over entries that report cache_hit.
        """
        duration = _duration_expr()
        cache_hit = _cache_hit_expr()

        totals = await self._session.execute(
            select(
                func.count(),
                func.sum(case((AuditLogRecord.success.is_(True), 1), else_=0)),
                func.avg(duration),
                func.count(cache_hit),
                func.sum(case((cache_hit.is_(True), 1), else_=0)),
            )
            .select_from(AuditLogRecord)
            .where(*conditions)
        )
        total, successes, avg_duration, cache_reported, cache_hits = totals.one()
        total = total or 0

        by_risk = await self._session.execute(
            select(AuditLogRecord.risk_level, func.count())
            .where(*conditions)
            .group_by(AuditLogRecord.risk_level)
        )
        risk_distribution = {level.value: 0 for level in RISK_LEVEL_ORDER}
        for level, count in by_risk.all():
            if level in risk_distribution:
                risk_distribution[level] = count

        return AuditStatistics(
            total=total,
            success_rate=_percentage(successes or 0, total),
            avg_response_time=round(float(avg_duration), 2) if avg_duration is not None else 0.0,
            cache_hit_rate=_percentage(cache_hits or 0, cache_reported or 0),
            risk_distribution=risk_distribution,
        )

    async def related_entries(
        self,
        entry: AuditLogEntry,
        window: timedelta,
        limit: int = 20,
    ) -> list[AuditLogEntry]:
        """Entries by the same user or session within ``window`` of ``entry``."""
        same_principal = [AuditLogRecord.user_id == entry.user_id]
        if entry.session_id:
            same_principal.append(
                AuditLogRecord.details["session_id"].as_string() == entry.session_id
            )

        result = await self._session.execute(
            select(AuditLogRecord)
            .where(
                AuditLogRecord.id != entry.id,
                AuditLogRecord.timestamp >= entry.timestamp - window,
                AuditLogRecord.timestamp <= entry.timestamp + window,
                or_(*same_principal),
            )
            .order_by(AuditLogRecord.timestamp.asc(), AuditLogRecord.id.asc())
            .limit(limit)
        )
        return [record_to_entry(record) for record in result.scalars().all()]

    async def fetch_retention_batch(
        self,
        created_before: datetime,
        after: tuple[datetime, str] | None,
        limit: int,
    ) -> list[RetentionCandidate]:
        """Next keyset batch of rows created before ``created_before``.

        Rows are ordered by (timestamp, id); ``after`` is the last key of the
        previous batch.
        """
        conditions: list[Any] = [AuditLogRecord.timestamp < created_before]
        if after is not None:
            after_ts, after_id = after
            conditions.append(
                or_(
                    AuditLogRecord.timestamp > after_ts,
                    and_(AuditLogRecord.timestamp == after_ts, AuditLogRecord.id > after_id),
                )
            )

        result = await self._session.execute(
            select(
                AuditLogRecord.id,
                AuditLogRecord.timestamp,
                AuditLogRecord.resource_type,
                AuditLogRecord.retention_state,
            )
            .where(*conditions)
            .order_by(AuditLogRecord.timestamp.asc(), AuditLogRecord.id.asc())
            .limit(limit)
        )
        return [
            RetentionCandidate(
                id=row[0],
                timestamp=ensure_utc(row[1]),
                resource_type=row[2],
                retention_state=RetentionState(row[3]),
            )
            for row in result.all()
        ]

    async def mark_archived(self, entry_id: str) -> bool:
        """Flip an active row to archived. False if another sweep got there first."""
        result = await self._session.execute(
            update(AuditLogRecord)
            .where(
                AuditLogRecord.id == entry_id,
                AuditLogRecord.retention_state == RetentionState.ACTIVE.value,
            )
            .values(retention_state=RetentionState.ARCHIVED.value)
        )
        return result.rowcount == 1

    async def delete_entry(self, entry_id: str) -> bool:
        """Irreversibly remove a row. False if it was already gone."""
        result = await self._session.execute(
            delete(AuditLogRecord).where(AuditLogRecord.id == entry_id)
        )
        return result.rowcount == 1


def _percentage(part: int, whole: int) -> float:
    if not whole:
        return 0.0
    return round(part * 100.0 / whole, 2)
