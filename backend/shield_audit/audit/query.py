"""Audit query engine.

Filtered, sorted, paginated reads over the audit trail, with aggregate
statistics, single-entry detail and full-set export. Every store call is
bounded by ``timeout_seconds``; timeouts raise QueryTimeoutError and store
failures raise QueryError. Nothing on this path is swallowed.
"""

import asyncio
import logging
import math
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from shield_audit.audit.analysis import SecurityAnalysis, SecurityAnalyzer
from shield_audit.audit.errors import QueryError, QueryTimeoutError
from shield_audit.audit.export import ExportFormat, ExportResult, export_filename, serialize
from shield_audit.audit.models import AuditLogEntry
from shield_audit.audit.repository import (
    AuditQueryFilters,
    AuditRepository,
    AuditStatistics,
    build_conditions,
    build_order_by,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

RELATED_EVENTS_LIMIT = 20


@dataclass
class Pagination:
    """Requested page. ``page`` is 1-indexed."""

    page: int = 1
    limit: int = 50

    def clamped(self, max_limit: int) -> "Pagination":
        return Pagination(page=max(1, self.page), limit=max(1, min(self.limit, max_limit)))

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


@dataclass
class PaginationInfo:
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool

    @classmethod
    def build(cls, pagination: Pagination, total: int) -> "PaginationInfo":
        total_pages = math.ceil(total / pagination.limit) if total else 0
        return cls(
            page=pagination.page,
            limit=pagination.limit,
            total=total,
            total_pages=total_pages,
            has_next=pagination.page < total_pages,
            has_prev=pagination.page > 1,
        )


@dataclass
class SortSpec:
    sort_by: str = "timestamp"
    sort_order: str = "desc"


@dataclass
class QueryResult:
    entries: list[AuditLogEntry]
    total: int
    stats: AuditStatistics
    pagination: PaginationInfo
    filters: dict[str, Any] = field(default_factory=dict)


class AuditLogDetail(BaseModel):
    """An entry with its read-time analysis and neighbouring events."""

    entry: AuditLogEntry
    security_analysis: SecurityAnalysis
    related_events: list[AuditLogEntry]


class AuditQueryEngine:
    """Read side of the audit trail.

    Args:
        repository: Repository bound to the caller's session
        timeout_seconds: Budget for each store call
        max_page_limit: Upper bound for Pagination.limit
        export_max_rows: Upper bound for exported rows
        related_window: Window around an entry for related events
        analyzer: Security analyzer for get_by_id()
    """

    def __init__(
        self,
        repository: AuditRepository,
        timeout_seconds: float = 10.0,
        max_page_limit: int = 100,
        export_max_rows: int = 50000,
        related_window: timedelta = timedelta(minutes=15),
        analyzer: SecurityAnalyzer | None = None,
    ) -> None:
        self._repository = repository
        self._timeout_seconds = timeout_seconds
        self._max_page_limit = max_page_limit
        self._export_max_rows = export_max_rows
        self._related_window = related_window
        self._analyzer = analyzer or SecurityAnalyzer()

    async def query(
        self,
        filters: AuditQueryFilters | None = None,
        pagination: Pagination | None = None,
        sort: SortSpec | None = None,
        now: datetime | None = None,
    ) -> QueryResult:
        """Return one page of matching entries plus statistics over all matches.

        Raises:
            QueryTimeoutError: If a store call exceeds the time budget
            QueryError: If the store fails
            ValueError: If the sort field or direction is unsupported
        """
        filters = filters or AuditQueryFilters()
        pagination = (pagination or Pagination()).clamped(self._max_page_limit)
        sort = sort or SortSpec()
        now = now or datetime.now(tz=timezone.utc)

        conditions = build_conditions(filters, now)
        order_by = build_order_by(sort.sort_by, sort.sort_order)

        stats = await self._run(self._repository.statistics(conditions))
        entries = await self._run(
            self._repository.fetch_page(
                conditions, order_by, limit=pagination.limit, offset=pagination.offset
            )
        )

        return QueryResult(
            entries=entries,
            total=stats.total,
            stats=stats,
            pagination=PaginationInfo.build(pagination, stats.total),
            filters=filters.as_dict(),
        )

    async def get_by_id(self, entry_id: str) -> AuditLogDetail | None:
        """Fetch one entry with security analysis and related events."""
        entry = await self._run(self._repository.get_entry(entry_id))
        if entry is None:
            return None

        related = await self._run(
            self._repository.related_entries(
                entry, self._related_window, limit=RELATED_EVENTS_LIMIT
            )
        )
        return AuditLogDetail(
            entry=entry,
            security_analysis=self._analyzer.analyze(entry, related),
            related_events=related,
        )

    async def export(
        self,
        filters: AuditQueryFilters | None = None,
        sort: SortSpec | None = None,
        export_format: ExportFormat = ExportFormat.CSV,
        now: datetime | None = None,
    ) -> ExportResult:
        """Serialize every matching entry, up to ``export_max_rows``."""
        filters = filters or AuditQueryFilters()
        sort = sort or SortSpec()
        now = now or datetime.now(tz=timezone.utc)

        conditions = build_conditions(filters, now)
        order_by = build_order_by(sort.sort_by, sort.sort_order)
        entries = await self._run(
            self._repository.fetch_page(conditions, order_by, limit=self._export_max_rows)
        )
        if len(entries) == self._export_max_rows:
            logger.warning(f"Audit export truncated at {self._export_max_rows} rows")

        range_token = None
        if filters.start_date is None and filters.end_date is None:
            range_token = filters.time_range

        return ExportResult(
            content=serialize(entries, export_format),
            media_type=export_format.media_type,
            filename=export_filename(range_token, export_format, now.date()),
            row_count=len(entries),
        )

    async def _run(self, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self._timeout_seconds)
        except asyncio.TimeoutError:
            logger.error(f"Audit query exceeded {self._timeout_seconds}s")
            raise QueryTimeoutError(self._timeout_seconds) from None
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Audit query failed: {e}", exc_info=True)
            raise QueryError(str(e)) from e
