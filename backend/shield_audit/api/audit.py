# backend/shield_audit/api/audit.py
"""Audit API endpoints for recording, querying, exporting and retention."""

from datetime import date, datetime, timedelta, timezone
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from shield_audit.api.middleware import USER_ID_HEADER
from shield_audit.audit.access import AccessControlEvaluator, StaticRoleResolver
from shield_audit.audit.analysis import SecurityAnalysis
from shield_audit.audit.classification import get_registry
from shield_audit.audit.errors import EventValidationError
from shield_audit.audit.export import ExportFormat
from shield_audit.audit.models import (
    AuditEventType,
    AuditLogEntry,
    RawEvent,
    RetentionAction,
    RiskLevel,
)
from shield_audit.audit.query import (
    AuditQueryEngine,
    Pagination,
    PaginationInfo,
    SortSpec,
)
from shield_audit.audit.recorder import AuditRecorder
from shield_audit.audit.repository import AuditQueryFilters, AuditRepository
from shield_audit.audit.setup import build_analyzer, build_retention_engine, get_recorder
from shield_audit.config import settings
from shield_audit.db.database import get_session

TimeRange = Literal["1h", "6h", "12h", "24h", "7d", "30d", "all"]
SortField = Literal["timestamp", "duration_ms", "risk_level", "user_id"]
SortOrder = Literal["asc", "desc"]


# Request schemas
class SecurityEventRequest(BaseModel):
    """Client-reported security event (CSP violation, tampering, ...)."""

    type: str
    message: str
    severity: str | None = None
    url: str | None = None
    user_agent: str | None = None
    user_id: str | None = None
    additional_data: dict[str, Any] = Field(default_factory=dict)


class AccessCheckRequest(BaseModel):
    principal_role: str | None = None
    principal_id: str | None = None
    resource_type: str = Field(min_length=1)
    action: str = Field(min_length=1)
    resource_id: str | None = None


# Response schemas
class RecordResponse(BaseModel):
    id: str
    timestamp: datetime
    risk_level: RiskLevel
    persisted: bool
    escalated: bool
    warnings: list[str]


class AccessCheckResponse(BaseModel):
    allowed: bool
    reason: str | None


class PaginationResponse(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool

    @classmethod
    def from_info(cls, info: PaginationInfo) -> "PaginationResponse":
        return cls(**info.__dict__)


class StatisticsResponse(BaseModel):
    total: int
    success_rate: float
    avg_response_time: float
    cache_hit_rate: float
    risk_distribution: dict[str, int]


class AuditLogListResponse(BaseModel):
    """Response model for a page of audit logs."""

    entries: list[AuditLogEntry]
    pagination: PaginationResponse
    filters: dict[str, Any]
    statistics: StatisticsResponse


class AuditLogDetailResponse(AuditLogEntry):
    security_analysis: SecurityAnalysis
    related_events: list[AuditLogEntry]


class AuditLogDetailEnvelope(BaseModel):
    log: AuditLogDetailResponse


class ClassificationResponse(BaseModel):
    resource_type: str
    level: str
    categories: list[str]
    retention_period_days: int
    encryption_required: bool
    access_controls: list[str]


class RetentionResponse(BaseModel):
    resource_type: str
    known_resource_type: bool
    resource_age_days: int
    days_until_expiry: int
    action: RetentionAction
    should_retain: bool


class SweepResponse(BaseModel):
    scanned: int
    retained: int
    archived: int
    deleted: int
    skipped: int
    completed: bool


# Dependencies
def get_audit_recorder() -> AuditRecorder:
    recorder = get_recorder()
    if recorder is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Audit recorder not initialized"
        )
    return recorder


def get_query_engine(db: AsyncSession = Depends(get_session)) -> AuditQueryEngine:
    return AuditQueryEngine(
        repository=AuditRepository(db),
        timeout_seconds=settings.query_timeout_seconds,
        max_page_limit=settings.max_page_limit,
        export_max_rows=settings.export_max_rows,
        related_window=timedelta(minutes=settings.related_window_minutes),
        analyzer=build_analyzer(settings),
    )


def get_query_filters(
    user_id: str | None = None,
    resource_type: str | None = None,
    event_type: AuditEventType | None = None,
    action: str | None = None,
    success: bool | None = None,
    risk_level: RiskLevel | None = None,
    ip_address: str | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    time_range: TimeRange | None = None,
    search: str | None = None,
    http_method: str | None = None,
    min_duration: float | None = Query(default=None, ge=0),
    max_duration: float | None = Query(default=None, ge=0),
    cache_hit: bool | None = None,
) -> AuditQueryFilters:
    return AuditQueryFilters(
        user_id=user_id,
        resource_type=resource_type,
        event_type=event_type,
        action=action,
        success=success,
        risk_level=risk_level,
        ip_address=ip_address,
        start_date=start_date,
        end_date=end_date,
        time_range=time_range,
        search=search or None,
        http_method=http_method,
        min_duration=min_duration,
        max_duration=max_duration,
        cache_hit=cache_hit,
    )


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _request_user(request: Request) -> str:
    return (request.headers.get(USER_ID_HEADER) or "").strip() or settings.lowest_privilege_role


# Router
router = APIRouter(prefix="/api/audit", tags=["audit"])


@router.post("/events", response_model=RecordResponse, status_code=status.HTTP_201_CREATED)
async def record_event(
    event: RawEvent,
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> RecordResponse:
    """Record an audit event.

    Server-side id, timestamp and risk level replace anything the client sent.
    """
    try:
        result = await recorder.record(event)
    except EventValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(e), "fields": e.fields},
        ) from e

    return RecordResponse(
        id=result.entry.id,
        timestamp=result.entry.timestamp,
        risk_level=result.entry.risk_level,
        persisted=result.persisted,
        escalated=result.escalated,
        warnings=result.warnings,
    )


@router.post(
    "/security-event", response_model=RecordResponse, status_code=status.HTTP_201_CREATED
)
async def record_security_event(
    body: SecurityEventRequest,
    request: Request,
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> RecordResponse:
    """Record a client-reported security event.

    The reported severity is kept in details; the stored risk level is
    always computed.
    """
    details: dict[str, Any] = {
        "message": body.message,
        "reported_severity": body.severity,
        "url": body.url,
    }
    details.update(body.additional_data)

    event = RawEvent(
        event_type=AuditEventType.SECURITY_EVENT.value,
        user_id=body.user_id or settings.lowest_privilege_role,
        action=body.type,
        resource_type="security_monitoring",
        ip_address=_client_ip(request),
        user_agent=body.user_agent or request.headers.get("user-agent"),
        success=False,
        details=details,
    )
    return await record_event(event, recorder)


@router.post("/access-check", response_model=AccessCheckResponse)
async def check_access(
    body: AccessCheckRequest,
    request: Request,
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> AccessCheckResponse:
    """Evaluate an access request and record the decision."""
    evaluator = AccessControlEvaluator(
        recorder=recorder,
        registry=get_registry(),
        role_resolver=StaticRoleResolver(settings.principal_roles),
        lowest_privilege_role=settings.lowest_privilege_role,
    )
    ip_address = _client_ip(request)
    user_agent = request.headers.get("user-agent")

    if body.principal_id is not None and body.principal_role is None:
        decision = await evaluator.check_principal_access(
            body.principal_id,
            body.resource_type,
            body.action,
            resource_id=body.resource_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
    else:
        decision = await evaluator.check_access(
            body.principal_role,
            body.resource_type,
            body.action,
            resource_id=body.resource_id,
            user_id=body.principal_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
    return AccessCheckResponse(allowed=decision.allowed, reason=decision.reason)


@router.get("/logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    filters: AuditQueryFilters = Depends(get_query_filters),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=settings.default_page_limit, ge=1),
    sort_by: SortField = "timestamp",
    sort_order: SortOrder = "desc",
    engine: AuditQueryEngine = Depends(get_query_engine),
) -> AuditLogListResponse:
    """List audit logs with filters, pagination and statistics.

    ``limit`` is clamped to the configured maximum page size.
    """
    result = await engine.query(
        filters=filters,
        pagination=Pagination(page=page, limit=limit),
        sort=SortSpec(sort_by=sort_by, sort_order=sort_order),
    )
    return AuditLogListResponse(
        entries=result.entries,
        pagination=PaginationResponse.from_info(result.pagination),
        filters=result.filters,
        statistics=StatisticsResponse(**result.stats.__dict__),
    )


@router.get("/logs/{log_id}", response_model=AuditLogDetailEnvelope)
async def get_audit_log(
    log_id: str,
    engine: AuditQueryEngine = Depends(get_query_engine),
) -> AuditLogDetailEnvelope:
    detail = await engine.get_by_id(log_id)
    if detail is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Audit log not found")

    return AuditLogDetailEnvelope(
        log=AuditLogDetailResponse(
            **detail.entry.model_dump(),
            security_analysis=detail.security_analysis,
            related_events=detail.related_events,
        )
    )


@router.get("/export")
async def export_audit_logs(
    request: Request,
    format: ExportFormat = ExportFormat.CSV,
    filters: AuditQueryFilters = Depends(get_query_filters),
    sort_by: SortField = "timestamp",
    sort_order: SortOrder = "desc",
    engine: AuditQueryEngine = Depends(get_query_engine),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> Response:
    """Download every matching entry as CSV or JSON.

    Each export is itself recorded as an export_data entry on audit_logs.
    """
    result = await engine.export(
        filters=filters,
        sort=SortSpec(sort_by=sort_by, sort_order=sort_order),
        export_format=format,
    )
    await recorder.record(
        RawEvent(
            event_type=AuditEventType.EXPORT_DATA.value,
            user_id=_request_user(request),
            action="export",
            resource_type="audit_logs",
            ip_address=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
            success=True,
            details={
                "format": format.value,
                "filename": result.filename,
                "record_count": result.row_count,
                "filters_applied": sorted(filters.as_dict()),
            },
        )
    )
    return Response(
        content=result.content,
        media_type=result.media_type,
        headers={"Content-Disposition": f'attachment; filename="{result.filename}"'},
    )


@router.get("/classifications", response_model=list[ClassificationResponse])
async def list_classifications() -> list[ClassificationResponse]:
    registry = get_registry()
    return [
        ClassificationResponse(
            resource_type=resource_type,
            level=classification.level.value,
            categories=sorted(classification.categories),
            retention_period_days=classification.retention_period_days,
            encryption_required=classification.encryption_required,
            access_controls=sorted(classification.access_controls),
        )
        for resource_type, classification in sorted(registry.items())
    ]


@router.get("/retention/{resource_type}", response_model=RetentionResponse)
async def evaluate_retention(
    resource_type: str,
    created_at: datetime,
) -> RetentionResponse:
    """Evaluate the retention decision for a record created at ``created_at``."""
    decision = build_retention_engine(settings).evaluate(
        resource_type, created_at, now=datetime.now(tz=timezone.utc)
    )
    return RetentionResponse(
        resource_type=resource_type,
        known_resource_type=get_registry().is_known(resource_type),
        resource_age_days=decision.resource_age_days,
        days_until_expiry=decision.days_until_expiry,
        action=decision.action,
        should_retain=decision.should_retain,
    )


@router.post("/retention/sweep", response_model=SweepResponse)
async def run_retention_sweep(
    max_batches: int | None = Query(default=None, ge=1),
    db: AsyncSession = Depends(get_session),
) -> SweepResponse:
    """Run a retention sweep now."""
    report = await build_retention_engine(settings).run_sweep(db, max_batches=max_batches)
    return SweepResponse(
        scanned=report.scanned,
        retained=report.retained,
        archived=report.archived,
        deleted=report.deleted,
        skipped=report.skipped,
        completed=report.completed,
    )
