# backend/shield_audit/main.py
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from shield_audit.api.audit import router as audit_router
from shield_audit.api.middleware import AuditRequestMiddleware
from shield_audit.audit.errors import QueryError, QueryTimeoutError
from shield_audit.audit.fixtures import seed_fixtures
from shield_audit.audit.setup import (
    build_retention_engine,
    get_recorder,
    init_audit_services,
    shutdown_audit_services,
)
from shield_audit.config import settings
from shield_audit.db.database import Base, async_session, engine
from shield_audit.workers.setup import init_workers, shutdown_workers

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # Startup
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    recorder = init_audit_services(async_session, settings)
    if settings.seed_fixtures:
        await seed_fixtures(recorder, settings.fixture_count)

    if settings.retention_sweep_enabled:
        init_workers(
            async_session,
            build_retention_engine(settings),
            interval_minutes=settings.retention_sweep_interval_minutes,
        )
    yield
    # Shutdown
    await shutdown_workers()
    await shutdown_audit_services()


app = FastAPI(title="Shield Audit", version="0.1.0", lifespan=lifespan)

app.include_router(audit_router)

if settings.audit_api_requests:
    app.add_middleware(
        AuditRequestMiddleware,
        lowest_privilege_role=settings.lowest_privilege_role,
        excluded_paths=tuple(settings.audit_excluded_paths),
    )


@app.exception_handler(QueryTimeoutError)
async def query_timeout_handler(request: Request, exc: QueryTimeoutError) -> JSONResponse:
    return JSONResponse(status_code=504, content={"detail": str(exc)})


@app.exception_handler(QueryError)
async def query_error_handler(request: Request, exc: QueryError) -> JSONResponse:
    logger.error(f"Audit query failed on {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content={"detail": "Audit store unavailable"})


@app.get("/health")
async def health():
    recorder = get_recorder()
    failures = recorder.persistence_failures if recorder is not None else 0
    return {
        "status": "degraded" if failures else "healthy",
        "audit_persistence_failures": failures,
    }
