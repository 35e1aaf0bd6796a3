from datetime import datetime, timezone
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from shield_audit.audit.models import AuditEventType, AuditLogEntry, RiskLevel
from shield_audit.audit.repository import AuditRepository
from shield_audit.audit.setup import init_audit_services, shutdown_audit_services
from shield_audit.config import settings
from shield_audit.db.database import Base, get_session
from shield_audit.main import app


@pytest_asyncio.fixture
async def session_factory():
    """Session factory over a shared in-memory SQLite database.

    StaticPool keeps a single connection so every session sees the same
    database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory):
    """Database session for unit tests."""
    async with session_factory() as session:
        yield session


def build_entry(**overrides) -> AuditLogEntry:
    """Build an AuditLogEntry with sensible defaults."""
    values = {
        "id": str(uuid4()),
        "timestamp": datetime(2024, 6, 3, 12, 0, tzinfo=timezone.utc),
        "event_type": AuditEventType.DATA_ACCESS,
        "user_id": "user-1",
        "action": "read",
        "risk_level": RiskLevel.LOW,
        "resource_type": "sleep_data",
        "resource_id": "sleep-1",
        "ip_address": "10.0.0.1",
        "user_agent": "Mozilla/5.0",
        "success": True,
        "details": {},
    }
    values.update(overrides)
    return AuditLogEntry(**values)


@pytest.fixture
def make_entry():
    return build_entry


@pytest_asyncio.fixture
async def insert_entries(session_factory):
    """Insert entries directly, bypassing the recorder (fixed timestamps, risk levels)."""

    async def _insert(*entries: AuditLogEntry) -> list[AuditLogEntry]:
        async with session_factory() as session:
            repo = AuditRepository(session)
            for entry in entries:
                await repo.append(entry)
        return list(entries)

    return _insert


@pytest_asyncio.fixture
async def client(session_factory, db_session):
    """HTTP client with test database"""
    init_audit_services(session_factory, settings)

    async def override_get_session():
        yield db_session

    app.dependency_overrides[get_session] = override_get_session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    await shutdown_audit_services(timeout=1.0)
