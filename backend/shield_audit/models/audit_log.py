"""ORM models for the append-only audit store and its cold archive."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from shield_audit.db.database import Base

# Mirrors RetentionState.ACTIVE; kept literal so the ORM layer has no audit imports.
ACTIVE_STATE = "active"


class AuditLogRecord(Base):
    """One audit log entry.

    Content columns are written once by the recorder. Only the retention
    engine touches the row afterwards, either to flip ``retention_state`` to
    archived or to delete the row.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_audit_logs_user_timestamp", "user_id", "timestamp"),
        Index("idx_audit_logs_risk_timestamp", "risk_level", "timestamp"),
        Index("idx_audit_logs_resource_timestamp", "resource_type", "timestamp"),
        Index("idx_audit_logs_event_type_timestamp", "event_type", "timestamp"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    event_type: Mapped[str] = mapped_column(String(50))
    user_id: Mapped[str] = mapped_column(String(100))
    patient_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    resource_type: Mapped[str] = mapped_column(String(50))
    resource_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    action: Mapped[str] = mapped_column(String(100))
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, default=True)
    risk_level: Mapped[str] = mapped_column(String(20))
    details: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)

    retention_state: Mapped[str] = mapped_column(String(20), default=ACTIVE_STATE)

    def __init__(self, **kwargs):
        """Initialize AuditLogRecord with defaults for optional fields."""
        kwargs.setdefault("retention_state", ACTIVE_STATE)
        kwargs.setdefault("details", {})
        kwargs.setdefault("success", True)
        super().__init__(**kwargs)


class AuditLogArchive(Base):
    """Write-once cold copy of an archived audit entry, keyed by its original id."""

    __tablename__ = "audit_log_archive"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    archived_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    resource_type: Mapped[str] = mapped_column(String(50))
    entry: Mapped[dict[str, Any]] = mapped_column(JSON)
