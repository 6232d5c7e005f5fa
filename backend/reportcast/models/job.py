"""Durable job queue and audit log models."""

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from reportcast.db.base import Base, TimestampMixin, UUIDMixin


class JobStatus(str, Enum):
    """Status of a queued job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ReportJob(Base, UUIDMixin, TimestampMixin):
    """A queued scheduled-report job. The idempotency key is unique."""

    __tablename__ = "report_jobs"
    __table_args__ = (
        Index("ix_report_jobs_claim", "status", "run_after"),
    )

    idempotency_key: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    status: Mapped[JobStatus] = mapped_column(String(20), nullable=False, default=JobStatus.PENDING)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    run_after: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        return f"<ReportJob(key={self.idempotency_key}, status={self.status})>"


class AuditLog(Base, UUIDMixin):
    """Append-only compliance record."""

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_action_severity", "action", "severity"),
        Index("ix_audit_logs_user_tenant_created", "user_id", "tenant_id", "created_at"),
    )

    action: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    user_id: Mapped[str | None] = mapped_column(UUID(as_uuid=False), index=True)
    tenant_id: Mapped[str | None] = mapped_column(UUID(as_uuid=False), index=True)
    resource_type: Mapped[str | None] = mapped_column(String(50))
    resource_id: Mapped[str | None] = mapped_column(String(64))
    details: Mapped[dict | None] = mapped_column(JSON)
    error_message: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<AuditLog(action={self.action}, severity={self.severity})>"
