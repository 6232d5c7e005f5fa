"""Report schedule, recipient and execution models."""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from reportcast.db.base import Base, TimestampMixin, UUIDMixin

if TYPE_CHECKING:
    from reportcast.models.tenant import Report, Tenant


class ScheduleFrequency(str, Enum):
    """How often a schedule fires."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    SEMI_ANNUALLY = "semi_annually"
    ANNUALLY = "annually"


class ExecutionStatus(str, Enum):
    """Status of one schedule execution."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ReportSchedule(Base, UUIDMixin, TimestampMixin):
    """A recurring report delivery."""

    __tablename__ = "report_schedules"
    __table_args__ = (
        Index("ix_report_schedules_tenant_active", "tenant_id", "deleted_at", "is_enabled"),
        Index("ix_report_schedules_due", "next_run_at", "is_enabled", "deleted_at"),
    )

    tenant_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
    )
    report_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("reports.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[str] = mapped_column(UUID(as_uuid=False), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    frequency: Mapped[ScheduleFrequency] = mapped_column(String(20), nullable=False)
    # "HH:MM", already normalized to UTC
    time_of_day: Mapped[str] = mapped_column(String(5), nullable=False)
    # zone the time was entered in, display only
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="America/New_York")
    day_of_week: Mapped[int | None] = mapped_column(Integer)
    day_of_month: Mapped[int | None] = mapped_column(Integer)
    next_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Audit fields
    created_by: Mapped[str] = mapped_column(UUID(as_uuid=False), nullable=False)
    last_modified_by: Mapped[str | None] = mapped_column(UUID(as_uuid=False))
    last_modified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Relationships
    recipients: Mapped[list["ScheduleRecipient"]] = relationship(
        "ScheduleRecipient",
        back_populates="schedule",
        cascade="all, delete-orphan",
    )
    executions: Mapped[list["ScheduleExecution"]] = relationship(
        "ScheduleExecution",
        back_populates="schedule",
        cascade="all, delete-orphan",
    )
    report: Mapped["Report"] = relationship("Report")
    tenant: Mapped["Tenant"] = relationship("Tenant")

    def __repr__(self) -> str:
        return f"<ReportSchedule(id={self.id}, name={self.name!r})>"


class ScheduleRecipient(Base, UUIDMixin):
    """An email recipient of a schedule, classified at write time."""

    __tablename__ = "report_schedule_recipients"
    __table_args__ = (
        UniqueConstraint("schedule_id", "email", name="uq_schedule_recipient_email"),
        Index("ix_schedule_recipients_external", "schedule_id", "is_external"),
    )

    schedule_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("report_schedules.id", ondelete="CASCADE"),
        nullable=False,
    )
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    domain: Mapped[str] = mapped_column(String(255), nullable=False)
    is_external: Mapped[bool] = mapped_column(Boolean, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    schedule: Mapped["ReportSchedule"] = relationship("ReportSchedule", back_populates="recipients")

    def __repr__(self) -> str:
        return f"<ScheduleRecipient(email={self.email}, external={self.is_external})>"


class ScheduleExecution(Base, UUIDMixin):
    """Outcome of one queued job. Retries reuse the row; it is finalized once."""

    __tablename__ = "report_schedule_executions"
    __table_args__ = (
        Index("ix_schedule_executions_tenant_started", "tenant_id", "started_at"),
        Index("ix_schedule_executions_status_started", "status", "started_at"),
        UniqueConstraint("job_key", name="uq_schedule_executions_job_key"),
    )

    schedule_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("report_schedules.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    tenant_id: Mapped[str] = mapped_column(UUID(as_uuid=False), nullable=False)
    report_id: Mapped[str] = mapped_column(UUID(as_uuid=False), nullable=False)
    # One row per queued job; retries of the same job reuse it.
    job_key: Mapped[str] = mapped_column(String(200), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    status: Mapped[ExecutionStatus] = mapped_column(String(20), nullable=False)
    emails_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    emails_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text)

    schedule: Mapped["ReportSchedule"] = relationship("ReportSchedule", back_populates="executions")

    def __repr__(self) -> str:
        return f"<ScheduleExecution(id={self.id}, status={self.status})>"
