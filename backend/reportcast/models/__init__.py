"""Database models."""

from reportcast.models.job import AuditLog, JobStatus, ReportJob
from reportcast.models.schedule import (
    ExecutionStatus,
    ReportSchedule,
    ScheduleExecution,
    ScheduleFrequency,
    ScheduleRecipient,
)
from reportcast.models.tenant import Report, Tenant

__all__ = [
    "AuditLog",
    "ExecutionStatus",
    "JobStatus",
    "Report",
    "ReportJob",
    "ReportSchedule",
    "ScheduleExecution",
    "ScheduleFrequency",
    "ScheduleRecipient",
    "Tenant",
]
