"""Pydantic schemas for schedules, executions and the job queue."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from reportcast.config import settings
from reportcast.models.schedule import ExecutionStatus, ScheduleFrequency


class ScheduleInput(BaseModel):
    """Schema for creating a schedule."""

    tenant_id: str
    report_id: str
    user_id: str
    name: str = Field(min_length=1, max_length=255)
    frequency: ScheduleFrequency
    time_of_day: str
    timezone: str = settings.default_schedule_timezone
    day_of_week: int | None = Field(default=None, ge=0, le=6)
    day_of_month: int | None = Field(default=None, ge=1, le=31)
    recipients: list[str] = Field(min_length=1)


class ScheduleUpdate(BaseModel):
    """Schema for updating a schedule. Only fields that are set are applied."""

    name: str | None = Field(default=None, min_length=1, max_length=255)
    frequency: ScheduleFrequency | None = None
    time_of_day: str | None = None
    timezone: str | None = None
    day_of_week: int | None = Field(default=None, ge=0, le=6)
    day_of_month: int | None = Field(default=None, ge=1, le=31)
    is_enabled: bool | None = None
    recipients: list[str] | None = Field(default=None, min_length=1)


class ExecutionResponse(BaseModel):
    """Schema for an execution record."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    schedule_id: str
    report_id: str
    status: ExecutionStatus
    started_at: datetime
    completed_at: datetime | None
    emails_sent: int
    emails_failed: int
    error_message: str | None


class RunNowResponse(BaseModel):
    """Schema for a manual trigger."""

    job_id: str
    job_key: str
    due_slot: datetime


class QueueStatsResponse(BaseModel):
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    in_flight: int = 0
    scanner_state: str
