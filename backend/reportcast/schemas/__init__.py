"""Pydantic schemas."""

from reportcast.schemas.schedule import (
    ExecutionResponse,
    QueueStatsResponse,
    RunNowResponse,
    ScheduleInput,
    ScheduleUpdate,
)

__all__ = [
    "ExecutionResponse",
    "QueueStatsResponse",
    "RunNowResponse",
    "ScheduleInput",
    "ScheduleUpdate",
]
