"""Schedule run-now and execution history endpoints."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, status

from reportcast.api.v1.deps import EngineDep
from reportcast.core.errors import ScheduleNotFound, ValidationError
from reportcast.core.security.auth import CurrentPrincipal
from reportcast.schemas.schedule import ExecutionResponse, RunNowResponse

router = APIRouter()


@router.post(
    "/{schedule_id}/run",
    response_model=RunNowResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def run_schedule_now(
    schedule_id: str,
    principal: CurrentPrincipal,
    scheduling: EngineDep,
):
    """Queue the schedule's current slot for immediate execution."""
    await scheduling.service.require_permission(
        principal.user_id, principal.tenant_id, "run_schedule"
    )

    schedule = await scheduling.store.get_schedule(schedule_id, principal.tenant_id)
    if schedule is None:
        raise ScheduleNotFound(f"Schedule {schedule_id} not found")
    if not schedule.is_enabled:
        raise ValidationError("Schedule is disabled", field="is_enabled")

    handle = await scheduling.scanner.trigger_now(schedule, principal.user_id)
    if handle is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="This schedule run is already queued",
        )
    return RunNowResponse(job_id=handle.id, job_key=handle.key, due_slot=schedule.next_run_at)


@router.get("/{schedule_id}/executions", response_model=list[ExecutionResponse])
async def list_executions(
    schedule_id: str,
    principal: CurrentPrincipal,
    scheduling: EngineDep,
    limit: int = Query(50, ge=1, le=200),
):
    """Most recent executions first."""
    schedule = await scheduling.store.get_schedule(schedule_id, principal.tenant_id)
    if schedule is None:
        raise ScheduleNotFound(f"Schedule {schedule_id} not found")

    executions = await scheduling.store.list_executions(schedule_id, principal.tenant_id, limit=limit)
    return [ExecutionResponse.model_validate(e) for e in executions]
