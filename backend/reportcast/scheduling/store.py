"""Persistence for schedules, recipients, executions and report artifacts.

Each method opens its own session from the factory and commits before
returning, so callers never hold a transaction across pipeline stages.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from reportcast.models import (
    ExecutionStatus,
    Report,
    ReportSchedule,
    ScheduleExecution,
    ScheduleRecipient,
    Tenant,
)
from reportcast.scheduling.jobs import JobDescriptor
from reportcast.scheduling.recipients import ClassifiedRecipient

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Execution interrupted before completion"


def _live(tenant_id: str | None = None):
    clauses = [ReportSchedule.deleted_at.is_(None)]
    if tenant_id is not None:
        clauses.append(ReportSchedule.tenant_id == tenant_id)
    return clauses


class ScheduleStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ── Schedules ─────────────────────────────────────────────────────────────

    async def list_due_schedules(self, now: datetime) -> list[ReportSchedule]:
        """Enabled, non-deleted schedules whose next run is at or before ``now``."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(ReportSchedule)
                .where(
                    *_live(),
                    ReportSchedule.is_enabled.is_(True),
                    ReportSchedule.next_run_at.is_not(None),
                    ReportSchedule.next_run_at <= now,
                )
                .order_by(ReportSchedule.next_run_at)
            )
            return list(result.scalars().all())

    async def load_schedule(self, schedule_id: str) -> ReportSchedule | None:
        """Schedule with recipients, report and tenant, regardless of state."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(ReportSchedule)
                .where(ReportSchedule.id == schedule_id)
                .options(
                    selectinload(ReportSchedule.recipients),
                    selectinload(ReportSchedule.report),
                    selectinload(ReportSchedule.tenant),
                )
            )
            return result.scalar_one_or_none()

    async def get_schedule(self, schedule_id: str, tenant_id: str) -> ReportSchedule | None:
        """Live schedule of the tenant, with recipients."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(ReportSchedule)
                .where(ReportSchedule.id == schedule_id, *_live(tenant_id))
                .options(selectinload(ReportSchedule.recipients))
                .execution_options(populate_existing=True)
            )
            return result.scalar_one_or_none()

    async def count_active_schedules(self, tenant_id: str, exclude_id: str | None = None) -> int:
        async with self._session_factory() as db:
            query = select(func.count()).select_from(ReportSchedule).where(
                *_live(tenant_id),
                ReportSchedule.is_enabled.is_(True),
            )
            if exclude_id is not None:
                query = query.where(ReportSchedule.id != exclude_id)
            return int((await db.execute(query)).scalar_one())

    async def get_tenant(self, tenant_id: str) -> Tenant | None:
        async with self._session_factory() as db:
            return await db.get(Tenant, tenant_id)

    async def create_schedule(
        self,
        schedule: ReportSchedule,
        recipients: Sequence[ClassifiedRecipient],
    ) -> ReportSchedule:
        async with self._session_factory() as db:
            schedule.recipients = [
                ScheduleRecipient(email=r.email, domain=r.domain, is_external=r.is_external)
                for r in recipients
            ]
            db.add(schedule)
            await db.commit()
            await db.refresh(schedule, attribute_names=["created_at", "updated_at"])
            return schedule

    async def update_schedule(
        self,
        schedule_id: str,
        tenant_id: str,
        values: dict[str, Any],
        recipients: Sequence[ClassifiedRecipient] | None = None,
    ) -> ReportSchedule | None:
        """Apply column ``values`` and optionally replace the recipient list."""
        async with self._session_factory() as db:
            if values:
                await db.execute(
                    update(ReportSchedule)
                    .where(ReportSchedule.id == schedule_id, *_live(tenant_id))
                    .values(**values)
                )
            if recipients is not None:
                await db.execute(
                    delete(ScheduleRecipient).where(ScheduleRecipient.schedule_id == schedule_id)
                )
                db.add_all(
                    ScheduleRecipient(
                        schedule_id=schedule_id,
                        email=r.email,
                        domain=r.domain,
                        is_external=r.is_external,
                    )
                    for r in recipients
                )
            await db.commit()
        return await self.get_schedule(schedule_id, tenant_id)

    async def soft_delete_schedule(
        self,
        schedule_id: str,
        tenant_id: str,
        user_id: str,
        now: datetime,
    ) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                update(ReportSchedule)
                .where(ReportSchedule.id == schedule_id, *_live(tenant_id))
                .values(
                    deleted_at=now,
                    is_enabled=False,
                    last_modified_by=user_id,
                    last_modified_at=now,
                )
            )
            await db.commit()
            return result.rowcount > 0

    async def update_next_run(self, schedule_id: str, next_run_at: datetime) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(ReportSchedule)
                .where(ReportSchedule.id == schedule_id)
                .values(next_run_at=next_run_at)
            )
            await db.commit()

    # ── Report artifacts ──────────────────────────────────────────────────────

    async def _update_report(self, report_id: str, **values: Any) -> None:
        async with self._session_factory() as db:
            await db.execute(update(Report).where(Report.id == report_id).values(**values))
            await db.commit()

    async def save_report_data(self, report_id: str, data: Any, refreshed_at: datetime) -> None:
        await self._update_report(report_id, data_json=data, data_refreshed_at=refreshed_at)

    async def save_chart_image(self, report_id: str, image: bytes, generated_at: datetime) -> None:
        await self._update_report(
            report_id,
            chart_image_data=image,
            chart_image_generated_at=generated_at,
            chart_image_error=None,
        )

    async def save_chart_error(self, report_id: str, error: str) -> None:
        await self._update_report(report_id, chart_image_error=error)

    # ── Executions ────────────────────────────────────────────────────────────

    async def start_execution(self, descriptor: JobDescriptor, started_at: datetime) -> str:
        """Open the execution record for a job, reusing the row of an earlier attempt."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(ScheduleExecution).where(
                    ScheduleExecution.job_key == descriptor.idempotency_key
                )
            )
            execution = result.scalar_one_or_none()
            if execution is None:
                execution = ScheduleExecution(
                    schedule_id=descriptor.schedule_id,
                    tenant_id=descriptor.tenant_id,
                    report_id=descriptor.report_id,
                    job_key=descriptor.idempotency_key,
                )
                db.add(execution)
            execution.started_at = started_at
            execution.completed_at = None
            execution.status = ExecutionStatus.RUNNING
            execution.emails_sent = 0
            execution.emails_failed = 0
            execution.error_message = None
            await db.commit()
            return str(execution.id)

    async def record_attempt_error(self, execution_id: str, error_message: str) -> None:
        """Note why an attempt failed on an execution that will be retried."""
        async with self._session_factory() as db:
            await db.execute(
                update(ScheduleExecution)
                .where(
                    ScheduleExecution.id == execution_id,
                    ScheduleExecution.status == ExecutionStatus.RUNNING,
                )
                .values(error_message=error_message)
            )
            await db.commit()

    async def finish_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        completed_at: datetime,
        emails_sent: int,
        emails_failed: int,
        error_message: str | None = None,
    ) -> bool:
        """Finalize a running execution. Returns False if it was already finalized."""
        async with self._session_factory() as db:
            result = await db.execute(
                update(ScheduleExecution)
                .where(
                    ScheduleExecution.id == execution_id,
                    ScheduleExecution.status == ExecutionStatus.RUNNING,
                )
                .values(
                    status=status,
                    completed_at=completed_at,
                    emails_sent=emails_sent,
                    emails_failed=emails_failed,
                    error_message=error_message,
                )
            )
            await db.commit()
            finalized = result.rowcount > 0
        if not finalized:
            logger.warning("store: execution %s was already finalized", execution_id)
        return finalized

    async def fail_orphaned_executions(self, now: datetime) -> int:
        """Finalize executions left running by a process that died mid-pipeline."""
        async with self._session_factory() as db:
            result = await db.execute(
                update(ScheduleExecution)
                .where(ScheduleExecution.status == ExecutionStatus.RUNNING)
                .values(
                    status=ExecutionStatus.FAILED,
                    completed_at=now,
                    error_message=INTERRUPTED_MESSAGE,
                )
            )
            await db.commit()
            return result.rowcount

    async def list_executions(
        self,
        schedule_id: str,
        tenant_id: str,
        limit: int = 50,
    ) -> list[ScheduleExecution]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(ScheduleExecution)
                .where(
                    ScheduleExecution.schedule_id == schedule_id,
                    ScheduleExecution.tenant_id == tenant_id,
                )
                .order_by(ScheduleExecution.started_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
