"""Execution pipeline for one due schedule slot.

Stages run in order: fetch data, render the chart, deliver to each
recipient, record the outcome. Each queued job owns one execution record.
A retryable failure on a non-final attempt leaves that record running and
notes the error. The last attempt, a non-retryable failure or a completed
delivery finishes the record, advances ``next_run_at`` and writes the audit
entry. Failures are re-raised so the queue's retry policy applies.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from reportcast.core.errors import (
    NON_RETRYABLE_ERRORS,
    PartialDeliveryFailure,
    RecordingError,
    SecurityViolation,
    TransientPipelineError,
)
from reportcast.core.tracing import create_span
from reportcast.models import ExecutionStatus, Report, ReportSchedule
from reportcast.scheduling.audit import (
    AuditAction,
    AuditLogger,
    AuditSeverity,
    ScheduleExecutionDetails,
)
from reportcast.scheduling.delivery import (
    DeliveryResult,
    EmailTransport,
    InlineImage,
    render_report_email,
    report_subject,
)
from reportcast.scheduling.gate import DeliveryGate
from reportcast.scheduling.jobs import JobDescriptor
from reportcast.scheduling.next_run import calculate_next_run, utcnow
from reportcast.scheduling.render import RenderPool, RenderRequest
from reportcast.scheduling.store import ScheduleStore

logger = logging.getLogger(__name__)

NO_RECIPIENTS_MESSAGE = "Schedule has no recipients"


class PipelineStage(str, Enum):
    FETCHING_DATA = "fetching_data"
    RENDERING = "rendering"
    DELIVERING = "delivering"
    RECORDING = "recording"


class QueryExecutor(Protocol):
    """Re-runs a report's saved query and returns the fresh dataset."""

    async def execute(self, report: Report) -> Any: ...


@dataclass
class DeliveryTally:
    sent: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def status(self) -> ExecutionStatus:
        return ExecutionStatus.COMPLETED if self.sent > 0 else ExecutionStatus.FAILED

    @property
    def error_message(self) -> str | None:
        if self.sent == 0 and self.failed == 0:
            return NO_RECIPIENTS_MESSAGE
        if self.failed:
            return str(PartialDeliveryFailure(self.sent, self.failed))
        return None


class ExecutionWorker:
    def __init__(
        self,
        store: ScheduleStore,
        render_pool: RenderPool,
        gate: DeliveryGate,
        transport: EmailTransport,
        audit: AuditLogger,
        query_executor: QueryExecutor | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._render_pool = render_pool
        self._gate = gate
        self._transport = transport
        self._audit = audit
        self._query_executor = query_executor
        self._clock = clock

    async def handle(self, descriptor: JobDescriptor, final_attempt: bool = True) -> None:
        """Run the pipeline for one job. Queue handler entry point.

        ``final_attempt`` is False while the queue still has retries left for
        the job; a retryable failure then leaves the execution record open.
        """
        schedule = await self._store.load_schedule(descriptor.schedule_id)
        if schedule is None or schedule.deleted_at is not None or not schedule.is_enabled:
            logger.info(
                "worker: schedule %s is missing, disabled or deleted; skipping %s",
                descriptor.schedule_id,
                descriptor.idempotency_key,
            )
            return

        execution_id = await self._store.start_execution(descriptor, self._clock())
        stage = PipelineStage.FETCHING_DATA
        attributes = {
            "schedule.id": descriptor.schedule_id,
            "tenant.id": descriptor.tenant_id,
            "job.key": descriptor.idempotency_key,
        }

        try:
            with create_span("schedule.fetch_data", attributes):
                data = await self._fetch_data(schedule.report)

            stage = PipelineStage.RENDERING
            with create_span("schedule.render", attributes):
                image = await self._render(schedule.report, data)

            stage = PipelineStage.DELIVERING
            with create_span("schedule.deliver", attributes) as span:
                tally = await self._deliver(schedule, descriptor, image)
                span.set_attribute("emails.sent", tally.sent)
                span.set_attribute("emails.failed", tally.failed)
        except Exception as exc:
            if final_attempt or isinstance(exc, NON_RETRYABLE_ERRORS):
                await self._abort(descriptor, schedule, execution_id, stage, exc)
            else:
                logger.warning(
                    "worker: schedule %s failed while %s, will retry: %s",
                    descriptor.schedule_id,
                    stage.value,
                    exc,
                )
                await self._store.record_attempt_error(execution_id, str(exc))
            raise

        with create_span("schedule.record", attributes):
            try:
                await self._record(descriptor, schedule, execution_id, tally)
            except Exception as exc:
                logger.exception(
                    "worker: schedule %s delivered %d email(s) but failed while %s",
                    descriptor.schedule_id,
                    tally.sent,
                    PipelineStage.RECORDING.value,
                )
                await self._finalize_after_delivery(descriptor, schedule, execution_id, tally)
                raise RecordingError(
                    f"Delivered {tally.sent} email(s) but failed to record the outcome: {exc}"
                ) from exc

    # ── Stages ────────────────────────────────────────────────────────────────

    async def _fetch_data(self, report: Report) -> Any:
        if report.has_live_query and self._query_executor is not None:
            try:
                data = await self._query_executor.execute(report)
            except Exception as exc:
                if report.data_json is None:
                    raise TransientPipelineError(
                        f"Report has no data and query re-execution failed: {exc}"
                    ) from exc
                logger.warning(
                    "worker: query refresh for report %s failed, using cached data: %s",
                    report.id,
                    exc,
                )
                return report.data_json
            await self._store.save_report_data(report.id, data, self._clock())
            return data

        if report.data_json is None:
            raise TransientPipelineError("Report has no data and no SQL query configured")
        return report.data_json

    async def _render(self, report: Report, data: Any) -> bytes:
        request = RenderRequest(
            report_id=str(report.id),
            report_name=report.name,
            data=data,
            chart_config=report.chart_config,
        )
        try:
            image = await self._render_pool.render(request)
        except Exception as exc:
            await self._store.save_chart_error(report.id, str(exc))
            raise
        await self._store.save_chart_image(report.id, image, self._clock())
        return image

    async def _deliver(
        self,
        schedule: ReportSchedule,
        descriptor: JobDescriptor,
        image: bytes,
    ) -> DeliveryTally:
        emails = [r.email for r in schedule.recipients]
        if not emails:
            logger.warning("worker: schedule %s has no recipients", schedule.id)
            return DeliveryTally()

        context = {
            "user_id": descriptor.user_id,
            "tenant_id": descriptor.tenant_id,
            "schedule_id": descriptor.schedule_id,
        }
        await self._gate.check_transport(self._transport.relay_host, **context)
        await self._gate.check_count(emails, **context)

        subject = report_subject(schedule.report.name)
        body = render_report_email(
            schedule.report.name,
            schedule.tenant.name if schedule.tenant is not None else "",
            str(getattr(schedule.frequency, "value", schedule.frequency)),
            schedule.time_of_day,
            self._clock(),
        )
        attachment = InlineImage(image)

        tally = DeliveryTally()
        for email in emails:
            try:
                await self._gate.check_address(email, **context)
            except SecurityViolation as exc:
                tally.failed += 1
                tally.errors.append(f"{email}: {exc}")
                continue

            try:
                result = await self._transport.send(email, subject, body, attachment)
            except Exception as exc:
                result = DeliveryResult(sent=False, error=str(exc))

            if result.sent:
                tally.sent += 1
            else:
                tally.failed += 1
                tally.errors.append(f"{email}: {result.error}")
                logger.warning("worker: delivery to %s failed: %s", email, result.error)
        return tally

    async def _record(
        self,
        descriptor: JobDescriptor,
        schedule: ReportSchedule,
        execution_id: str,
        tally: DeliveryTally,
    ) -> None:
        status = tally.status
        await self._store.finish_execution(
            execution_id,
            status,
            self._clock(),
            tally.sent,
            tally.failed,
            tally.error_message,
        )
        next_run_at = await self._advance(schedule, descriptor)

        if status is ExecutionStatus.COMPLETED:
            action = AuditAction.SCHEDULE_EXECUTED
            severity = AuditSeverity.WARNING if tally.failed else AuditSeverity.INFO
        else:
            action = AuditAction.SCHEDULE_FAILED
            severity = AuditSeverity.ERROR
        await self._audit.log(
            ScheduleExecutionDetails(
                action=action,
                execution_id=execution_id,
                report_id=descriptor.report_id,
                due_slot=descriptor.due_slot.isoformat(),
                emails_sent=tally.sent,
                emails_failed=tally.failed,
            ),
            severity=severity,
            user_id=descriptor.user_id,
            tenant_id=descriptor.tenant_id,
            resource_type="schedule",
            resource_id=descriptor.schedule_id,
            error_message=tally.error_message,
        )
        logger.info(
            "worker: schedule %s %s (sent=%d failed=%d), next run %s",
            descriptor.schedule_id,
            status.value,
            tally.sent,
            tally.failed,
            next_run_at.isoformat(),
        )

    async def _abort(
        self,
        descriptor: JobDescriptor,
        schedule: ReportSchedule,
        execution_id: str,
        stage: PipelineStage,
        exc: Exception,
    ) -> None:
        logger.error(
            "worker: schedule %s aborted while %s: %s",
            descriptor.schedule_id,
            stage.value,
            exc,
        )
        await self._store.finish_execution(
            execution_id,
            ExecutionStatus.FAILED,
            self._clock(),
            0,
            0,
            str(exc),
        )
        await self._advance(schedule, descriptor)
        await self._audit.log(
            ScheduleExecutionDetails(
                action=AuditAction.SCHEDULE_FAILED,
                execution_id=execution_id,
                report_id=descriptor.report_id,
                due_slot=descriptor.due_slot.isoformat(),
                stage=stage.value,
            ),
            severity=AuditSeverity.ERROR,
            user_id=descriptor.user_id,
            tenant_id=descriptor.tenant_id,
            resource_type="schedule",
            resource_id=descriptor.schedule_id,
            error_message=str(exc),
        )

    async def _finalize_after_delivery(
        self,
        descriptor: JobDescriptor,
        schedule: ReportSchedule,
        execution_id: str,
        tally: DeliveryTally,
    ) -> None:
        """Best-effort close-out once emails have left. Never raises."""
        try:
            await self._store.finish_execution(
                execution_id,
                tally.status,
                self._clock(),
                tally.sent,
                tally.failed,
                tally.error_message,
            )
        except Exception:
            logger.exception("worker: could not finish execution %s", execution_id)
        try:
            await self._advance(schedule, descriptor)
        except Exception:
            logger.exception("worker: could not advance schedule %s", descriptor.schedule_id)

    async def _advance(self, schedule: ReportSchedule, descriptor: JobDescriptor) -> datetime:
        # A run-now slot may still be ahead of the clock; step past it.
        next_run_at = calculate_next_run(
            schedule.frequency,
            schedule.time_of_day,
            schedule.day_of_week,
            schedule.day_of_month,
            from_=max(self._clock(), descriptor.due_slot),
        )
        await self._store.update_next_run(schedule.id, next_run_at)
        return next_run_at
