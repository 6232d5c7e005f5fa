"""Unit tests for the execution pipeline.

Total: 19 tests
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from reportcast.core.errors import (
    RecordingError,
    RenderError,
    SecurityViolation,
    TransientPipelineError,
)
from reportcast.models import ExecutionStatus
from reportcast.scheduling.audit import AuditAction, AuditSeverity
from reportcast.scheduling.delivery import CHART_CID
from reportcast.scheduling.gate import DeliveryGate
from reportcast.scheduling.jobs import JobDescriptor
from reportcast.scheduling.queue import InMemoryJobBackend, JobQueue
from reportcast.scheduling.render import RenderPool
from reportcast.scheduling.scanner import DueScheduleScanner
from reportcast.scheduling.worker import NO_RECIPIENTS_MESSAGE, ExecutionWorker
from tests.conftest import (
    PNG_BYTES,
    FakeRenderBackend,
    FakeTransport,
    make_recipient,
    make_report,
    make_schedule,
)

NOW = datetime(2026, 10, 19, 9, 0, 5, tzinfo=timezone.utc)


def make_worker(
    store,
    audit,
    *,
    transport: FakeTransport | None = None,
    render_backend: FakeRenderBackend | None = None,
    gate: DeliveryGate | None = None,
    query_executor=None,
) -> ExecutionWorker:
    return ExecutionWorker(
        store,
        RenderPool(render_backend or FakeRenderBackend(), timeout_seconds=1),
        gate or DeliveryGate(audit, production=True),
        transport or FakeTransport(),
        audit,
        query_executor=query_executor,
        clock=lambda: NOW,
    )


def finish_args(store) -> tuple:
    """(status, sent, failed, error) of the single finish_execution call."""
    store.finish_execution.assert_awaited_once()
    _, status, _, sent, failed, error = store.finish_execution.await_args.args
    return status, sent, failed, error


def audited_actions(audit) -> list[AuditAction]:
    return [c.args[0].action for c in audit.log.await_args_list]


# ── Delivery outcomes ─────────────────────────────────────────────────────────

class TestDelivery:
    @pytest.mark.asyncio
    async def test_all_recipients_succeed(self, mock_store, mock_audit):
        schedule = make_schedule(
            recipients=[make_recipient("a@acme.com"), make_recipient("b@acme.com")]
        )
        mock_store.load_schedule.return_value = schedule
        transport = FakeTransport()
        worker = make_worker(mock_store, mock_audit, transport=transport)

        await worker.handle(JobDescriptor.for_schedule(schedule))

        assert finish_args(mock_store) == (ExecutionStatus.COMPLETED, 2, 0, None)
        assert [s[0] for s in transport.sent] == ["a@acme.com", "b@acme.com"]
        assert transport.sent[0][1] == "Scheduled Report: Weekly Revenue"
        assert f"cid:{CHART_CID}" in transport.sent[0][2]
        assert transport.sent[0][3].content == PNG_BYTES
        assert audited_actions(mock_audit) == [AuditAction.SCHEDULE_EXECUTED]

    @pytest.mark.asyncio
    async def test_partial_failure_still_completes(self, mock_store, mock_audit):
        schedule = make_schedule(
            recipients=[
                make_recipient("a@acme.com"),
                make_recipient("b@acme.com"),
                make_recipient("c@acme.com"),
            ]
        )
        mock_store.load_schedule.return_value = schedule
        worker = make_worker(mock_store, mock_audit, transport=FakeTransport(failing={"b@acme.com"}))

        await worker.handle(JobDescriptor.for_schedule(schedule))

        assert finish_args(mock_store) == (
            ExecutionStatus.COMPLETED,
            2,
            1,
            "Failed to send 1 of 3 emails",
        )
        assert mock_audit.log.await_args.kwargs["severity"] is AuditSeverity.WARNING

    @pytest.mark.asyncio
    async def test_all_recipients_failing_marks_execution_failed(self, mock_store, mock_audit):
        schedule = make_schedule(recipients=[make_recipient("a@acme.com")])
        mock_store.load_schedule.return_value = schedule
        worker = make_worker(mock_store, mock_audit, transport=FakeTransport(failing={"a@acme.com"}))

        await worker.handle(JobDescriptor.for_schedule(schedule))

        status, sent, failed, _ = finish_args(mock_store)
        assert (status, sent, failed) == (ExecutionStatus.FAILED, 0, 1)
        assert audited_actions(mock_audit) == [AuditAction.SCHEDULE_FAILED]

    @pytest.mark.asyncio
    async def test_no_recipients_is_recorded_as_failed(self, mock_store, mock_audit):
        schedule = make_schedule(recipients=[])
        mock_store.load_schedule.return_value = schedule
        worker = make_worker(mock_store, mock_audit)

        await worker.handle(JobDescriptor.for_schedule(schedule))

        assert finish_args(mock_store) == (ExecutionStatus.FAILED, 0, 0, NO_RECIPIENTS_MESSAGE)

    @pytest.mark.asyncio
    async def test_blocked_address_counts_as_failed(self, mock_store, mock_audit):
        schedule = make_schedule(
            recipients=[make_recipient("qa@acme.com"), make_recipient("ceo@acme.com")]
        )
        mock_store.load_schedule.return_value = schedule
        gate = DeliveryGate(mock_audit, production=False, approved_recipients=["qa@acme.com"])
        transport = FakeTransport()
        worker = make_worker(mock_store, mock_audit, transport=transport, gate=gate)

        await worker.handle(JobDescriptor.for_schedule(schedule))

        assert finish_args(mock_store)[:3] == (ExecutionStatus.COMPLETED, 1, 1)
        assert [s[0] for s in transport.sent] == ["qa@acme.com"]
        assert AuditAction.EMAIL_BLOCKED_DOMAIN in audited_actions(mock_audit)

    @pytest.mark.asyncio
    async def test_blocked_relay_aborts_the_run(self, mock_store, mock_audit):
        schedule = make_schedule()
        mock_store.load_schedule.return_value = schedule
        gate = DeliveryGate(mock_audit, production=True, blocked_relays=["mailtrap"])
        transport = FakeTransport(relay_host="sandbox.smtp.mailtrap.io:2525")
        worker = make_worker(mock_store, mock_audit, transport=transport, gate=gate)

        with pytest.raises(SecurityViolation):
            await worker.handle(JobDescriptor.for_schedule(schedule))

        assert transport.sent == []
        assert finish_args(mock_store)[0] is ExecutionStatus.FAILED
        assert audited_actions(mock_audit) == [
            AuditAction.EMAIL_BLOCKED_TEST_SERVICE,
            AuditAction.SCHEDULE_FAILED,
        ]


# ── Aborts ────────────────────────────────────────────────────────────────────

class TestAborts:
    @pytest.mark.asyncio
    async def test_render_failure_records_and_reraises(self, mock_store, mock_audit):
        schedule = make_schedule()
        mock_store.load_schedule.return_value = schedule
        backend = FakeRenderBackend(error=RuntimeError("browser crashed"))
        worker = make_worker(mock_store, mock_audit, render_backend=backend)

        with pytest.raises(RenderError):
            await worker.handle(JobDescriptor.for_schedule(schedule))

        status, sent, failed, error = finish_args(mock_store)
        assert (status, sent, failed) == (ExecutionStatus.FAILED, 0, 0)
        assert "browser crashed" in error
        mock_store.save_chart_error.assert_awaited_once()
        mock_store.save_chart_image.assert_not_awaited()
        mock_store.update_next_run.assert_awaited_once()
        details = mock_audit.log.await_args.args[0]
        assert details.action is AuditAction.SCHEDULE_FAILED
        assert details.stage == "rendering"

    @pytest.mark.asyncio
    async def test_report_without_data_or_query_aborts(self, mock_store, mock_audit):
        report = make_report()
        report.data_json = None
        schedule = make_schedule(report=report)
        mock_store.load_schedule.return_value = schedule
        worker = make_worker(mock_store, mock_audit)

        with pytest.raises(TransientPipelineError, match="no SQL query configured"):
            await worker.handle(JobDescriptor.for_schedule(schedule))

        assert mock_audit.log.await_args.args[0].stage == "fetching_data"


# ── Data refresh ──────────────────────────────────────────────────────────────

class TestFetchData:
    @pytest.mark.asyncio
    async def test_live_query_result_is_saved_and_rendered(self, mock_store, mock_audit):
        report = make_report(sql_query="select 1", connection_id="conn-1")
        schedule = make_schedule(report=report)
        mock_store.load_schedule.return_value = schedule
        executor = AsyncMock()
        executor.execute.return_value = [{"x": 1}]
        backend = FakeRenderBackend()
        worker = make_worker(mock_store, mock_audit, render_backend=backend, query_executor=executor)

        await worker.handle(JobDescriptor.for_schedule(schedule))

        mock_store.save_report_data.assert_awaited_once_with(report.id, [{"x": 1}], NOW)
        assert backend.requests[0].data == [{"x": 1}]

    @pytest.mark.asyncio
    async def test_failed_query_falls_back_to_cached_data(self, mock_store, mock_audit):
        report = make_report(sql_query="select 1", connection_id="conn-1", data_json=[{"x": 0}])
        schedule = make_schedule(report=report)
        mock_store.load_schedule.return_value = schedule
        executor = AsyncMock()
        executor.execute.side_effect = RuntimeError("warehouse offline")
        backend = FakeRenderBackend()
        worker = make_worker(mock_store, mock_audit, render_backend=backend, query_executor=executor)

        await worker.handle(JobDescriptor.for_schedule(schedule))

        assert backend.requests[0].data == [{"x": 0}]
        mock_store.save_report_data.assert_not_awaited()
        assert finish_args(mock_store)[0] is ExecutionStatus.COMPLETED


# ── Skips and scheduling ──────────────────────────────────────────────────────

class TestSkipAndAdvance:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [{"is_enabled": False}, {"deleted_at": datetime(2026, 10, 1, tzinfo=timezone.utc)}],
    )
    async def test_disabled_or_deleted_schedule_is_skipped(self, mock_store, mock_audit, overrides):
        schedule = make_schedule(**overrides)
        mock_store.load_schedule.return_value = schedule
        worker = make_worker(mock_store, mock_audit)

        await worker.handle(JobDescriptor.for_schedule(schedule))

        mock_store.start_execution.assert_not_awaited()
        mock_store.update_next_run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_next_run_advances_past_now(self, mock_store, mock_audit):
        schedule = make_schedule(frequency="weekly", day_of_week=1, time_of_day="09:00")
        mock_store.load_schedule.return_value = schedule
        worker = make_worker(mock_store, mock_audit)

        await worker.handle(JobDescriptor.for_schedule(schedule))

        mock_store.update_next_run.assert_awaited_once_with(
            schedule.id, datetime(2026, 10, 26, 9, 0, tzinfo=timezone.utc)
        )


# ── Retries ───────────────────────────────────────────────────────────────────

class TestRetryAttempts:
    @pytest.mark.asyncio
    async def test_retryable_failure_before_last_attempt_leaves_execution_open(
        self, mock_store, mock_audit
    ):
        schedule = make_schedule()
        mock_store.load_schedule.return_value = schedule
        backend = FakeRenderBackend(error=RuntimeError("browser crashed"))
        worker = make_worker(mock_store, mock_audit, render_backend=backend)

        with pytest.raises(RenderError):
            await worker.handle(JobDescriptor.for_schedule(schedule), final_attempt=False)

        mock_store.finish_execution.assert_not_awaited()
        mock_store.update_next_run.assert_not_awaited()
        mock_audit.log.assert_not_awaited()
        execution_id, error = mock_store.record_attempt_error.await_args.args
        assert execution_id == mock_store.start_execution.return_value
        assert "browser crashed" in error

    @pytest.mark.asyncio
    async def test_security_violation_finishes_on_any_attempt(self, mock_store, mock_audit):
        schedule = make_schedule()
        mock_store.load_schedule.return_value = schedule
        gate = DeliveryGate(mock_audit, production=True, blocked_relays=["mailtrap"])
        transport = FakeTransport(relay_host="sandbox.smtp.mailtrap.io:2525")
        worker = make_worker(mock_store, mock_audit, transport=transport, gate=gate)

        with pytest.raises(SecurityViolation):
            await worker.handle(JobDescriptor.for_schedule(schedule), final_attempt=False)

        assert finish_args(mock_store)[0] is ExecutionStatus.FAILED
        mock_store.update_next_run.assert_awaited_once()
        mock_store.record_attempt_error.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_queued_job_writes_one_outcome_across_retries(self, mock_store, mock_audit):
        schedule = make_schedule()
        mock_store.load_schedule.return_value = schedule
        backend = FakeRenderBackend(error=RuntimeError("browser crashed"))
        worker = make_worker(mock_store, mock_audit, render_backend=backend)
        queue = JobQueue(InMemoryJobBackend(), max_attempts=3, backoff_seconds=0, poll_interval=0.01)
        failed = asyncio.Event()
        queue.on_failed(lambda job, exc: failed.set())

        await queue.enqueue(JobDescriptor.for_schedule(schedule))
        queue.process(1, worker.handle)
        await asyncio.wait_for(failed.wait(), 2)
        await queue.close(1)

        assert len(backend.requests) == 3
        assert mock_store.start_execution.await_count == 3
        assert mock_store.record_attempt_error.await_count == 2
        assert finish_args(mock_store)[0] is ExecutionStatus.FAILED
        mock_store.update_next_run.assert_awaited_once()
        assert audited_actions(mock_audit) == [AuditAction.SCHEDULE_FAILED]


# ── Recording ─────────────────────────────────────────────────────────────────

class TestRecordingFailure:
    @pytest.mark.asyncio
    async def test_store_error_after_delivery_is_not_retried(self, mock_store, mock_audit):
        schedule = make_schedule(
            recipients=[make_recipient("a@acme.com"), make_recipient("b@acme.com")]
        )
        mock_store.load_schedule.return_value = schedule
        mock_store.finish_execution.side_effect = [RuntimeError("connection reset"), True]
        transport = FakeTransport()
        worker = make_worker(mock_store, mock_audit, transport=transport)
        queue = JobQueue(InMemoryJobBackend(), max_attempts=3, backoff_seconds=0, poll_interval=0.01)
        failures = []
        failed = asyncio.Event()

        def on_failed(job, exc):
            failures.append(exc)
            failed.set()

        queue.on_failed(on_failed)

        await queue.enqueue(JobDescriptor.for_schedule(schedule))
        queue.process(1, worker.handle)
        await asyncio.wait_for(failed.wait(), 2)
        await queue.close(1)

        assert isinstance(failures[0], RecordingError)
        assert [s[0] for s in transport.sent] == ["a@acme.com", "b@acme.com"]
        assert mock_store.finish_execution.await_count == 2
        _, status, _, sent, _, _ = mock_store.finish_execution.await_args.args
        assert (status, sent) == (ExecutionStatus.COMPLETED, 2)
        mock_store.update_next_run.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_best_effort_close_out_survives_a_second_store_error(
        self, mock_store, mock_audit
    ):
        schedule = make_schedule()
        mock_store.load_schedule.return_value = schedule
        mock_store.finish_execution.side_effect = RuntimeError("database is gone")
        mock_store.update_next_run.side_effect = RuntimeError("database is gone")
        worker = make_worker(mock_store, mock_audit)

        with pytest.raises(RecordingError, match="Delivered 1 email"):
            await worker.handle(JobDescriptor.for_schedule(schedule))

        assert mock_store.finish_execution.await_count == 2
        mock_store.update_next_run.assert_awaited_once()


# ── Run now ───────────────────────────────────────────────────────────────────

class TestRunNowThenSchedule:
    @pytest.mark.asyncio
    async def test_schedule_keeps_running_after_an_early_manual_run(self, mock_store, mock_audit):
        clock = {"now": datetime(2026, 10, 18, 15, 0, tzinfo=timezone.utc)}
        schedule = make_schedule(next_run_at=datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc))
        mock_store.load_schedule.return_value = schedule

        async def update_next_run(schedule_id, next_run_at):
            schedule.next_run_at = next_run_at

        async def list_due(now):
            return [schedule] if schedule.next_run_at <= now else []

        mock_store.update_next_run.side_effect = update_next_run
        mock_store.list_due_schedules.side_effect = list_due

        queue = JobQueue(InMemoryJobBackend(), clock=lambda: clock["now"])
        scanner = DueScheduleScanner(mock_store, queue, clock=lambda: clock["now"])
        worker = ExecutionWorker(
            mock_store,
            RenderPool(FakeRenderBackend(), timeout_seconds=1),
            DeliveryGate(mock_audit, production=True),
            FakeTransport(),
            mock_audit,
            clock=lambda: clock["now"],
        )

        await scanner.trigger_now(schedule, user_id="caller")
        await worker.handle(JobDescriptor.for_schedule(schedule, user_id="caller"))
        assert schedule.next_run_at == datetime(2026, 10, 26, 9, 0, tzinfo=timezone.utc)

        clock["now"] = datetime(2026, 10, 19, 9, 0, 30, tzinfo=timezone.utc)
        assert (await scanner.tick()).found == 0

        clock["now"] = datetime(2026, 10, 26, 9, 0, 30, tzinfo=timezone.utc)
        assert (await scanner.tick()).queued == 1
