"""Wires the scheduling components together and owns their lifecycle.

The engine is built once per process by the app lifespan. ``start()``
recovers state left by a previous process, starts the queue workers and
the due-schedule scanner; ``stop()`` reverses that, draining in-flight jobs
within the configured grace period.

Startup recovery assumes one engine process per database: executions and
jobs left ``running`` are treated as orphaned.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reportcast.config import Settings
from reportcast.scheduling.audit import AuditLogger
from reportcast.scheduling.delivery import EmailTransport, SmtpTransport
from reportcast.scheduling.gate import DeliveryGate
from reportcast.scheduling.next_run import utcnow
from reportcast.scheduling.queue import InMemoryJobBackend, JobBackend, JobQueue, SqlJobBackend
from reportcast.scheduling.render import PlaywrightRenderBackend, RenderBackend, RenderPool
from reportcast.scheduling.scanner import DueScheduleScanner
from reportcast.scheduling.service import PermissionOracle, ScheduleService, StaticPermissionOracle
from reportcast.scheduling.store import ScheduleStore
from reportcast.scheduling.worker import ExecutionWorker, QueryExecutor

logger = logging.getLogger(__name__)


class SchedulingEngine:
    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        job_backend: JobBackend | None = None,
        render_backend: RenderBackend | None = None,
        transport: EmailTransport | None = None,
        query_executor: QueryExecutor | None = None,
        permissions: PermissionOracle | None = None,
    ) -> None:
        self.settings = settings

        self.store = ScheduleStore(session_factory)
        self.audit = AuditLogger(session_factory)
        self.gate = DeliveryGate.from_settings(self.audit, settings)

        if job_backend is None:
            job_backend = (
                InMemoryJobBackend()
                if settings.queue_backend == "memory"
                else SqlJobBackend(session_factory)
            )
        self.queue = JobQueue(
            job_backend,
            max_attempts=settings.queue_max_attempts,
            backoff_seconds=settings.queue_backoff_seconds,
            keep_completed=settings.queue_keep_completed,
            keep_failed=settings.queue_keep_failed,
            poll_interval=settings.queue_poll_interval_seconds,
        )

        self.render_pool = RenderPool(
            render_backend or PlaywrightRenderBackend.from_settings(settings),
            concurrency=settings.render_concurrency,
            max_image_bytes=settings.render_max_image_bytes,
            timeout_seconds=settings.render_timeout_seconds,
        )
        self.transport = transport or SmtpTransport.from_settings(settings)

        self.worker = ExecutionWorker(
            self.store,
            self.render_pool,
            self.gate,
            self.transport,
            self.audit,
            query_executor=query_executor,
        )
        self.scanner = DueScheduleScanner(
            self.store,
            self.queue,
            interval_seconds=settings.scan_interval_seconds,
        )
        self.service = ScheduleService(
            self.store,
            self.audit,
            self.gate,
            permissions or StaticPermissionOracle(),
            max_active=settings.max_active_schedules_per_tenant,
        )
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return

        orphaned = await self.store.fail_orphaned_executions(utcnow())
        if orphaned:
            logger.warning("engine: marked %d orphaned execution(s) as failed", orphaned)
        await self.queue.recover()

        self.queue.process(self.settings.queue_concurrency, self.worker.handle)
        if self.settings.scheduler_enabled:
            self.scanner.start()
        else:
            logger.info("engine: scanner disabled, manual runs only")

        self._running = True
        logger.info(
            "engine: started (%d queue workers, %d render slots)",
            self.settings.queue_concurrency,
            self.settings.render_concurrency,
        )

    async def stop(self) -> None:
        if not self._running:
            return
        await self.scanner.stop()
        await self.queue.close(self.settings.shutdown_grace_seconds)
        await self.render_pool.close()
        self._running = False
        logger.info("engine: stopped")
