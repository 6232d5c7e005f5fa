"""Periodic scan for due schedules.

Each tick enqueues one job per due schedule, keyed on the schedule's
current ``next_run_at``. A slot that is already queued is skipped, so a
schedule whose next run has not advanced yet (job still pending or running)
is never queued twice. Ticks are driven by an APScheduler interval job and
never overlap: the job runs with ``max_instances=1`` and ``tick()`` itself
refuses to start while another tick is running.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from reportcast.core.errors import DuplicateJobError
from reportcast.scheduling.jobs import JobDescriptor
from reportcast.scheduling.next_run import utcnow
from reportcast.scheduling.queue import JobHandle, JobQueue
from reportcast.scheduling.store import ScheduleStore

logger = logging.getLogger(__name__)


class ScannerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass(frozen=True)
class ScanResult:
    found: int = 0
    queued: int = 0
    duplicates: int = 0
    errors: int = 0


class DueScheduleScanner:
    def __init__(
        self,
        store: ScheduleStore,
        queue: JobQueue,
        interval_seconds: float = 60.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._queue = queue
        self._interval = interval_seconds
        self._clock = clock
        self._state = ScannerState.IDLE
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def state(self) -> ScannerState:
        return self._state

    @property
    def is_started(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    async def tick(self) -> ScanResult | None:
        """Enqueue every due schedule. Returns None when a tick is already running."""
        if self._state is ScannerState.RUNNING:
            logger.warning("scanner: previous tick still running, skipping")
            return None

        self._state = ScannerState.RUNNING
        try:
            return await self._scan()
        finally:
            self._state = ScannerState.IDLE

    async def _scan(self) -> ScanResult:
        schedules = await self._store.list_due_schedules(self._clock())
        queued = duplicates = errors = 0

        for schedule in schedules:
            try:
                await self._queue.enqueue(JobDescriptor.for_schedule(schedule))
            except DuplicateJobError:
                duplicates += 1
            except Exception:
                errors += 1
                logger.exception("scanner: failed to queue schedule %s", schedule.id)
            else:
                queued += 1

        result = ScanResult(
            found=len(schedules),
            queued=queued,
            duplicates=duplicates,
            errors=errors,
        )
        if schedules:
            logger.info(
                "scanner: %d due, %d queued, %d already queued, %d errors",
                result.found,
                result.queued,
                result.duplicates,
                result.errors,
            )
        return result

    async def trigger_now(self, schedule: Any, user_id: str | None = None) -> JobHandle | None:
        """Queue the schedule's current slot immediately ("run now").

        Returns None when that slot is already queued.
        """
        descriptor = JobDescriptor.for_schedule(schedule, user_id=user_id)
        try:
            handle = await self._queue.enqueue(descriptor)
        except DuplicateJobError:
            logger.info("scanner: %s already queued", descriptor.idempotency_key)
            return None
        logger.info("scanner: manual run queued %s by user %s", handle.key, descriptor.user_id)
        return handle

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self) -> None:
        if self.is_started:
            return
        self._scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._scheduler.add_job(
            self._run_tick,
            trigger=IntervalTrigger(seconds=self._interval),
            id="due_schedule_scanner",
            name="Queue due report schedules",
            next_run_time=datetime.now(timezone.utc),
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info("scanner: started (interval %.0fs)", self._interval)

    async def stop(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("scanner: stopped")

    async def _run_tick(self) -> None:
        try:
            await self.tick()
        except Exception:
            logger.exception("scanner: tick failed")
