"""Durable job queue with idempotent job identity.

Jobs are keyed by ``JobDescriptor.idempotency_key``; inserting an existing
key raises ``DuplicateJobError``. A fixed number of worker tasks claim due
jobs one at a time. Failures are retried with exponential backoff up to
``max_attempts``; errors in ``NON_RETRYABLE_ERRORS`` are never retried. The
handler is told whether the current attempt is the last one, so it can
defer its failure bookkeeping until the job will not run again. Finished jobs are pruned to a bounded history.

Delivery is at-least-once: jobs left ``running`` by a crashed process are
put back to ``pending`` by :meth:`JobQueue.recover`.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from itertools import count
from typing import Any
from uuid import uuid4

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reportcast.core.errors import NON_RETRYABLE_ERRORS, DuplicateJobError
from reportcast.models.job import JobStatus, ReportJob
from reportcast.scheduling.jobs import JobDescriptor
from reportcast.scheduling.next_run import utcnow

logger = logging.getLogger(__name__)

# Called with the descriptor and whether this attempt is the last one.
JobHandler = Callable[[JobDescriptor, bool], Awaitable[None]]
JobListener = Callable[["QueuedJob", BaseException | None], Any]


@dataclass
class QueuedJob:
    """Snapshot of a queue row."""

    id: str
    key: str
    payload: dict[str, Any]
    status: JobStatus
    attempts: int
    max_attempts: int
    run_after: datetime
    last_error: str | None = None
    finished_at: datetime | None = None


@dataclass(frozen=True)
class JobHandle:
    """Returned by :meth:`JobQueue.enqueue`."""

    id: str
    key: str


# ── Backends ──────────────────────────────────────────────────────────────────


class JobBackend(ABC):
    """Storage for queued jobs. Implementations must make ``claim_next`` atomic."""

    @abstractmethod
    async def insert(
        self,
        key: str,
        payload: dict[str, Any],
        max_attempts: int,
        run_after: datetime,
    ) -> QueuedJob:
        """Insert a pending job. Raises ``DuplicateJobError`` for a known key."""

    @abstractmethod
    async def claim_next(self, now: datetime) -> QueuedJob | None:
        """Mark the oldest due pending job running and bump its attempt count."""

    @abstractmethod
    async def complete(self, job_id: str, now: datetime) -> None: ...

    @abstractmethod
    async def reschedule(self, job_id: str, error: str, run_after: datetime) -> None: ...

    @abstractmethod
    async def fail(self, job_id: str, error: str, now: datetime) -> None: ...

    @abstractmethod
    async def recover_running(self) -> int:
        """Return jobs stuck in ``running`` to ``pending``."""

    @abstractmethod
    async def prune(self, status: JobStatus, keep: int) -> int:
        """Delete all but the ``keep`` most recently finished jobs with ``status``."""

    @abstractmethod
    async def counts(self) -> dict[str, int]: ...


class InMemoryJobBackend(JobBackend):
    """Process-local backend for development and tests."""

    def __init__(self) -> None:
        self._jobs: dict[str, QueuedJob] = {}
        self._by_key: dict[str, str] = {}
        self._order: dict[str, int] = {}
        self._seq = count()
        self._lock = asyncio.Lock()

    async def insert(self, key, payload, max_attempts, run_after):
        async with self._lock:
            if key in self._by_key:
                raise DuplicateJobError(key)
            job = QueuedJob(
                id=str(uuid4()),
                key=key,
                payload=dict(payload),
                status=JobStatus.PENDING,
                attempts=0,
                max_attempts=max_attempts,
                run_after=run_after,
            )
            self._jobs[job.id] = job
            self._by_key[key] = job.id
            self._order[job.id] = next(self._seq)
            return replace(job)

    async def claim_next(self, now):
        async with self._lock:
            due = [
                j for j in self._jobs.values()
                if j.status == JobStatus.PENDING and j.run_after <= now
            ]
            if not due:
                return None
            job = min(due, key=lambda j: (j.run_after, self._order[j.id]))
            job.status = JobStatus.RUNNING
            job.attempts += 1
            return replace(job)

    async def complete(self, job_id, now):
        async with self._lock:
            job = self._jobs[job_id]
            job.status = JobStatus.COMPLETED
            job.finished_at = now
            job.last_error = None

    async def reschedule(self, job_id, error, run_after):
        async with self._lock:
            job = self._jobs[job_id]
            job.status = JobStatus.PENDING
            job.last_error = error
            job.run_after = run_after

    async def fail(self, job_id, error, now):
        async with self._lock:
            job = self._jobs[job_id]
            job.status = JobStatus.FAILED
            job.last_error = error
            job.finished_at = now

    async def recover_running(self):
        async with self._lock:
            stuck = [j for j in self._jobs.values() if j.status == JobStatus.RUNNING]
            for job in stuck:
                job.status = JobStatus.PENDING
            return len(stuck)

    async def prune(self, status, keep):
        async with self._lock:
            finished = sorted(
                (j for j in self._jobs.values() if j.status == status),
                key=lambda j: (j.finished_at, self._order[j.id]),
                reverse=True,
            )
            stale = finished[keep:]
            for job in stale:
                del self._jobs[job.id]
                del self._by_key[job.key]
                del self._order[job.id]
            return len(stale)

    async def counts(self):
        async with self._lock:
            result = {s.value: 0 for s in JobStatus}
            for job in self._jobs.values():
                result[JobStatus(job.status).value] += 1
            return result


def _snapshot(row: ReportJob) -> QueuedJob:
    return QueuedJob(
        id=str(row.id),
        key=row.idempotency_key,
        payload=dict(row.payload or {}),
        status=JobStatus(row.status),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        run_after=row.run_after,
        last_error=row.last_error,
        finished_at=row.finished_at,
    )


class SqlJobBackend(JobBackend):
    """Durable backend on the ``report_jobs`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def insert(self, key, payload, max_attempts, run_after):
        async with self._session_factory() as db:
            row = ReportJob(
                idempotency_key=key,
                payload=payload,
                status=JobStatus.PENDING,
                attempts=0,
                max_attempts=max_attempts,
                run_after=run_after,
            )
            db.add(row)
            try:
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                raise DuplicateJobError(key) from exc
            return _snapshot(row)

    async def claim_next(self, now):
        async with self._session_factory() as db:
            result = await db.execute(
                select(ReportJob)
                .where(ReportJob.status == JobStatus.PENDING, ReportJob.run_after <= now)
                .order_by(ReportJob.run_after, ReportJob.created_at)
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None
            row.status = JobStatus.RUNNING
            row.attempts += 1
            await db.commit()
            return _snapshot(row)

    async def _update(self, job_id: str, **values: Any) -> None:
        async with self._session_factory() as db:
            await db.execute(update(ReportJob).where(ReportJob.id == job_id).values(**values))
            await db.commit()

    async def complete(self, job_id, now):
        await self._update(job_id, status=JobStatus.COMPLETED, finished_at=now, last_error=None)

    async def reschedule(self, job_id, error, run_after):
        await self._update(job_id, status=JobStatus.PENDING, last_error=error, run_after=run_after)

    async def fail(self, job_id, error, now):
        await self._update(job_id, status=JobStatus.FAILED, last_error=error, finished_at=now)

    async def recover_running(self):
        async with self._session_factory() as db:
            result = await db.execute(
                update(ReportJob)
                .where(ReportJob.status == JobStatus.RUNNING)
                .values(status=JobStatus.PENDING)
                .returning(ReportJob.id)
            )
            recovered = len(result.all())
            await db.commit()
            return recovered

    async def prune(self, status, keep):
        newest = (
            select(ReportJob.id)
            .where(ReportJob.status == status)
            .order_by(ReportJob.finished_at.desc())
            .limit(keep)
        )
        async with self._session_factory() as db:
            result = await db.execute(
                delete(ReportJob)
                .where(ReportJob.status == status, ReportJob.id.not_in(newest))
                .returning(ReportJob.id)
            )
            pruned = len(result.all())
            await db.commit()
            return pruned

    async def counts(self):
        async with self._session_factory() as db:
            result = await db.execute(
                select(ReportJob.status, func.count()).group_by(ReportJob.status)
            )
            counts = {s.value: 0 for s in JobStatus}
            for status, n in result.all():
                counts[JobStatus(status).value] = n
            return counts


# ── Queue ─────────────────────────────────────────────────────────────────────


class JobQueue:
    """Bounded-concurrency processor over a :class:`JobBackend`."""

    def __init__(
        self,
        backend: JobBackend,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 60.0,
        keep_completed: int = 100,
        keep_failed: int = 200,
        poll_interval: float = 1.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._backend = backend
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self._keep_completed = keep_completed
        self._keep_failed = keep_failed
        self._poll_interval = poll_interval
        self._clock = clock

        self._workers: list[asyncio.Task[None]] = []
        self._stopping = asyncio.Event()
        self._wakeup = asyncio.Event()
        self._in_flight = 0
        self._completed_listeners: list[JobListener] = [self._log_completed]
        self._failed_listeners: list[JobListener] = [self._log_failed]

    # ── Public API ────────────────────────────────────────────────────────────

    def on_completed(self, listener: JobListener) -> None:
        self._completed_listeners.append(listener)

    def on_failed(self, listener: JobListener) -> None:
        self._failed_listeners.append(listener)

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        return self._backoff_seconds * (2 ** (attempt - 1))

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def enqueue(self, descriptor: JobDescriptor) -> JobHandle:
        """Queue a job. Raises ``DuplicateJobError`` if its due slot is already queued."""
        job = await self._backend.insert(
            descriptor.idempotency_key,
            descriptor.to_payload(),
            self._max_attempts,
            self._clock(),
        )
        logger.info("queue: enqueued %s", job.key)
        self._wakeup.set()
        return JobHandle(id=job.id, key=job.key)

    async def recover(self) -> int:
        recovered = await self._backend.recover_running()
        if recovered:
            logger.warning("queue: requeued %d job(s) left running by a previous process", recovered)
        return recovered

    async def stats(self) -> dict[str, int]:
        counts = await self._backend.counts()
        counts["in_flight"] = self._in_flight
        return counts

    def process(self, concurrency: int, handler: JobHandler) -> None:
        """Start ``concurrency`` worker tasks feeding jobs to ``handler``."""
        if self._workers:
            raise RuntimeError("queue is already processing")
        self._stopping.clear()
        self._workers = [
            asyncio.create_task(self._worker_loop(i, handler), name=f"report-queue-worker-{i}")
            for i in range(concurrency)
        ]
        logger.info("queue: started %d worker(s)", concurrency)

    async def close(self, grace_seconds: float = 30.0) -> None:
        """Stop claiming jobs and drain in-flight ones within the grace period."""
        if not self._workers:
            return
        self._stopping.set()
        self._wakeup.set()
        _, pending = await asyncio.wait(self._workers, timeout=grace_seconds)
        if pending:
            logger.warning(
                "queue: cancelling %d worker(s) still busy after %.0fs grace period",
                len(pending),
                grace_seconds,
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        self._workers = []
        logger.info("queue: closed")

    # ── Workers ───────────────────────────────────────────────────────────────

    async def _worker_loop(self, index: int, handler: JobHandler) -> None:
        while not self._stopping.is_set():
            try:
                job = await self._backend.claim_next(self._clock())
            except Exception:
                logger.exception("queue: worker %d could not claim a job", index)
                job = None

            if job is None:
                await self._idle()
                continue

            try:
                await self._run(job, handler)
            except Exception:
                logger.exception("queue: worker %d lost job %s", index, job.key)

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=self._poll_interval)
        except asyncio.TimeoutError:
            return
        if not self._stopping.is_set():
            self._wakeup.clear()

    async def _run(self, job: QueuedJob, handler: JobHandler) -> None:
        self._in_flight += 1
        try:
            try:
                final_attempt = job.attempts >= job.max_attempts
                await handler(JobDescriptor.from_payload(job.payload), final_attempt)
            except NON_RETRYABLE_ERRORS as exc:
                await self._fail(job, exc)
            except Exception as exc:
                if job.attempts < job.max_attempts:
                    delay = self.backoff_delay(job.attempts)
                    await self._backend.reschedule(
                        job.id, str(exc), self._clock() + timedelta(seconds=delay)
                    )
                    logger.warning(
                        "queue: job %s attempt %d/%d failed, retrying in %.0fs: %s",
                        job.key,
                        job.attempts,
                        job.max_attempts,
                        delay,
                        exc,
                    )
                else:
                    await self._fail(job, exc)
            else:
                await self._backend.complete(job.id, self._clock())
                job.status = JobStatus.COMPLETED
                await self._notify(self._completed_listeners, job, None)
                await self._backend.prune(JobStatus.COMPLETED, self._keep_completed)
        finally:
            self._in_flight -= 1

    async def _fail(self, job: QueuedJob, exc: BaseException) -> None:
        await self._backend.fail(job.id, str(exc), self._clock())
        job.status = JobStatus.FAILED
        job.last_error = str(exc)
        await self._notify(self._failed_listeners, job, exc)
        await self._backend.prune(JobStatus.FAILED, self._keep_failed)

    async def _notify(
        self,
        listeners: list[JobListener],
        job: QueuedJob,
        exc: BaseException | None,
    ) -> None:
        for listener in listeners:
            try:
                result = listener(job, exc)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("queue: listener failed for job %s", job.key)

    @staticmethod
    def _log_completed(job: QueuedJob, _exc: BaseException | None) -> None:
        logger.info("queue: job %s completed (attempt %d)", job.key, job.attempts)

    @staticmethod
    def _log_failed(job: QueuedJob, exc: BaseException | None) -> None:
        logger.error(
            "queue: job %s failed after %d attempt(s): %s",
            job.key,
            job.attempts,
            exc,
        )
