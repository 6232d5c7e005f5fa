"""Report scheduling: next-run arithmetic, job queue, pipeline and audit."""

from reportcast.scheduling.audit import AuditAction, AuditLogger, AuditSeverity
from reportcast.scheduling.gate import DeliveryGate
from reportcast.scheduling.jobs import JobDescriptor
from reportcast.scheduling.next_run import calculate_next_run, parse_time_of_day
from reportcast.scheduling.queue import InMemoryJobBackend, JobHandle, JobQueue, SqlJobBackend
from reportcast.scheduling.recipients import classify_recipients, diff_recipients, partition_recipients
from reportcast.scheduling.render import PlaywrightRenderBackend, RenderPool, RenderRequest
from reportcast.scheduling.scanner import DueScheduleScanner, ScannerState, ScanResult
from reportcast.scheduling.service import PermissionOracle, ScheduleService, StaticPermissionOracle
from reportcast.scheduling.store import ScheduleStore
from reportcast.scheduling.worker import ExecutionWorker, PipelineStage, QueryExecutor

__all__ = [
    "AuditAction",
    "AuditLogger",
    "AuditSeverity",
    "DeliveryGate",
    "DueScheduleScanner",
    "ExecutionWorker",
    "InMemoryJobBackend",
    "JobDescriptor",
    "JobHandle",
    "JobQueue",
    "PermissionOracle",
    "PipelineStage",
    "PlaywrightRenderBackend",
    "QueryExecutor",
    "RenderPool",
    "RenderRequest",
    "ScanResult",
    "ScannerState",
    "ScheduleService",
    "ScheduleStore",
    "SqlJobBackend",
    "StaticPermissionOracle",
    "calculate_next_run",
    "classify_recipients",
    "diff_recipients",
    "parse_time_of_day",
    "partition_recipients",
]
