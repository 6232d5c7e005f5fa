"""Error taxonomy for the scheduling engine.

``ValidationError``, ``SecurityViolation`` and ``RecordingError`` are
permanent: the job queue never retries them. ``TransientPipelineError`` (and subclasses) are retried
up to the queue's attempt ceiling.
"""

from __future__ import annotations


class ReportcastError(Exception):
    """Base class for all engine errors."""


class ValidationError(ReportcastError):
    """Bad schedule parameters. Surfaced to the caller, never retried."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class RateLimitExceeded(ValidationError):
    """Tenant already has the maximum number of active schedules."""

    def __init__(self, limit: int, current: int) -> None:
        super().__init__(
            f"Maximum of {limit} active schedules per tenant",
            field="schedule",
        )
        self.limit = limit
        self.current = current


class PermissionDenied(ReportcastError):
    """The permission oracle refused the operation."""


class ScheduleNotFound(ReportcastError):
    """No live (non-deleted) schedule with that id for the tenant."""


class SecurityViolation(ReportcastError):
    """Disallowed recipient or transport configuration. Never retried."""


class TransientPipelineError(ReportcastError):
    """Query, render or transport hiccup. Retried by the queue."""


class RenderError(TransientPipelineError):
    """The render backend failed, timed out or produced an oversized image."""


class PartialDeliveryFailure(ReportcastError):
    """Some, but not all, recipients failed. The run still counts as completed."""

    def __init__(self, sent: int, failed: int) -> None:
        super().__init__(f"Failed to send {failed} of {sent + failed} emails")
        self.sent = sent
        self.failed = failed


class RecordingError(ReportcastError):
    """Emails went out but the outcome could not be stored. Never retried."""


class DuplicateJobError(ReportcastError):
    """A job with the same idempotency key is already queued."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Job {key} already exists")
        self.key = key


#: Errors the job queue must not retry.
NON_RETRYABLE_ERRORS: tuple[type[Exception], ...] = (
    ValidationError,
    SecurityViolation,
    RecordingError,
)
