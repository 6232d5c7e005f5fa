"""Compliance audit trail.

Every entry carries a typed details payload. The payload models form a
closed union discriminated by ``action``; an action without a payload model
cannot be logged. Entries go to the ``audit_logs`` table and to the
``reportcast.audit`` logger. Logging is best-effort: a storage failure is
logged and never propagates into the business operation.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reportcast.core.security.masking import redact_sensitive
from reportcast.models.job import AuditLog

logger = logging.getLogger(__name__)
audit_stream = logging.getLogger("reportcast.audit")


class AuditAction(str, Enum):
    # Email security
    EMAIL_BLOCKED_DOMAIN = "EMAIL_BLOCKED_DOMAIN"
    EMAIL_BLOCKED_TEST_SERVICE = "EMAIL_BLOCKED_TEST_SERVICE"

    # Schedule operations
    SCHEDULE_CREATED = "SCHEDULE_CREATED"
    SCHEDULE_CREATED_WITH_EXTERNAL = "SCHEDULE_CREATED_WITH_EXTERNAL"
    SCHEDULE_UPDATED = "SCHEDULE_UPDATED"
    SCHEDULE_DELETED = "SCHEDULE_DELETED"
    SCHEDULE_EXECUTED = "SCHEDULE_EXECUTED"
    SCHEDULE_FAILED = "SCHEDULE_FAILED"
    SCHEDULE_RECIPIENTS_CHANGED = "SCHEDULE_RECIPIENTS_CHANGED"
    SCHEDULE_EXTERNAL_RECIPIENT_ADDED = "SCHEDULE_EXTERNAL_RECIPIENT_ADDED"
    SCHEDULE_EXTERNAL_RECIPIENT_REMOVED = "SCHEDULE_EXTERNAL_RECIPIENT_REMOVED"

    # Security events
    TENANT_ACCESS_DENIED = "TENANT_ACCESS_DENIED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"


class AuditSeverity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


_LOG_LEVELS = {
    AuditSeverity.INFO: logging.INFO,
    AuditSeverity.WARNING: logging.WARNING,
    AuditSeverity.ERROR: logging.ERROR,
    AuditSeverity.CRITICAL: logging.CRITICAL,
}


# ── Details payloads ──────────────────────────────────────────────────────────


class ScheduleCreatedDetails(BaseModel):
    action: Literal[AuditAction.SCHEDULE_CREATED, AuditAction.SCHEDULE_CREATED_WITH_EXTERNAL]
    schedule_name: str
    report_id: str
    frequency: str
    recipient_count: int
    internal_recipients: list[str] = []
    external_recipients: list[str] = []


class ScheduleUpdatedDetails(BaseModel):
    action: Literal[AuditAction.SCHEDULE_UPDATED]
    updated_fields: list[str]


class ScheduleDeletedDetails(BaseModel):
    action: Literal[AuditAction.SCHEDULE_DELETED]
    schedule_name: str


class RecipientsChangedDetails(BaseModel):
    """Before/after snapshot of a recipient-list replacement."""

    action: Literal[AuditAction.SCHEDULE_RECIPIENTS_CHANGED]
    before_total: int
    after_total: int
    before_external: list[str]
    after_external: list[str]
    added_external: list[str]
    removed_external: list[str]


class ExternalRecipientDetails(BaseModel):
    action: Literal[
        AuditAction.SCHEDULE_EXTERNAL_RECIPIENT_ADDED,
        AuditAction.SCHEDULE_EXTERNAL_RECIPIENT_REMOVED,
    ]
    emails: list[str]


class ScheduleExecutionDetails(BaseModel):
    action: Literal[AuditAction.SCHEDULE_EXECUTED, AuditAction.SCHEDULE_FAILED]
    execution_id: str | None = None
    report_id: str
    due_slot: str
    emails_sent: int = 0
    emails_failed: int = 0
    stage: str | None = None


class EmailBlockedDetails(BaseModel):
    action: Literal[AuditAction.EMAIL_BLOCKED_DOMAIN, AuditAction.EMAIL_BLOCKED_TEST_SERVICE]
    reason: str
    recipients: list[str] = []
    relay_host: str | None = None


class AccessDeniedDetails(BaseModel):
    action: Literal[AuditAction.TENANT_ACCESS_DENIED]
    operation: str


class RateLimitDetails(BaseModel):
    action: Literal[AuditAction.RATE_LIMIT_EXCEEDED]
    limit: int
    current: int


AuditDetails = Annotated[
    Union[
        ScheduleCreatedDetails,
        ScheduleUpdatedDetails,
        ScheduleDeletedDetails,
        RecipientsChangedDetails,
        ExternalRecipientDetails,
        ScheduleExecutionDetails,
        EmailBlockedDetails,
        AccessDeniedDetails,
        RateLimitDetails,
    ],
    Field(discriminator="action"),
]

audit_details_adapter: TypeAdapter[AuditDetails] = TypeAdapter(AuditDetails)


# ── Logger ────────────────────────────────────────────────────────────────────


class AuditLogger:
    """Writes audit entries. Pass ``session_factory=None`` for log-only mode."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory

    async def log(
        self,
        details: AuditDetails,
        *,
        severity: AuditSeverity = AuditSeverity.INFO,
        user_id: str | None = None,
        tenant_id: str | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        error_message: str | None = None,
    ) -> None:
        action = AuditAction(details.action)
        payload = redact_sensitive(details.model_dump(mode="json"))

        audit_stream.log(
            _LOG_LEVELS[severity],
            "%s user=%s tenant=%s resource=%s/%s details=%s%s",
            action.value,
            user_id,
            tenant_id,
            resource_type,
            resource_id,
            payload,
            f" error={error_message}" if error_message else "",
        )

        if self._session_factory is None:
            return

        try:
            async with self._session_factory() as db:
                db.add(
                    AuditLog(
                        action=action.value,
                        severity=severity.value,
                        user_id=user_id,
                        tenant_id=tenant_id,
                        resource_type=resource_type,
                        resource_id=resource_id,
                        details=payload,
                        error_message=error_message,
                    )
                )
                await db.commit()
        except Exception:
            logger.exception("audit: failed to persist %s entry", action.value)
