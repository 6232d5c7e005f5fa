"""Schedule create / update / delete with rate limiting and audit trail."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Protocol

from reportcast.core.errors import (
    PermissionDenied,
    RateLimitExceeded,
    ScheduleNotFound,
    ValidationError,
)
from reportcast.models import ReportSchedule, ScheduleFrequency
from reportcast.schemas.schedule import ScheduleInput, ScheduleUpdate
from reportcast.scheduling.audit import (
    AccessDeniedDetails,
    AuditAction,
    AuditLogger,
    AuditSeverity,
    ExternalRecipientDetails,
    RateLimitDetails,
    RecipientsChangedDetails,
    ScheduleCreatedDetails,
    ScheduleDeletedDetails,
    ScheduleUpdatedDetails,
)
from reportcast.scheduling.gate import DeliveryGate
from reportcast.scheduling.next_run import (
    calculate_next_run,
    parse_frequency,
    parse_time_of_day,
    utcnow,
)
from reportcast.scheduling.recipients import (
    ClassifiedRecipient,
    classify_recipients,
    diff_recipients,
    partition_recipients,
)
from reportcast.scheduling.store import ScheduleStore

logger = logging.getLogger(__name__)

_TIMING_FIELDS = ("frequency", "time_of_day", "day_of_week", "day_of_month")
# Columns that may be cleared by an update.
_NULLABLE_FIELDS = ("day_of_week", "day_of_month")


class PermissionOracle(Protocol):
    async def can_schedule_reports(self, user_id: str, tenant_id: str) -> bool: ...


class StaticPermissionOracle:
    """Grants (or denies) every request. Used when no role model is wired in."""

    def __init__(self, allowed: bool = True) -> None:
        self._allowed = allowed

    async def can_schedule_reports(self, user_id: str, tenant_id: str) -> bool:
        return self._allowed


def _unique_emails(emails: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for email in emails:
        trimmed = email.strip()
        key = trimmed.lower()
        if trimmed and key not in seen:
            seen.add(key)
            result.append(trimmed)
    return result


def _validate_timing(
    frequency: ScheduleFrequency,
    time_of_day: str,
    day_of_week: int | None,
    day_of_month: int | None,
) -> None:
    parse_time_of_day(time_of_day)
    if frequency is ScheduleFrequency.WEEKLY and day_of_week is None:
        raise ValidationError("day_of_week is required for weekly schedules", field="day_of_week")
    if frequency is ScheduleFrequency.MONTHLY and day_of_month is None:
        raise ValidationError("day_of_month is required for monthly schedules", field="day_of_month")


class ScheduleService:
    def __init__(
        self,
        store: ScheduleStore,
        audit: AuditLogger,
        gate: DeliveryGate,
        permissions: PermissionOracle,
        max_active: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._audit = audit
        self._gate = gate
        self._permissions = permissions
        self._max_active = max_active
        self._clock = clock

    # ── Create ────────────────────────────────────────────────────────────────

    async def create_schedule(self, data: ScheduleInput) -> ReportSchedule:
        await self.require_permission(data.user_id, data.tenant_id, "create_schedule")

        emails = _unique_emails(data.recipients)
        await self._gate.check_recipients(emails, user_id=data.user_id, tenant_id=data.tenant_id)

        frequency = parse_frequency(data.frequency)
        _validate_timing(frequency, data.time_of_day, data.day_of_week, data.day_of_month)

        await self._check_rate_limit(data.user_id, data.tenant_id)

        classified = await self._classify(data.tenant_id, emails)
        now = self._clock()
        schedule = ReportSchedule(
            tenant_id=data.tenant_id,
            report_id=data.report_id,
            user_id=data.user_id,
            name=data.name,
            frequency=frequency.value,
            time_of_day=data.time_of_day,
            timezone=data.timezone,
            day_of_week=data.day_of_week,
            day_of_month=data.day_of_month,
            next_run_at=calculate_next_run(
                frequency, data.time_of_day, data.day_of_week, data.day_of_month, from_=now
            ),
            is_enabled=True,
            created_by=data.user_id,
            last_modified_by=data.user_id,
            last_modified_at=now,
        )
        schedule = await self._store.create_schedule(schedule, classified)

        partition = partition_recipients(classified)
        await self._audit.log(
            ScheduleCreatedDetails(
                action=(
                    AuditAction.SCHEDULE_CREATED_WITH_EXTERNAL
                    if partition.has_external
                    else AuditAction.SCHEDULE_CREATED
                ),
                schedule_name=data.name,
                report_id=data.report_id,
                frequency=frequency.value,
                recipient_count=partition.total,
                internal_recipients=partition.internal,
                external_recipients=partition.external,
            ),
            severity=AuditSeverity.WARNING if partition.has_external else AuditSeverity.INFO,
            user_id=data.user_id,
            tenant_id=data.tenant_id,
            resource_type="schedule",
            resource_id=str(schedule.id),
        )
        logger.info(
            "service: created schedule %s for tenant %s (next run %s)",
            schedule.id,
            data.tenant_id,
            schedule.next_run_at,
        )
        return schedule

    # ── Update ────────────────────────────────────────────────────────────────

    async def update_schedule(
        self,
        schedule_id: str,
        tenant_id: str,
        user_id: str,
        changes: ScheduleUpdate,
    ) -> ReportSchedule:
        await self.require_permission(user_id, tenant_id, "update_schedule")

        existing = await self._store.get_schedule(schedule_id, tenant_id)
        if existing is None:
            raise ScheduleNotFound(f"Schedule {schedule_id} not found")

        fields = {
            k: v
            for k, v in changes.model_dump(exclude_unset=True).items()
            if v is not None or k in _NULLABLE_FIELDS
        }
        if not fields:
            return existing

        classified: list[ClassifiedRecipient] | None = None
        if "recipients" in fields:
            emails = _unique_emails(fields.pop("recipients"))
            await self._gate.check_recipients(
                emails, user_id=user_id, tenant_id=tenant_id, schedule_id=schedule_id
            )
            classified = await self._classify(tenant_id, emails)

        values = dict(fields)
        if "frequency" in values:
            values["frequency"] = parse_frequency(values["frequency"]).value

        re_enabling = values.get("is_enabled") is True and not existing.is_enabled
        retime = re_enabling or any(k in values for k in _TIMING_FIELDS)
        if retime:
            frequency = parse_frequency(values.get("frequency", existing.frequency))
            time_of_day = values.get("time_of_day", existing.time_of_day)
            day_of_week = values.get("day_of_week", existing.day_of_week)
            day_of_month = values.get("day_of_month", existing.day_of_month)
            _validate_timing(frequency, time_of_day, day_of_week, day_of_month)

        if re_enabling:
            await self._check_rate_limit(user_id, tenant_id, exclude_id=schedule_id)

        now = self._clock()
        if retime:
            values["next_run_at"] = calculate_next_run(
                frequency, time_of_day, day_of_week, day_of_month, from_=now
            )

        values["last_modified_by"] = user_id
        values["last_modified_at"] = now
        updated = await self._store.update_schedule(schedule_id, tenant_id, values, classified)
        if updated is None:
            raise ScheduleNotFound(f"Schedule {schedule_id} not found")

        if classified is not None:
            await self._audit_recipient_change(existing, classified, user_id, tenant_id)

        await self._audit.log(
            ScheduleUpdatedDetails(
                action=AuditAction.SCHEDULE_UPDATED,
                updated_fields=list(changes.model_dump(exclude_unset=True)),
            ),
            user_id=user_id,
            tenant_id=tenant_id,
            resource_type="schedule",
            resource_id=schedule_id,
        )
        return updated

    async def _audit_recipient_change(
        self,
        existing: ReportSchedule,
        classified: list[ClassifiedRecipient],
        user_id: str,
        tenant_id: str,
    ) -> None:
        diff = diff_recipients(existing.recipients, classified)
        context = {
            "user_id": user_id,
            "tenant_id": tenant_id,
            "resource_type": "schedule",
            "resource_id": str(existing.id),
        }

        await self._audit.log(
            RecipientsChangedDetails(
                action=AuditAction.SCHEDULE_RECIPIENTS_CHANGED,
                before_total=diff.before.total,
                after_total=diff.after.total,
                before_external=diff.before.external,
                after_external=diff.after.external,
                added_external=diff.added_external,
                removed_external=diff.removed_external,
            ),
            severity=AuditSeverity.WARNING if diff.added_external else AuditSeverity.INFO,
            **context,
        )
        if diff.added_external:
            await self._audit.log(
                ExternalRecipientDetails(
                    action=AuditAction.SCHEDULE_EXTERNAL_RECIPIENT_ADDED,
                    emails=diff.added_external,
                ),
                severity=AuditSeverity.WARNING,
                **context,
            )
        if diff.removed_external:
            await self._audit.log(
                ExternalRecipientDetails(
                    action=AuditAction.SCHEDULE_EXTERNAL_RECIPIENT_REMOVED,
                    emails=diff.removed_external,
                ),
                **context,
            )

    # ── Delete ────────────────────────────────────────────────────────────────

    async def delete_schedule(self, schedule_id: str, tenant_id: str, user_id: str) -> None:
        """Soft delete: the row stays for the execution history."""
        await self.require_permission(user_id, tenant_id, "delete_schedule")

        existing = await self._store.get_schedule(schedule_id, tenant_id)
        if existing is None:
            raise ScheduleNotFound(f"Schedule {schedule_id} not found")

        await self._store.soft_delete_schedule(schedule_id, tenant_id, user_id, self._clock())
        await self._audit.log(
            ScheduleDeletedDetails(
                action=AuditAction.SCHEDULE_DELETED,
                schedule_name=existing.name,
            ),
            user_id=user_id,
            tenant_id=tenant_id,
            resource_type="schedule",
            resource_id=schedule_id,
        )

    # ── Helpers ───────────────────────────────────────────────────────────────

    async def require_permission(self, user_id: str, tenant_id: str, operation: str) -> None:
        """Raise ``PermissionDenied`` (audited) unless the oracle allows the user."""
        if await self._permissions.can_schedule_reports(user_id, tenant_id):
            return
        await self._audit.log(
            AccessDeniedDetails(action=AuditAction.TENANT_ACCESS_DENIED, operation=operation),
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            tenant_id=tenant_id,
            resource_type="schedule",
        )
        raise PermissionDenied("You do not have permission to manage scheduled reports")

    async def _check_rate_limit(
        self,
        user_id: str,
        tenant_id: str,
        exclude_id: str | None = None,
    ) -> None:
        active = await self._store.count_active_schedules(tenant_id, exclude_id=exclude_id)
        if active < self._max_active:
            return
        await self._audit.log(
            RateLimitDetails(
                action=AuditAction.RATE_LIMIT_EXCEEDED,
                limit=self._max_active,
                current=active,
            ),
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            tenant_id=tenant_id,
            resource_type="schedule",
        )
        raise RateLimitExceeded(self._max_active, active)

    async def _classify(self, tenant_id: str, emails: list[str]) -> list[ClassifiedRecipient]:
        tenant = await self._store.get_tenant(tenant_id)
        if tenant is None:
            raise ValidationError(f"Tenant {tenant_id} not found", field="tenant_id")
        return classify_recipients(emails, tenant.allowed_email_domains)
