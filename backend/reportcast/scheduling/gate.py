"""Outbound email policy.

Checks address syntax, recipient count, the non-production recipient
allowlist and the transport relay. The ``validate_*`` methods raise
``SecurityViolation``; the async ``check_*`` variants also write a CRITICAL
audit entry before re-raising.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from email_validator import EmailNotValidError, validate_email

from reportcast.config import Settings
from reportcast.core.errors import SecurityViolation
from reportcast.scheduling.audit import (
    AuditAction,
    AuditLogger,
    AuditSeverity,
    EmailBlockedDetails,
)

logger = logging.getLogger(__name__)


class DeliveryGate:
    def __init__(
        self,
        audit: AuditLogger,
        *,
        production: bool,
        approved_recipients: Iterable[str] = (),
        blocked_relays: Iterable[str] = (),
        max_recipients: int = 20,
    ) -> None:
        self._audit = audit
        self._production = production
        self._approved = frozenset(e.strip().lower() for e in approved_recipients)
        self._blocked_relays = tuple(r.strip().lower() for r in blocked_relays if r.strip())
        self._max_recipients = max_recipients

    @classmethod
    def from_settings(cls, audit: AuditLogger, settings: Settings) -> "DeliveryGate":
        return cls(
            audit,
            production=settings.is_production,
            approved_recipients=settings.approved_test_recipients,
            blocked_relays=settings.blocked_test_relays,
            max_recipients=settings.max_recipients_per_send,
        )

    @property
    def max_recipients(self) -> int:
        return self._max_recipients

    # ── Pure checks ───────────────────────────────────────────────────────────

    def validate_address(self, email: str) -> None:
        normalized = email.strip().lower()

        if not self._production and normalized not in self._approved:
            raise SecurityViolation(
                f'Email "{email}" not approved for delivery outside production'
            )

        try:
            validate_email(normalized, check_deliverability=False)
        except EmailNotValidError as exc:
            raise SecurityViolation(f"Invalid email format: {email} ({exc})") from exc

    def validate_count(self, emails: Sequence[str]) -> None:
        if not emails:
            raise SecurityViolation("No recipients provided")
        if len(emails) > self._max_recipients:
            raise SecurityViolation(f"Too many recipients (max {self._max_recipients})")

    def validate_recipients(self, emails: Sequence[str]) -> None:
        self.validate_count(emails)
        for email in emails:
            self.validate_address(email)

    def validate_transport(self, relay_host: str) -> None:
        host = (relay_host or "").lower()
        for blocked in self._blocked_relays:
            if blocked in host:
                raise SecurityViolation(
                    f'Test email service "{blocked}" is blocked; configure a production relay'
                )

    # ── Audited checks ────────────────────────────────────────────────────────

    async def check_address(
        self,
        email: str,
        *,
        user_id: str | None = None,
        tenant_id: str | None = None,
        schedule_id: str | None = None,
    ) -> None:
        try:
            self.validate_address(email)
        except SecurityViolation as exc:
            await self._blocked(
                AuditAction.EMAIL_BLOCKED_DOMAIN, exc, [email], None, user_id, tenant_id, schedule_id
            )
            raise

    async def check_recipients(
        self,
        emails: Sequence[str],
        *,
        user_id: str | None = None,
        tenant_id: str | None = None,
        schedule_id: str | None = None,
    ) -> None:
        try:
            self.validate_recipients(emails)
        except SecurityViolation as exc:
            await self._blocked(
                AuditAction.EMAIL_BLOCKED_DOMAIN, exc, list(emails), None, user_id, tenant_id, schedule_id
            )
            raise

    async def check_count(
        self,
        emails: Sequence[str],
        *,
        user_id: str | None = None,
        tenant_id: str | None = None,
        schedule_id: str | None = None,
    ) -> None:
        try:
            self.validate_count(emails)
        except SecurityViolation as exc:
            await self._blocked(
                AuditAction.EMAIL_BLOCKED_DOMAIN, exc, list(emails), None, user_id, tenant_id, schedule_id
            )
            raise

    async def check_transport(
        self,
        relay_host: str,
        *,
        user_id: str | None = None,
        tenant_id: str | None = None,
        schedule_id: str | None = None,
    ) -> None:
        try:
            self.validate_transport(relay_host)
        except SecurityViolation as exc:
            await self._blocked(
                AuditAction.EMAIL_BLOCKED_TEST_SERVICE, exc, [], relay_host, user_id, tenant_id, schedule_id
            )
            raise

    async def _blocked(
        self,
        action: AuditAction,
        exc: SecurityViolation,
        recipients: list[str],
        relay_host: str | None,
        user_id: str | None,
        tenant_id: str | None,
        schedule_id: str | None,
    ) -> None:
        logger.warning("gate: blocked send for schedule %s: %s", schedule_id, exc)
        await self._audit.log(
            EmailBlockedDetails(
                action=action,
                reason=str(exc),
                recipients=recipients,
                relay_host=relay_host,
            ),
            severity=AuditSeverity.CRITICAL,
            user_id=user_id,
            tenant_id=tenant_id,
            resource_type="schedule",
            resource_id=schedule_id,
            error_message=str(exc),
        )
