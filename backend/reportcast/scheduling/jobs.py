"""Job descriptor passed from the scanner to the execution worker."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

from reportcast.core.errors import ValidationError


@dataclass(frozen=True)
class JobDescriptor:
    """One due slot of one schedule.

    ``due_slot`` is the schedule's next-run at enqueue time; together with
    the schedule id it forms the idempotency key, so the same slot cannot be
    queued twice.
    """

    schedule_id: str
    tenant_id: str
    report_id: str
    user_id: str
    due_slot: datetime

    @property
    def idempotency_key(self) -> str:
        millis = int(self.due_slot.timestamp() * 1000)
        return f"schedule-{self.schedule_id}-{millis}"

    def to_payload(self) -> dict[str, Any]:
        data = asdict(self)
        data["due_slot"] = self.due_slot.isoformat()
        return data

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "JobDescriptor":
        due_slot = datetime.fromisoformat(payload["due_slot"])
        if due_slot.tzinfo is None:
            due_slot = due_slot.replace(tzinfo=timezone.utc)
        return cls(
            schedule_id=str(payload["schedule_id"]),
            tenant_id=str(payload["tenant_id"]),
            report_id=str(payload["report_id"]),
            user_id=str(payload["user_id"]),
            due_slot=due_slot,
        )

    @classmethod
    def for_schedule(cls, schedule: Any, user_id: str | None = None) -> "JobDescriptor":
        """Build a descriptor keyed on the schedule's current next-run."""
        due_slot = schedule.next_run_at
        if due_slot is None:
            raise ValidationError("Schedule has no next run time", field="next_run_at")
        if due_slot.tzinfo is None:
            due_slot = due_slot.replace(tzinfo=timezone.utc)
        return cls(
            schedule_id=str(schedule.id),
            tenant_id=str(schedule.tenant_id),
            report_id=str(schedule.report_id),
            user_id=str(user_id or schedule.user_id),
            due_slot=due_slot,
        )
