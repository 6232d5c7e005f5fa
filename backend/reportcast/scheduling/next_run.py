"""Next-run calculator.

Pure calendar arithmetic in UTC. ``time_of_day`` is the wall-clock value
already normalized to UTC by the caller; no timezone offsets are applied
here.
"""

from __future__ import annotations

import calendar
import re
from datetime import datetime, timedelta, timezone

from reportcast.core.errors import ValidationError
from reportcast.models.schedule import ScheduleFrequency

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

# Months added when a month-anchored schedule rolls over.
_MONTH_STEPS: dict[ScheduleFrequency, int] = {
    ScheduleFrequency.MONTHLY: 1,
    ScheduleFrequency.QUARTERLY: 3,
    ScheduleFrequency.SEMI_ANNUALLY: 6,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_time_of_day(value: str) -> tuple[int, int]:
    """Parse ``"HH:MM"`` (00:00 to 23:59) into ``(hours, minutes)``."""
    match = _TIME_RE.match(value or "")
    if not match:
        raise ValidationError(
            "time_of_day must be in HH:MM format (00:00 to 23:59)",
            field="time_of_day",
        )
    return int(match.group(1)), int(match.group(2))


def parse_frequency(value: ScheduleFrequency | str) -> ScheduleFrequency:
    try:
        return ScheduleFrequency(value)
    except ValueError:
        allowed = ", ".join(f.value for f in ScheduleFrequency)
        raise ValidationError(
            f"frequency must be one of: {allowed}",
            field="frequency",
        ) from None


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def _add_months(year: int, month: int, months: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def calculate_next_run(
    frequency: ScheduleFrequency | str,
    time_of_day: str,
    day_of_week: int | None = None,
    day_of_month: int | None = None,
    from_: datetime | None = None,
) -> datetime:
    """Return the next UTC instant strictly after ``from_`` for a schedule.

    When the slot computed for the current period is not after ``from_`` the
    result advances by exactly one period. Month-anchored frequencies clamp
    ``day_of_month`` to the last day of the target month and re-clamp after
    every rollover, so day 31 never drifts.
    """
    freq = parse_frequency(frequency)
    hours, minutes = parse_time_of_day(time_of_day)
    now = _as_utc(from_) if from_ is not None else utcnow()
    slot = now.replace(hour=hours, minute=minutes, second=0, microsecond=0)

    if freq is ScheduleFrequency.DAILY:
        if slot <= now:
            slot += timedelta(days=1)
        return slot

    if freq is ScheduleFrequency.WEEKLY:
        target = day_of_week if day_of_week is not None else 0
        # Python weekday() is Monday=0; schedules use Sunday=0.
        current = (slot.weekday() + 1) % 7
        days = target - current
        if days < 0 or (days == 0 and slot <= now):
            days += 7
        return slot + timedelta(days=days)

    target_day = day_of_month if day_of_month is not None else 1

    if freq is ScheduleFrequency.ANNUALLY:
        slot = slot.replace(month=1, day=min(target_day, 31))
        if slot <= now:
            slot = slot.replace(year=slot.year + 1)
        return slot

    slot = slot.replace(day=min(target_day, _days_in_month(slot.year, slot.month)))
    if slot <= now:
        year, month = _add_months(slot.year, slot.month, _MONTH_STEPS[freq])
        slot = slot.replace(year=year, month=month, day=1)
        slot = slot.replace(day=min(target_day, _days_in_month(year, month)))
    return slot
