from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from typing import Optional, Tuple


def utcnow() -> datetime:
    """Naive UTC timestamp; every stored datetime uses this convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def hours_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600


def time_pattern(start: datetime, end: datetime) -> str:
    return f"{start:%H:%M}-{end:%H:%M}"


def day_of_week(value: datetime) -> int:
    # 0 = Sunday
    return (value.weekday() + 1) % 7


def time_pattern_data(start: datetime, end: datetime) -> dict:
    return {"time_pattern": time_pattern(start, end), "day_of_week": day_of_week(start)}


def _on_date_of(anchor: datetime, clock: datetime) -> datetime:
    return datetime.combine(anchor.date(), time(clock.hour, clock.minute))


def calculate_new_instance_times(
    start_time: datetime,
    end_time: datetime,
    new_start: Optional[datetime] = None,
    new_end: Optional[datetime] = None,
) -> Tuple[datetime, datetime]:
    """Apply the clock time of new_start/new_end to an instance while keeping its own date.

    When only a start is supplied the original duration is preserved.
    """
    if new_start is not None and new_end is not None:
        calculated_start = _on_date_of(start_time, new_start)
        calculated_end = _on_date_of(start_time, new_end)
    elif new_start is not None:
        calculated_start = _on_date_of(start_time, new_start)
        calculated_end = calculated_start + (end_time - start_time)
    elif new_end is not None:
        calculated_start = start_time
        calculated_end = _on_date_of(start_time, new_end)
    else:
        return start_time, end_time
    if calculated_end <= calculated_start:
        # Crosses midnight
        calculated_end += timedelta(days=1)
    return calculated_start, calculated_end


def credits_to_cents(credits: int, cents_per_credit: int) -> int:
    return int(credits) * int(cents_per_credit)
