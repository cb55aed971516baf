"""Datetime utilities for consistent timezone handling.

Timestamps are stored as naive UTC in the database; local wall-clock
times (step send_hour/send_minute) only exist inside `calculate_next_send_at`.
"""
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

MINUTES_PER_DAY = 24 * 60


def utcnow() -> datetime:
    """
    Get current UTC time as a naive datetime (database convention).

    Returns:
        datetime: Current UTC time without tzinfo
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_timestamp(timestamp_ms: int | float) -> datetime:
    """
    Convert a LINE event timestamp (milliseconds since epoch) to naive UTC.

    Args:
        timestamp_ms: Unix timestamp in milliseconds

    Returns:
        datetime: Naive UTC datetime
    """
    return datetime.fromtimestamp(float(timestamp_ms) / 1000.0, tz=timezone.utc).replace(tzinfo=None)


def to_local(value: datetime, tz: ZoneInfo) -> datetime:
    """Naive UTC -> aware local time."""
    return value.replace(tzinfo=timezone.utc).astimezone(tz)


def calculate_next_send_at(
    trigger_at: datetime,
    delay_minutes: int,
    send_hour: int | None,
    send_minute: int | None,
    tz: ZoneInfo,
) -> datetime:
    """
    Compute when a step message is due.

    Without `send_hour` the step fires `delay_minutes` after the trigger
    (zero delay means immediately). With `send_hour` the delay counts whole
    days: the step fires on the local calendar day `delay_minutes // 1440`
    days after the trigger, at HH:MM local time. If that instant is not
    after the trigger (same-day step whose hour already passed) it moves to
    the next day.

    Args:
        trigger_at: Naive UTC instant the step is scheduled from
        delay_minutes: Step delay
        send_hour: Local hour 0-23, or None
        send_minute: Local minute 0-59 (None treated as 0)
        tz: Zone the hour/minute are expressed in

    Returns:
        datetime: Naive UTC due time
    """
    delay_minutes = max(0, int(delay_minutes or 0))
    if send_hour is None:
        return trigger_at + timedelta(minutes=delay_minutes)

    local_trigger = to_local(trigger_at, tz)
    day = local_trigger.date() + timedelta(days=delay_minutes // MINUTES_PER_DAY)
    candidate = datetime.combine(day, time(int(send_hour), int(send_minute or 0)), tzinfo=tz)
    if candidate <= local_trigger:
        candidate = datetime.combine(day + timedelta(days=1), candidate.timetz())
    return candidate.astimezone(timezone.utc).replace(tzinfo=None)
