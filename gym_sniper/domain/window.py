"""Booking-window arithmetic. Pure functions, no I/O."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone, tzinfo

from gym_sniper.domain.models import ClassInstance, ClassStatus


BOOKING_WINDOW_OFFSET = timedelta(days=7, hours=2)


def opens_at(start_time: datetime, offset: timedelta = BOOKING_WINDOW_OFFSET) -> datetime:
    """Return the moment the booking window opens for a class.

    Aware datetimes keep their zone, so the subtraction happens on the wall
    clock: a 09:15 class opens at 07:15 local time on both sides of a
    daylight-saving change.
    """
    return start_time - offset


def seconds_until(target: datetime, now: datetime) -> float:
    return (target.astimezone(timezone.utc) - now.astimezone(timezone.utc)).total_seconds()


def has_started(class_instance: ClassInstance, now: datetime) -> bool:
    return seconds_until(class_instance.start_time, now) <= 0


def is_open(
    class_instance: ClassInstance,
    now: datetime,
    offset: timedelta = BOOKING_WINDOW_OFFSET,
) -> bool:
    window_start = opens_at(class_instance.start_time, offset)
    return (
        seconds_until(window_start, now) <= 0
        and not has_started(class_instance, now)
        and class_instance.status != ClassStatus.UNAVAILABLE
    )


def poll_interval(seconds_to_window: float) -> int:
    """Adaptive polling cadence that tightens as the window approaches."""
    if seconds_to_window > 30 * 60:
        return 60
    if seconds_to_window > 5 * 60:
        return 30
    if seconds_to_window > 60:
        return 10
    return 2


def local_date(moment: datetime, tz: tzinfo | None = None) -> date:
    """Calendar date of `moment` in `tz` (or in its own zone)."""
    if tz is not None:
        return moment.astimezone(tz).date()
    return moment.date()
