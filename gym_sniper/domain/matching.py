"""Matching rules for configured schedule targets."""

from __future__ import annotations

import re
from typing import Iterable, Optional

from gym_sniper.domain.models import ClassInstance, ScheduleTarget


_WEEKDAYS = {
    "monday": 0,
    "mon": 0,
    "tuesday": 1,
    "tue": 1,
    "wednesday": 2,
    "wed": 2,
    "thursday": 3,
    "thu": 3,
    "friday": 4,
    "fri": 4,
    "saturday": 5,
    "sat": 5,
    "sunday": 6,
    "sun": 6,
}
_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def parse_weekday(value: str) -> int:
    try:
        return _WEEKDAYS[value.strip().lower()]
    except KeyError as exc:
        raise ValueError(f"unknown weekday '{value}'") from exc


def build_schedule_target(
    class_name: str,
    days: Optional[Iterable[str]] = None,
    time: Optional[str] = None,
) -> ScheduleTarget:
    if not class_name.strip():
        raise ValueError("class_name must be non-empty")
    if time is not None and not _TIME_PATTERN.match(time):
        raise ValueError("time must follow HH:MM format")
    return ScheduleTarget(
        class_name_pattern=class_name.strip(),
        days=frozenset(parse_weekday(day) for day in days or ()),
        time=time,
    )


def target_matches(target: ScheduleTarget, class_instance: ClassInstance) -> bool:
    start = class_instance.start_time
    if target.class_name_pattern.casefold() not in class_instance.name.casefold():
        return False
    if target.days and start.weekday() not in target.days:
        return False
    if target.time is not None and start.strftime("%H:%M") != target.time:
        return False
    return True


def filter_classes(
    classes: Iterable[ClassInstance],
    class_name: Optional[str] = None,
    trainer: Optional[str] = None,
    time: Optional[str] = None,
) -> list[ClassInstance]:
    """Case-insensitive substring filters on name and trainer, exact HH:MM on time."""
    selected = []
    for item in classes:
        if class_name and class_name.casefold() not in item.name.casefold():
            continue
        if trainer and trainer.casefold() not in (item.trainer or "").casefold():
            continue
        if time and item.start_time.strftime("%H:%M") != time:
            continue
        selected.append(item)
    return selected
