"""Domain models for class catalogue, booking outcomes and the snipe queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Union


class ClassStatus(str, Enum):
    BOOKABLE = "Bookable"
    AWAITABLE = "Awaitable"
    AWAITING = "Awaiting"
    BOOKED = "Booked"
    UNAVAILABLE = "Unavailable"

    @classmethod
    def parse(cls, raw: str) -> "ClassStatus":
        normalized = (raw or "").strip().lower()
        for member in cls:
            if member.value.lower() == normalized:
                return member
        if normalized == "full":
            return cls.AWAITABLE
        return cls.UNAVAILABLE


@dataclass(frozen=True)
class ClassInstance:
    id: int
    name: str
    start_time: datetime
    status: ClassStatus
    trainer: Optional[str] = None
    waitlist_position: Optional[int] = None
    raw_status: str = ""

    @property
    def status_label(self) -> str:
        return self.raw_status or self.status.value


@dataclass(frozen=True)
class Session:
    token: str
    cookies: dict[str, str]
    issued_at: datetime
    club_id: int
    base_url: str


class FailureCode(str, Enum):
    DAILY_LIMIT = "daily_limit"
    ALREADY_BOOKED = "already_booked"
    TOO_SOON = "too_soon"
    CLASS_FULL = "class_full"
    WAITLIST_CLOSED = "waitlist_closed"
    NOT_FOUND = "not_found"
    AUTH_FAILED = "auth_failed"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Booked:
    class_id: int
    class_name: Optional[str] = None
    start_time: Optional[datetime] = None

    label = "booked"


@dataclass(frozen=True)
class Waitlisted:
    class_id: int
    position: Optional[int] = None

    label = "waitlisted"


@dataclass(frozen=True)
class TransientFailure:
    class_id: int
    reason: str

    label = "failed"


@dataclass(frozen=True)
class PermanentFailure:
    class_id: int
    reason: str
    code: FailureCode = FailureCode.REJECTED

    label = "failed"


BookingOutcome = Union[Booked, Waitlisted, TransientFailure, PermanentFailure]


def describe_outcome(outcome: BookingOutcome) -> str:
    if isinstance(outcome, Booked):
        return "Booked"
    if isinstance(outcome, Waitlisted):
        if outcome.position is None:
            return "Joined waitlist"
        return f"Joined waitlist at position #{outcome.position}"
    if isinstance(outcome, PermanentFailure):
        return f"{outcome.reason} ({outcome.code.value})"
    return outcome.reason


class QueueStatus(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


QUEUE_OPEN_STATUSES = frozenset({QueueStatus.QUEUED, QueueStatus.ACTIVE})


@dataclass(frozen=True)
class SnipeQueueEntry:
    class_id: int
    class_name: str
    class_start_time: datetime
    window_opens_at: datetime
    status: QueueStatus
    created_at: datetime
    resolved_at: Optional[datetime] = None
    trainer: Optional[str] = None
    message: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status in QUEUE_OPEN_STATUSES


@dataclass(frozen=True)
class ScheduleTarget:
    class_name_pattern: str
    days: frozenset[int] = field(default_factory=frozenset)
    time: Optional[str] = None


@dataclass(frozen=True)
class NotificationEvent:
    class_id: int
    outcome: str
    occurred_at: datetime
    message: str
    class_name: Optional[str] = None
    class_start_time: Optional[datetime] = None
    trainer: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome in {"booked", "waitlisted"}
