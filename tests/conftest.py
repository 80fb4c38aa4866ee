from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Optional, Union
from zoneinfo import ZoneInfo

import pytest

from gym_sniper.domain.models import (
    Booked,
    BookingOutcome,
    ClassInstance,
    ClassStatus,
    NotificationEvent,
    Session,
    Waitlisted,
)
from gym_sniper.services.session_client import BookingRejectedError, ClassNotFoundError, PortalError
from gym_sniper.utils.clock import OperationCancelled
from gym_sniper.utils.config import PortalConfig, Settings, get_settings


LONDON = ZoneInfo("Europe/London")

ScriptedOutcome = Union[BookingOutcome, Callable[[int, datetime], BookingOutcome]]


class FakeClock:
    """Virtual time: `sleep` advances both clocks instantly and records the duration."""

    def __init__(self, start: datetime) -> None:
        self._now = start
        self._monotonic = 0.0
        self.sleeps: list[float] = []
        self.cancel_after_sleeps: Optional[int] = None
        self._cancelled = False

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)
        self._monotonic += seconds

    def cancel(self) -> None:
        self._cancelled = True

    def check_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelled("Operation cancelled")

    def sleep(self, seconds: float) -> None:
        self.check_cancelled()
        if seconds <= 0:
            return
        self.sleeps.append(seconds)
        self.advance(seconds)
        if self.cancel_after_sleeps is not None and len(self.sleeps) >= self.cancel_after_sleeps:
            self._cancelled = True


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[NotificationEvent] = []

        self.flushes = 0

    def notify(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def flush(self, timeout: Optional[float] = None) -> bool:
        self.flushes += 1
        return True


class FakePortalClient:
    """In-memory stand-in for PortalSessionClient."""

    def __init__(
        self,
        clock: FakeClock,
        classes: Optional[list[ClassInstance]] = None,
        book_script: Optional[list[ScriptedOutcome]] = None,
        default_outcome: Optional[ScriptedOutcome] = None,
        status_at: Optional[Callable[[datetime], ClassStatus]] = None,
    ) -> None:
        self.clock = clock
        self.classes = {item.id: item for item in classes or []}
        self.book_script = list(book_script or [])
        self.default_outcome = default_outcome or (lambda class_id, now: Booked(class_id))
        self.status_at = status_at
        self.waitlist_outcome: Optional[BookingOutcome] = None
        self.catalogue_error: Optional[PortalError] = None
        self.book_calls: list[tuple[int, datetime]] = []
        self.waitlist_calls: list[int] = []
        self.cancelled: list[int] = []
        self.refresh_calls = 0
        self.get_class_calls = 0
        self.session: Optional[Session] = None
        self.closed = False

    def login(self) -> Session:
        self.session = Session(
            token="token",
            cookies={},
            issued_at=self.clock.now(),
            club_id=1,
            base_url="https://gym.test/clientportal2",
        )
        return self.session

    def refresh(self) -> Session:
        self.refresh_calls += 1
        return self.login()

    def close(self) -> None:
        self.closed = True

    def _current(self, item: ClassInstance) -> ClassInstance:
        if self.status_at is None:
            return item
        return replace(item, status=self.status_at(self.clock.now()))

    def get_class(self, class_id: int) -> ClassInstance:
        self.get_class_calls += 1
        if class_id not in self.classes:
            raise ClassNotFoundError(f"Class {class_id} does not exist")
        return self._current(self.classes[class_id])

    def get_classes(self, days: int) -> list[ClassInstance]:
        if self.catalogue_error is not None:
            raise self.catalogue_error
        items = [self._current(item) for item in self.classes.values()]
        return sorted(items, key=lambda item: item.start_time)

    def get_my_bookings(self) -> list[ClassInstance]:
        return [
            item
            for item in self.get_classes(14)
            if item.status in {ClassStatus.BOOKED, ClassStatus.AWAITING}
        ]

    def book(self, class_id: int, *, time_critical: bool = False) -> BookingOutcome:
        now = self.clock.now()
        self.book_calls.append((class_id, now))
        outcome = self.book_script.pop(0) if self.book_script else self.default_outcome
        if callable(outcome):
            return outcome(class_id, now)
        return outcome

    def join_waitlist(self, class_id: int) -> BookingOutcome:
        self.waitlist_calls.append(class_id)
        return self.waitlist_outcome or Waitlisted(class_id, 3)

    def cancel_booking(self, class_id: int) -> None:
        if class_id not in self.classes:
            raise BookingRejectedError(f"Cancel failed (400): no booking for {class_id}")
        self.cancelled.append(class_id)


def build_class(
    class_id: int,
    start_time: datetime,
    name: str = "Yoga Flow",
    status: ClassStatus = ClassStatus.UNAVAILABLE,
    trainer: Optional[str] = "Alex Smith",
) -> ClassInstance:
    return ClassInstance(
        id=class_id,
        name=name,
        start_time=start_time,
        status=status,
        trainer=trainer,
        raw_status=status.value,
    )


def build_portal_config(**overrides) -> PortalConfig:
    raw = {
        "gym": {
            "base_url": "https://gym.test/clientportal2",
            "club_id": 1,
            "timezone": "Europe/London",
        },
        "credentials": {"email": "member@example.com", "password": "secret"},
    }
    raw.update(overrides)
    return PortalConfig.model_validate(raw)


@pytest.fixture
def settings() -> Settings:
    get_settings.cache_clear()
    return replace(
        get_settings(),
        request_delay_min_seconds=0.0,
        request_delay_max_seconds=0.0,
        critical_request_delay_min_seconds=0.0,
        critical_request_delay_max_seconds=0.0,
        api_token=None,
    )
