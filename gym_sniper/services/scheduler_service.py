"""Recurring auto-booking of configured schedule targets."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Optional, Protocol, Sequence

from gym_sniper.domain.matching import target_matches
from gym_sniper.domain.models import (
    Booked,
    BookingOutcome,
    ClassInstance,
    ClassStatus,
    PermanentFailure,
    ScheduleTarget,
    Waitlisted,
)
from gym_sniper.domain.window import opens_at, seconds_until
from gym_sniper.services.booking_service import BookingService, RetryPolicy
from gym_sniper.services.session_client import PortalError
from gym_sniper.utils.clock import Clock, OperationCancelled, SystemClock
from gym_sniper.utils.config import Settings, get_settings
from gym_sniper.utils.formatting import format_class_time
from gym_sniper.utils.logger import get_logger


logger = get_logger(__name__)


class CatalogueClient(Protocol):
    def get_classes(self, days: int) -> list[ClassInstance]: ...


class ScheduleService:
    """Books matching classes at the moment their window opens.

    A class is due on the first tick at or after its window opens: every
    tick covers the span since the previous one, so a slow catalogue fetch
    or a late wake-up cannot step over a window. Booked, waitlisted and
    permanently refused classes join the dedupe set. Transient failures
    are retried on later ticks until `schedule_retry_window_seconds` have
    passed since the window opened.
    """

    def __init__(
        self,
        client: CatalogueClient,
        booking_service: BookingService,
        targets: Sequence[ScheduleTarget],
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        lock: Optional[threading.RLock] = None,
    ) -> None:
        self._client = client
        self._booking = booking_service
        self._targets = list(targets)
        self._settings = settings or get_settings()
        self._clock = clock or SystemClock()
        self._lock = lock or threading.RLock()
        self._attempted: set[int] = set()
        self._retrying: set[int] = set()
        self._last_tick: Optional[datetime] = None

    @property
    def targets(self) -> list[ScheduleTarget]:
        return list(self._targets)

    def attempted(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._attempted)

    def _due(self, class_instance: ClassInstance, since: datetime, now: datetime) -> bool:
        window = opens_at(class_instance.start_time, self._settings.booking_window_offset)
        if seconds_until(window, now) > 0:
            return False
        if seconds_until(window, since) > 0:
            return True
        with self._lock:
            retrying = class_instance.id in self._retrying
        retry_until = window + timedelta(seconds=self._settings.schedule_retry_window_seconds)
        return retrying and seconds_until(retry_until, now) > 0

    def tick(self, now: Optional[datetime] = None) -> list[BookingOutcome]:
        now = now or self._clock.now()
        with self._lock:
            since = self._last_tick or now - timedelta(seconds=self._settings.schedule_tick_seconds)
            self._last_tick = now
        try:
            classes = self._client.get_classes(self._settings.schedule_catalogue_days)
        except PortalError as exc:
            logger.warning("Scheduler could not fetch classes: %s", exc)
            with self._lock:
                self._last_tick = since
            return []

        outcomes: list[BookingOutcome] = []
        for class_instance in classes:
            if class_instance.status in {ClassStatus.BOOKED, ClassStatus.AWAITING}:
                continue
            if not any(target_matches(target, class_instance) for target in self._targets):
                continue
            if not self._due(class_instance, since, now):
                continue
            with self._lock:
                if class_instance.id in self._attempted:
                    continue

            logger.info(
                "Auto-booking %s at %s (class %s)",
                class_instance.name,
                format_class_time(class_instance.start_time),
                class_instance.id,
            )
            outcome = self._booking.attempt(
                class_instance.id,
                RetryPolicy.for_schedule(self._settings),
                target=class_instance,
            )
            with self._lock:
                if isinstance(outcome, (Booked, Waitlisted, PermanentFailure)):
                    self._attempted.add(class_instance.id)
                    self._retrying.discard(class_instance.id)
                else:
                    self._retrying.add(class_instance.id)
            outcomes.append(outcome)
        return outcomes

    def run_forever(self) -> None:
        """Tick until the clock is cancelled; `OperationCancelled` ends the loop."""
        logger.info(
            "Scheduler started with %s target(s), checking every %ss",
            len(self._targets),
            int(self._settings.schedule_tick_seconds),
        )
        while True:
            self._clock.check_cancelled()
            try:
                self.tick()
            except OperationCancelled:
                raise
            except Exception:
                logger.exception("Scheduler tick failed")
            self._clock.sleep(self._settings.schedule_tick_seconds)
