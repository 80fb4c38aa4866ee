"""Bounded booking attempt loop shared by the snipe engine and the scheduler."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Optional, Protocol

from gym_sniper.domain.models import (
    Booked,
    BookingOutcome,
    ClassInstance,
    FailureCode,
    NotificationEvent,
    PermanentFailure,
    TransientFailure,
    Waitlisted,
    describe_outcome,
)
from gym_sniper.services.notification_service import LoggingNotifier, Notifier
from gym_sniper.utils.clock import Clock, SystemClock
from gym_sniper.utils.config import Settings, get_settings
from gym_sniper.utils.logger import get_logger


logger = get_logger(__name__)


class BookingClient(Protocol):
    def book(self, class_id: int, *, time_critical: bool = False) -> BookingOutcome: ...

    def join_waitlist(self, class_id: int) -> BookingOutcome: ...


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    min_delay_seconds: float
    max_delay_seconds: float
    max_elapsed_seconds: float
    recheck_delay_seconds: float
    time_critical: bool = False

    def __post_init__(self) -> None:
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        if not 0.0 <= self.min_delay_seconds <= self.max_delay_seconds:
            raise ValueError("retry delays must satisfy 0 <= min <= max")
        if self.max_elapsed_seconds < 0:
            raise ValueError("max_elapsed_seconds must be >= 0")

    @classmethod
    def for_snipe(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.snipe_max_attempts,
            min_delay_seconds=settings.snipe_retry_delay_min_seconds,
            max_delay_seconds=settings.snipe_retry_delay_max_seconds,
            max_elapsed_seconds=settings.snipe_max_elapsed_seconds,
            recheck_delay_seconds=settings.not_ready_recheck_seconds,
            time_critical=True,
        )

    @classmethod
    def for_schedule(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=1,
            min_delay_seconds=settings.transient_retry_delay_min_seconds,
            max_delay_seconds=settings.transient_retry_delay_max_seconds,
            max_elapsed_seconds=0.0,
            recheck_delay_seconds=settings.not_ready_recheck_seconds,
        )


class BookingService:
    """Drives `book` until a terminal outcome and reports it once."""

    def __init__(
        self,
        client: BookingClient,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        notifier: Optional[Notifier] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._client = client
        self._settings = settings or get_settings()
        self._clock = clock or SystemClock()
        self._notifier = notifier or LoggingNotifier()
        self._rng = rng or random.Random()

    def attempt(
        self,
        class_id: int,
        policy: RetryPolicy,
        target: Optional[ClassInstance] = None,
    ) -> BookingOutcome:
        outcome = self._run(class_id, policy)
        self._report(class_id, outcome, target)
        return outcome

    def _run(self, class_id: int, policy: RetryPolicy) -> BookingOutcome:
        started = self._clock.monotonic()
        attempts = 0
        while True:
            attempts += 1
            outcome = self._client.book(class_id, time_critical=policy.time_critical)
            elapsed = self._clock.monotonic() - started

            if isinstance(outcome, (Booked, Waitlisted)):
                logger.info("Class %s booked on attempt #%s", class_id, attempts)
                return outcome

            if isinstance(outcome, PermanentFailure):
                if outcome.code == FailureCode.CLASS_FULL:
                    logger.info("Class %s is full; joining the waitlist", class_id)
                    return self._join_waitlist(class_id)
                if outcome.code != FailureCode.TOO_SOON:
                    return outcome
                # Not-ready rechecks are bounded by wall-clock time only.
                attempts -= 1
                if elapsed + policy.recheck_delay_seconds > policy.max_elapsed_seconds:
                    return TransientFailure(class_id, "Booking window did not open in time")
                logger.debug("Class %s: window not open yet, rechecking", class_id)
                self._clock.sleep(policy.recheck_delay_seconds)
                continue

            delay = self._rng.uniform(policy.min_delay_seconds, policy.max_delay_seconds)
            if attempts >= policy.max_attempts or elapsed + delay > policy.max_elapsed_seconds:
                logger.warning("Gave up on class %s after %s attempts", class_id, attempts)
                return outcome
            logger.debug(
                "Attempt #%s for class %s failed (%s); retrying in %.0fms",
                attempts,
                class_id,
                outcome.reason,
                delay * 1000,
            )
            self._clock.sleep(delay)

    def _join_waitlist(self, class_id: int) -> BookingOutcome:
        outcome = self._client.join_waitlist(class_id)
        if isinstance(outcome, (Booked, Waitlisted)):
            return outcome
        reason = outcome.reason if outcome.reason else "Waitlist join failed"
        return PermanentFailure(class_id, reason, FailureCode.WAITLIST_CLOSED)

    def _report(
        self,
        class_id: int,
        outcome: BookingOutcome,
        target: Optional[ClassInstance],
    ) -> None:
        message = describe_outcome(outcome)
        if isinstance(outcome, (Booked, Waitlisted)):
            logger.info("Class %s: %s", class_id, message)
        else:
            logger.warning("Class %s: %s", class_id, message)

        class_name = target.name if target else None
        start_time = target.start_time if target else None
        if isinstance(outcome, Booked):
            class_name = outcome.class_name or class_name
            start_time = outcome.start_time or start_time

        self._notifier.notify(
            NotificationEvent(
                class_id=class_id,
                outcome=outcome.label,
                occurred_at=self._clock.now(),
                message=message,
                class_name=class_name,
                class_start_time=start_time,
                trainer=target.trainer if target else None,
            )
        )
