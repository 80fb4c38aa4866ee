"""Single-target snipe engine.

The engine is an explicit state machine:

    estimating -> waiting -> refreshing -> racing -> terminal

Terminal states are sticky. Every transition and every sleep goes through
the injected clock, so cancellation is honoured at each boundary and tests
can drive the whole lifecycle with virtual time.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional, Protocol

from gym_sniper.domain.models import (
    Booked,
    BookingOutcome,
    ClassInstance,
    ClassStatus,
    NotificationEvent,
    Session,
    Waitlisted,
    describe_outcome,
)
from gym_sniper.domain.window import has_started, is_open, opens_at, poll_interval, seconds_until
from gym_sniper.services.booking_service import BookingService, RetryPolicy
from gym_sniper.services.notification_service import LoggingNotifier, Notifier
from gym_sniper.services.session_client import ClassNotFoundError, PortalError
from gym_sniper.utils.clock import Clock, SystemClock
from gym_sniper.utils.config import Settings, get_settings
from gym_sniper.utils.formatting import format_class_time, format_duration
from gym_sniper.utils.logger import get_logger


logger = get_logger(__name__)


class SnipeState(str, Enum):
    ESTIMATING = "estimating"
    WAITING = "waiting"
    REFRESHING = "refreshing"
    RACING = "racing"
    SUCCEEDED = "succeeded"
    WAITLISTED = "waitlisted"
    FAILED = "failed"
    EXPIRED = "expired"


TERMINAL_STATES = frozenset(
    {SnipeState.SUCCEEDED, SnipeState.WAITLISTED, SnipeState.FAILED, SnipeState.EXPIRED}
)


class SnipeStrategy(str, Enum):
    PRECISE = "precise"
    POLLING = "polling"

    @classmethod
    def parse(cls, value: str) -> "SnipeStrategy":
        try:
            return cls(value.strip().lower())
        except ValueError as exc:
            raise ValueError(f"unknown snipe strategy '{value}'") from exc


class SnipeClient(Protocol):
    @property
    def session(self) -> Optional[Session]: ...

    def get_class(self, class_id: int) -> ClassInstance: ...

    def refresh(self) -> Session: ...


@dataclass(frozen=True)
class SnipeResult:
    class_id: int
    state: SnipeState
    message: str
    outcome: Optional[BookingOutcome] = None
    class_name: Optional[str] = None
    finished_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.state in {SnipeState.SUCCEEDED, SnipeState.WAITLISTED}


@dataclass
class _SnipeRun:
    class_id: int
    target: Optional[ClassInstance] = None
    window_opens_at: Optional[datetime] = None
    outcome: Optional[BookingOutcome] = None
    message: str = ""
    refreshed_for_window: bool = False
    polls: int = 0


class SnipeEngine:
    """Waits for one class's booking window and races to book it."""

    def __init__(
        self,
        client: SnipeClient,
        booking_service: BookingService,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        notifier: Optional[Notifier] = None,
        strategy: Optional[SnipeStrategy] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._client = client
        self._booking = booking_service
        self._settings = settings or get_settings()
        self._clock = clock or SystemClock()
        self._notifier = notifier or LoggingNotifier()
        self._strategy = strategy or SnipeStrategy.parse(self._settings.snipe_strategy)
        self._rng = rng or random.Random()
        self._state = SnipeState.ESTIMATING

    @property
    def state(self) -> SnipeState:
        return self._state

    @property
    def strategy(self) -> SnipeStrategy:
        return self._strategy

    def run(self, class_id: int) -> SnipeResult:
        run = _SnipeRun(class_id=class_id)
        handlers: dict[SnipeState, Callable[[_SnipeRun], SnipeState]] = {
            SnipeState.ESTIMATING: self._estimate,
            SnipeState.WAITING: self._wait,
            SnipeState.REFRESHING: self._refresh,
            SnipeState.RACING: self._race,
        }
        self._state = SnipeState.ESTIMATING
        while self._state not in TERMINAL_STATES:
            self._clock.check_cancelled()
            next_state = handlers[self._state](run)
            if next_state != self._state:
                logger.debug("Snipe %s: %s -> %s", class_id, self._state.value, next_state.value)
            self._state = next_state

        # Outcomes from the attempt loop were already reported by it.
        if run.outcome is None:
            self._notify(run)

        logger.info("Snipe for class %s finished: %s (%s)", class_id, self._state.value, run.message)
        return SnipeResult(
            class_id=class_id,
            state=self._state,
            message=run.message,
            outcome=run.outcome,
            class_name=run.target.name if run.target else None,
            finished_at=self._clock.now(),
        )

    def _estimate(self, run: _SnipeRun) -> SnipeState:
        try:
            target = self._fetch_with_backoff(run.class_id)
        except ClassNotFoundError as exc:
            run.message = str(exc)
            return SnipeState.FAILED
        except PortalError as exc:
            run.message = f"Could not read class {run.class_id}: {exc}"
            return SnipeState.FAILED

        run.target = target
        run.window_opens_at = opens_at(target.start_time, self._settings.booking_window_offset)
        logger.info("Target: %s at %s", target.name, format_class_time(target.start_time))
        logger.info("Booking window opens: %s", run.window_opens_at.strftime("%a %d %b %H:%M:%S"))
        logger.info("Current status: %s (strategy: %s)", target.status_label, self._strategy.value)

        decided = self._classify(run, target, self._clock.now())
        if decided is not None:
            return decided
        return SnipeState.WAITING

    def _classify(self, run: _SnipeRun, target: ClassInstance, now: datetime) -> Optional[SnipeState]:
        if target.status == ClassStatus.BOOKED:
            run.message = "Already booked"
            return SnipeState.SUCCEEDED
        if target.status == ClassStatus.AWAITING:
            run.message = "Already on the waitlist"
            return SnipeState.WAITLISTED
        if has_started(target, now):
            run.message = "Class started before a booking was made"
            return SnipeState.EXPIRED
        if target.status == ClassStatus.BOOKABLE or is_open(
            target, now, self._settings.booking_window_offset
        ):
            logger.info("Class %s is bookable; starting booking attempts", target.id)
            return SnipeState.RACING
        return None

    def _fetch_with_backoff(self, class_id: int) -> ClassInstance:
        delay = self._settings.refresh_backoff_initial_seconds
        attempts = max(self._settings.fetch_max_attempts, 1)
        for _ in range(attempts - 1):
            try:
                return self._client.get_class(class_id)
            except ClassNotFoundError:
                raise
            except PortalError as exc:
                logger.warning("Fetching class %s failed (%s); retrying in %.0fs", class_id, exc, delay)
                self._clock.sleep(delay)
                delay *= 2
        return self._client.get_class(class_id)

    def _wait(self, run: _SnipeRun) -> SnipeState:
        if self._strategy == SnipeStrategy.PRECISE:
            return self._wait_precise(run)
        return self._wait_polling(run)

    def _wait_precise(self, run: _SnipeRun) -> SnipeState:
        target, window = run.target, run.window_opens_at
        if target is None or window is None:
            return SnipeState.ESTIMATING
        now = self._clock.now()
        if has_started(target, now):
            run.message = "Class started before a booking was made"
            return SnipeState.EXPIRED

        wake_at = window - timedelta(seconds=self._settings.precise_wake_lead_seconds)
        remaining = seconds_until(wake_at, now)
        if remaining > 0:
            logger.info(
                "Booking window in %s. Sleeping until %s (1 min before window)...",
                format_duration(seconds_until(window, now)),
                wake_at.strftime("%a %d %b %H:%M:%S"),
            )
        while remaining > 0:
            self._clock.sleep(min(remaining, self._settings.sleep_chunk_seconds))
            remaining = seconds_until(wake_at, self._clock.now())
            if remaining > 0:
                logger.info("Still waiting... %s until snipe starts", format_duration(remaining))
        return SnipeState.REFRESHING

    def _wait_polling(self, run: _SnipeRun) -> SnipeState:
        target, window = run.target, run.window_opens_at
        if target is None or window is None:
            return SnipeState.ESTIMATING
        now = self._clock.now()
        to_window = seconds_until(window, now)
        if self._needs_refresh(run, to_window, now):
            return SnipeState.REFRESHING

        run.polls += 1
        interval = poll_interval(to_window)
        try:
            latest = self._client.get_class(run.class_id)
        except ClassNotFoundError as exc:
            run.message = str(exc)
            return SnipeState.FAILED
        except PortalError as exc:
            logger.warning("Poll #%s: failed to get status: %s", run.polls, exc)
            if has_started(target, now):
                run.message = "Class started before a booking was made"
                return SnipeState.EXPIRED
        else:
            if latest.status != target.status:
                logger.info("Status changed: %s -> %s", target.status_label, latest.status_label)
            run.target = latest
            decided = self._classify(run, latest, now)
            if decided is not None:
                return decided
            if run.polls % 10 == 1 or interval <= 10:
                logger.info(
                    "Poll #%s: status=%s, est. window in %s, next poll in %ss",
                    run.polls,
                    latest.status_label,
                    format_duration(to_window),
                    interval,
                )

        jitter = self._rng.uniform(0.0, self._settings.poll_jitter_max_seconds)
        self._clock.sleep(interval + jitter)
        return SnipeState.WAITING

    def _needs_refresh(self, run: _SnipeRun, to_window: float, now: datetime) -> bool:
        session = self._client.session
        if session is not None:
            age = seconds_until(now, session.issued_at)
            if age >= self._settings.session_max_age_seconds:
                return True
        return not run.refreshed_for_window and to_window <= self._settings.polling_refresh_lead_seconds

    def _refresh(self, run: _SnipeRun) -> SnipeState:
        window = run.window_opens_at
        if window is None:
            return SnipeState.ESTIMATING
        self._refresh_with_backoff()
        run.refreshed_for_window = True
        if self._strategy == SnipeStrategy.POLLING:
            return SnipeState.WAITING

        remaining = seconds_until(window, self._clock.now())
        if remaining > 0:
            logger.info("Waiting %dms until booking window opens...", int(remaining * 1000))
        while remaining > 0:
            self._clock.sleep(remaining)
            remaining = seconds_until(window, self._clock.now())
        logger.info("Booking window open - starting booking attempts NOW")
        return SnipeState.RACING

    def _refresh_with_backoff(self) -> bool:
        delay = self._settings.refresh_backoff_initial_seconds
        attempts = max(self._settings.refresh_max_attempts, 1)
        for attempt in range(1, attempts + 1):
            try:
                self._client.refresh()
                logger.info("Session refreshed")
                return True
            except PortalError as exc:
                logger.warning("Session refresh %s/%s failed: %s", attempt, attempts, exc)
                if attempt < attempts:
                    self._clock.sleep(delay)
                    delay *= 2
        logger.warning("Continuing with the current session")
        return False

    def _race(self, run: _SnipeRun) -> SnipeState:
        outcome = self._booking.attempt(
            run.class_id,
            RetryPolicy.for_snipe(self._settings),
            target=run.target,
        )
        run.outcome = outcome
        run.message = describe_outcome(outcome)
        if isinstance(outcome, Booked):
            return SnipeState.SUCCEEDED
        if isinstance(outcome, Waitlisted):
            return SnipeState.WAITLISTED
        if run.target is not None and has_started(run.target, self._clock.now()):
            return SnipeState.EXPIRED
        return SnipeState.FAILED

    def _notify(self, run: _SnipeRun) -> None:
        target = run.target
        self._notifier.notify(
            NotificationEvent(
                class_id=run.class_id,
                outcome=_EVENT_LABELS[self._state],
                occurred_at=self._clock.now(),
                message=run.message,
                class_name=target.name if target else None,
                class_start_time=target.start_time if target else None,
                trainer=target.trainer if target else None,
            )
        )


_EVENT_LABELS = {
    SnipeState.SUCCEEDED: "booked",
    SnipeState.WAITLISTED: "waitlisted",
    SnipeState.FAILED: "failed",
    SnipeState.EXPIRED: "expired",
}
