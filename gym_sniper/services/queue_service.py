"""Durable queue of snipes with a one-snipe-per-booking-day rule."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, tzinfo
from typing import Callable, Optional, Protocol

from gym_sniper.domain.models import ClassInstance, ClassStatus, QueueStatus, SnipeQueueEntry
from gym_sniper.domain.window import has_started, local_date, opens_at, seconds_until
from gym_sniper.repository.queue_repository import SnipeQueueRepository
from gym_sniper.services.snipe_service import SnipeResult, SnipeState
from gym_sniper.utils.clock import Clock, OperationCancelled, SystemClock
from gym_sniper.utils.config import Settings, get_settings
from gym_sniper.utils.logger import get_logger


logger = get_logger(__name__)

SnipeRunner = Callable[[SnipeQueueEntry], SnipeResult]

_RESULT_STATUS = {
    SnipeState.SUCCEEDED: QueueStatus.COMPLETED,
    SnipeState.WAITLISTED: QueueStatus.COMPLETED,
    SnipeState.FAILED: QueueStatus.FAILED,
    SnipeState.EXPIRED: QueueStatus.EXPIRED,
}


class SnipeQueueError(Exception):
    """Base exception for queue operations."""


class SnipeQueueValidationError(SnipeQueueError):
    """Raised when a class cannot be queued at all."""


class DuplicateSnipeError(SnipeQueueError):
    """Raised when the class already has an open snipe."""


class DayConflictError(SnipeQueueError):
    """Raised when another open snipe has a window on the same day."""


class QueueEntryNotFoundError(SnipeQueueError):
    """Raised when removing a class that is not in the queue."""


class ClassLookup(Protocol):
    def get_class(self, class_id: int) -> ClassInstance: ...


class SnipeQueueService:
    """Adds, removes and activates queued snipes."""

    def __init__(
        self,
        repository: SnipeQueueRepository,
        client: Optional[ClassLookup] = None,
        runner: Optional[SnipeRunner] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        tz: Optional[tzinfo] = None,
    ) -> None:
        self._repository = repository
        self._client = client
        self._runner = runner
        self._settings = settings or get_settings()
        self._clock = clock or SystemClock()
        self._tz = tz

    def add(self, class_id: int) -> SnipeQueueEntry:
        if self._client is None:
            raise SnipeQueueError("No portal client configured for class lookups")
        return self.add_class(self._client.get_class(class_id))

    def add_class(self, class_instance: ClassInstance) -> SnipeQueueEntry:
        now = self._clock.now()
        if has_started(class_instance, now):
            raise SnipeQueueValidationError(f"Class {class_instance.id} has already started")
        if class_instance.status in {ClassStatus.BOOKED, ClassStatus.AWAITING}:
            raise SnipeQueueValidationError(
                f"Class {class_instance.id} is already {class_instance.status.value.lower()}"
            )

        window = opens_at(class_instance.start_time, self._settings.booking_window_offset)
        booking_day = local_date(window, self._tz)
        with self._repository.transaction() as snapshot:
            existing = snapshot.find(class_instance.id)
            if existing is not None and existing.is_open:
                raise DuplicateSnipeError(f"Class {class_instance.id} is already queued")
            for entry in snapshot.entries:
                if entry.is_open and local_date(entry.window_opens_at, self._tz) == booking_day:
                    raise DayConflictError(
                        f"Already have a snipe for {booking_day:%a %d %b}: "
                        f"{entry.class_name} (class {entry.class_id}). "
                        "Only one booking per day is allowed."
                    )

            entry = SnipeQueueEntry(
                class_id=class_instance.id,
                class_name=class_instance.name,
                class_start_time=class_instance.start_time,
                window_opens_at=window,
                status=QueueStatus.QUEUED,
                created_at=now,
                trainer=class_instance.trainer,
            )
            snapshot.put(entry)

        logger.info(
            "Queued snipe for class %s (%s); window opens %s",
            entry.class_id,
            entry.class_name,
            entry.window_opens_at.isoformat(),
        )
        return entry

    def remove(self, class_id: int) -> None:
        with self._repository.transaction() as snapshot:
            if not snapshot.drop(class_id):
                raise QueueEntryNotFoundError(f"No snipe queued for class {class_id}")
        logger.info("Removed snipe for class %s", class_id)

    def list_entries(self) -> list[SnipeQueueEntry]:
        snapshot = self._repository.load()
        return sorted(snapshot.entries, key=lambda entry: entry.window_opens_at)

    def reconcile(self, now: Optional[datetime] = None) -> int:
        """Demote entries left active by a previous process. Returns the count."""
        now = now or self._clock.now()
        demoted = 0
        with self._repository.transaction() as snapshot:
            for entry in list(snapshot.entries):
                if entry.status != QueueStatus.ACTIVE:
                    continue
                demoted += 1
                if seconds_until(entry.class_start_time, now) <= 0:
                    snapshot.put(
                        replace(
                            entry,
                            status=QueueStatus.EXPIRED,
                            resolved_at=now,
                            message="Class started while the daemon was down",
                        )
                    )
                else:
                    snapshot.put(replace(entry, status=QueueStatus.QUEUED))
        if demoted:
            logger.info("Reconciled %s snipe(s) left active by a previous run", demoted)
        return demoted

    def tick(self, now: Optional[datetime] = None) -> list[SnipeResult]:
        """Purge, expire and activate due entries, then run the activated ones."""
        now = now or self._clock.now()
        lead = self._settings.queue_activation_lead_seconds
        activated: list[SnipeQueueEntry] = []

        with self._repository.transaction() as snapshot:
            kept: list[SnipeQueueEntry] = []
            for entry in snapshot.entries:
                if (
                    not entry.is_open
                    and entry.resolved_at is not None
                    and now - entry.resolved_at > self._settings.retention
                ):
                    logger.info("Purging resolved snipe for class %s", entry.class_id)
                    continue
                if entry.status == QueueStatus.QUEUED and seconds_until(entry.class_start_time, now) <= 0:
                    entry = replace(
                        entry,
                        status=QueueStatus.EXPIRED,
                        resolved_at=now,
                        message="Class started before the snipe ran",
                    )
                elif entry.status == QueueStatus.QUEUED and seconds_until(entry.window_opens_at, now) <= lead:
                    entry = replace(entry, status=QueueStatus.ACTIVE)
                    activated.append(entry)
                kept.append(entry)
            snapshot.entries = kept

        if not activated:
            return []
        runner = self._runner
        if runner is None:
            raise SnipeQueueError("No snipe runner configured")

        results: list[SnipeResult] = []
        for entry in activated:
            self._clock.check_cancelled()
            logger.info("Activating snipe for class %s (%s)", entry.class_id, entry.class_name)
            try:
                result = runner(entry)
            except OperationCancelled:
                raise
            except Exception as exc:
                logger.exception("Snipe for class %s crashed", entry.class_id)
                result = SnipeResult(
                    class_id=entry.class_id,
                    state=SnipeState.FAILED,
                    message=f"Snipe crashed: {exc}",
                    class_name=entry.class_name,
                    finished_at=self._clock.now(),
                )
            self._record_result(result)
            results.append(result)
        return results

    def _record_result(self, result: SnipeResult) -> None:
        with self._repository.transaction() as snapshot:
            current = snapshot.find(result.class_id)
            if current is None or current.status != QueueStatus.ACTIVE:
                logger.info(
                    "Snipe for class %s was removed or changed while running; result not stored",
                    result.class_id,
                )
                return
            snapshot.put(
                replace(
                    current,
                    status=_RESULT_STATUS[result.state],
                    resolved_at=result.finished_at or self._clock.now(),
                    message=result.message,
                )
            )

    def next_check_delay(self, now: Optional[datetime] = None) -> float:
        """Seconds until the next entry becomes due, capped by the daemon poll bound."""
        now = now or self._clock.now()
        delay = self._settings.daemon_poll_seconds
        lead = self._settings.queue_activation_lead_seconds
        for entry in self._repository.load().entries:
            if entry.status != QueueStatus.QUEUED:
                continue
            due_in = seconds_until(entry.window_opens_at, now) - lead
            delay = min(delay, max(due_in, 0.0))
        return delay
