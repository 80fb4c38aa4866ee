from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from conftest import LONDON, FakeClock, FakePortalClient, build_class

from gym_sniper.domain.models import ClassStatus, QueueStatus, SnipeQueueEntry
from gym_sniper.repository.queue_repository import SnipeQueueRepository
from gym_sniper.services.queue_service import (
    DayConflictError,
    DuplicateSnipeError,
    QueueEntryNotFoundError,
    SnipeQueueError,
    SnipeQueueService,
    SnipeQueueValidationError,
)
from gym_sniper.services.snipe_service import SnipeResult, SnipeState


NOW = datetime(2025, 2, 1, 12, 0, tzinfo=timezone.utc)
MORNING = build_class(101, datetime(2025, 2, 11, 9, 15, tzinfo=LONDON), name="Yoga Flow")
EVENING = build_class(102, datetime(2025, 2, 11, 18, 0, tzinfo=LONDON), name="Spin")
NEXT_DAY = build_class(103, datetime(2025, 2, 12, 9, 15, tzinfo=LONDON), name="Pilates")
MORNING_WINDOW = datetime(2025, 2, 4, 7, 15, tzinfo=LONDON)


class RecordingRunner:
    def __init__(self, state: SnipeState = SnipeState.SUCCEEDED, on_run=None) -> None:
        self.state = state
        self.on_run = on_run
        self.entries: list[SnipeQueueEntry] = []

    def __call__(self, entry: SnipeQueueEntry) -> SnipeResult:
        self.entries.append(entry)
        if self.on_run is not None:
            self.on_run(entry)
        return SnipeResult(class_id=entry.class_id, state=self.state, message="Booked")


def _build_service(settings, tmp_path, clock, runner=None) -> SnipeQueueService:
    settings = replace(settings, queue_path=tmp_path / "snipes.json")
    client = FakePortalClient(clock, classes=[MORNING, EVENING, NEXT_DAY])
    return SnipeQueueService(
        SnipeQueueRepository(settings),
        client=client,
        runner=runner,
        settings=settings,
        clock=clock,
        tz=LONDON,
    )


def _statuses(service: SnipeQueueService) -> dict[int, QueueStatus]:
    return {entry.class_id: entry.status for entry in service.list_entries()}


def test_add_caches_window_opening(settings, tmp_path):
    service = _build_service(settings, tmp_path, FakeClock(NOW))

    entry = service.add(101)

    assert entry.window_opens_at == MORNING_WINDOW
    assert entry.status == QueueStatus.QUEUED
    assert entry.created_at == NOW


def test_second_snipe_with_window_on_same_day_conflicts(settings, tmp_path):
    service = _build_service(settings, tmp_path, FakeClock(NOW))
    service.add(101)

    with pytest.raises(DayConflictError):
        service.add(102)

    service.add(103)
    assert set(_statuses(service)) == {101, 103}


def test_remove_then_re_add_on_same_day_succeeds(settings, tmp_path):
    service = _build_service(settings, tmp_path, FakeClock(NOW))
    service.add(101)

    service.remove(101)
    entry = service.add(102)

    assert entry.class_id == 102
    assert list(_statuses(service)) == [102]


def test_duplicate_and_missing_entries_are_rejected(settings, tmp_path):
    service = _build_service(settings, tmp_path, FakeClock(NOW))
    service.add(101)

    with pytest.raises(DuplicateSnipeError):
        service.add(101)
    with pytest.raises(QueueEntryNotFoundError):
        service.remove(999)


def test_started_or_booked_classes_cannot_be_queued(settings, tmp_path):
    service = _build_service(settings, tmp_path, FakeClock(datetime(2025, 2, 11, 10, 0, tzinfo=timezone.utc)))

    with pytest.raises(SnipeQueueValidationError):
        service.add(101)

    service = _build_service(settings, tmp_path, FakeClock(NOW))
    with pytest.raises(SnipeQueueValidationError):
        service.add_class(replace(NEXT_DAY, status=ClassStatus.BOOKED))


def test_resolved_entry_does_not_block_its_day(settings, tmp_path):
    clock = FakeClock(NOW)
    service = _build_service(settings, tmp_path, clock, runner=RecordingRunner(SnipeState.FAILED))
    service.add(101)
    clock.advance((MORNING_WINDOW - NOW).total_seconds() - 60)
    service.tick()
    assert _statuses(service)[101] == QueueStatus.FAILED

    clock = FakeClock(NOW)
    service = _build_service(settings, tmp_path, clock)
    service.add(102)

    assert _statuses(service) == {101: QueueStatus.FAILED, 102: QueueStatus.QUEUED}


def test_tick_activates_due_entries_and_stores_the_result(settings, tmp_path):
    clock = FakeClock(NOW)
    runner = RecordingRunner()
    service = _build_service(settings, tmp_path, clock, runner=runner)
    service.add(101)
    service.add(103)

    clock.advance((MORNING_WINDOW - NOW).total_seconds() - 240)
    results = service.tick()

    assert [result.class_id for result in results] == [101]
    assert runner.entries[0].status == QueueStatus.ACTIVE
    stored = {entry.class_id: entry for entry in service.list_entries()}
    assert stored[101].status == QueueStatus.COMPLETED
    assert stored[101].resolved_at is not None
    assert stored[101].message == "Booked"
    assert stored[103].status == QueueStatus.QUEUED


def test_result_is_dropped_when_entry_was_removed_mid_run(settings, tmp_path):
    clock = FakeClock(NOW)
    holder = {}
    runner = RecordingRunner(on_run=lambda entry: holder["service"].remove(entry.class_id))
    service = _build_service(settings, tmp_path, clock, runner=runner)
    holder["service"] = service
    service.add(101)

    clock.advance((MORNING_WINDOW - NOW).total_seconds())
    service.tick()

    assert service.list_entries() == []


def test_crashing_runner_marks_entry_failed(settings, tmp_path):
    clock = FakeClock(NOW)

    def _explode(entry):
        raise RuntimeError("portal exploded")

    service = _build_service(settings, tmp_path, clock, runner=RecordingRunner(on_run=_explode))
    service.add(101)
    clock.advance((MORNING_WINDOW - NOW).total_seconds())

    results = service.tick()

    assert results[0].state == SnipeState.FAILED
    assert "portal exploded" in results[0].message
    assert _statuses(service)[101] == QueueStatus.FAILED


def test_tick_expires_entries_whose_class_started(settings, tmp_path):
    clock = FakeClock(NOW)
    runner = RecordingRunner()
    service = _build_service(settings, tmp_path, clock, runner=runner)
    service.add(101)

    clock.advance((MORNING.start_time - NOW).total_seconds() + 60)
    service.tick()

    assert runner.entries == []
    assert _statuses(service)[101] == QueueStatus.EXPIRED


def test_cleanup_purges_after_retention_and_keeps_recent(settings, tmp_path):
    clock = FakeClock(NOW)
    service = _build_service(settings, tmp_path, clock)
    old = service.add(101)
    recent = service.add(103)
    repository = SnipeQueueRepository(replace(settings, queue_path=tmp_path / "snipes.json"))
    with repository.transaction() as snapshot:
        snapshot.put(replace(old, status=QueueStatus.COMPLETED, resolved_at=NOW - timedelta(days=8)))
        snapshot.put(replace(recent, status=QueueStatus.COMPLETED, resolved_at=NOW - timedelta(days=6)))

    service.tick()

    assert list(_statuses(service)) == [103]


def test_reconcile_demotes_active_entries(settings, tmp_path):
    clock = FakeClock(NOW)
    service = _build_service(settings, tmp_path, clock)
    morning = service.add(101)
    repository = SnipeQueueRepository(replace(settings, queue_path=tmp_path / "snipes.json"))
    with repository.transaction() as snapshot:
        snapshot.put(replace(morning, status=QueueStatus.ACTIVE))

    assert service.reconcile() == 1
    assert _statuses(service)[101] == QueueStatus.QUEUED

    with repository.transaction() as snapshot:
        snapshot.put(replace(morning, status=QueueStatus.ACTIVE))
    assert service.reconcile(now=datetime(2025, 2, 12, 0, 0, tzinfo=timezone.utc)) == 1
    assert _statuses(service)[101] == QueueStatus.EXPIRED


def test_next_check_delay_tracks_the_next_activation(settings, tmp_path):
    clock = FakeClock(NOW)
    service = _build_service(replace(settings, daemon_poll_seconds=600.0), tmp_path, clock)
    assert service.next_check_delay() == 600.0

    service.add(101)
    clock.advance((MORNING_WINDOW - NOW).total_seconds() - 600)
    assert service.next_check_delay() == pytest.approx(300.0)

    clock.advance(600)
    assert service.next_check_delay() == 0.0


def test_tick_without_runner_only_fails_once_something_is_due(settings, tmp_path):
    clock = FakeClock(NOW)
    service = _build_service(settings, tmp_path, clock)
    service.add(101)

    assert service.tick() == []
    clock.advance((MORNING_WINDOW - NOW).total_seconds())
    with pytest.raises(SnipeQueueError, match="No snipe runner"):
        service.tick()
