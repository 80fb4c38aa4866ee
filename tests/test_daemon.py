from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from conftest import LONDON, FakeClock, FakePortalClient, build_class

from gym_sniper.domain.models import QueueStatus
from gym_sniper.repository.queue_repository import SnipeQueueRepository
from gym_sniper.services.daemon_service import SniperDaemon
from gym_sniper.services.queue_service import SnipeQueueService
from gym_sniper.services.snipe_service import SnipeResult, SnipeState
from gym_sniper.utils.clock import OperationCancelled


YOGA = build_class(101, datetime(2025, 2, 11, 9, 15, tzinfo=LONDON))
WINDOW = datetime(2025, 2, 4, 7, 15, tzinfo=LONDON).astimezone(timezone.utc)


class FlakyQueue:
    """Queue stand-in whose first tick blows up."""

    def __init__(self) -> None:
        self.ticks = 0
        self.reconciled = False

    def reconcile(self) -> int:
        self.reconciled = True
        return 0

    def tick(self) -> list[SnipeResult]:
        self.ticks += 1
        if self.ticks == 1:
            raise RuntimeError("queue file locked")
        return []

    def next_check_delay(self) -> float:
        return 30.0


def test_daemon_resumes_stale_snipe_and_stops_on_cancel(settings, tmp_path):
    settings = replace(settings, queue_path=tmp_path / "snipes.json")
    clock = FakeClock(WINDOW - timedelta(minutes=2))
    ran: list[int] = []

    def runner(entry):
        ran.append(entry.class_id)
        return SnipeResult(class_id=entry.class_id, state=SnipeState.SUCCEEDED, message="Booked")

    repository = SnipeQueueRepository(settings)
    service = SnipeQueueService(
        repository,
        client=FakePortalClient(clock, classes=[YOGA]),
        runner=runner,
        settings=settings,
        clock=clock,
        tz=LONDON,
    )
    entry = service.add(101)
    with repository.transaction() as snapshot:
        snapshot.put(replace(entry, status=QueueStatus.ACTIVE))
    clock.cancel_after_sleeps = 1

    with pytest.raises(OperationCancelled):
        SniperDaemon(service, clock=clock).run()

    assert ran == [101]
    stored = service.list_entries()[0]
    assert stored.status == QueueStatus.COMPLETED
    assert clock.sleeps == [settings.daemon_poll_seconds]


def test_daemon_keeps_running_after_a_failed_tick(caplog):
    queue = FlakyQueue()
    clock = FakeClock(WINDOW)
    clock.cancel_after_sleeps = 2

    with pytest.raises(OperationCancelled):
        SniperDaemon(queue, clock=clock).run()

    assert queue.reconciled
    assert queue.ticks == 2
    assert clock.sleeps == [30.0, 30.0]
    assert "Queue tick failed" in caplog.text
