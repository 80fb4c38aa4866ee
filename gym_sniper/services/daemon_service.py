"""Long-running process that drives the snipe queue and the scheduler."""

from __future__ import annotations

import threading
from typing import Optional

from gym_sniper.services.queue_service import SnipeQueueService
from gym_sniper.services.scheduler_service import ScheduleService
from gym_sniper.utils.clock import Clock, OperationCancelled, SystemClock
from gym_sniper.utils.logger import get_logger


logger = get_logger(__name__)


class SniperDaemon:
    """Runs queue ticks on the calling thread and the scheduler beside it."""

    def __init__(
        self,
        queue_service: SnipeQueueService,
        clock: Optional[Clock] = None,
        schedule_service: Optional[ScheduleService] = None,
    ) -> None:
        self._queue = queue_service
        self._clock = clock or SystemClock()
        self._schedule = schedule_service
        self._scheduler_thread: Optional[threading.Thread] = None

    def _run_scheduler(self, schedule: ScheduleService) -> None:
        try:
            schedule.run_forever()
        except OperationCancelled:
            logger.info("Scheduler stopped")

    def start_scheduler(self) -> None:
        if self._schedule is None or not self._schedule.targets:
            logger.info("No schedule targets configured; scheduler not started")
            return
        self._scheduler_thread = threading.Thread(
            target=self._run_scheduler,
            args=(self._schedule,),
            name="scheduler",
            daemon=True,
        )
        self._scheduler_thread.start()

    def run_once(self) -> None:
        try:
            results = self._queue.tick()
        except OperationCancelled:
            raise
        except Exception:
            logger.exception("Queue tick failed")
            return
        for result in results:
            logger.info("Snipe for class %s ended as %s", result.class_id, result.state.value)

    def run(self) -> None:
        """Block until the clock is cancelled, then re-raise `OperationCancelled`."""
        self._queue.reconcile()
        self.start_scheduler()
        logger.info("Snipe daemon started")
        try:
            while True:
                self._clock.check_cancelled()
                self.run_once()
                delay = 1.0
                try:
                    delay = max(self._queue.next_check_delay(), delay)
                except OperationCancelled:
                    raise
                except Exception:
                    logger.exception("Could not compute the next queue check")
                self._clock.sleep(delay)
        finally:
            if self._scheduler_thread is not None:
                self._scheduler_thread.join(timeout=5.0)
            logger.info("Snipe daemon stopped")
