"""Wall clock, timed sleeps and cancellation."""

from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Optional, Protocol


class OperationCancelled(Exception):
    """Raised at a sleep boundary once cancellation was requested."""


class Clock(Protocol):
    def now(self) -> datetime: ...

    def monotonic(self) -> float: ...

    def sleep(self, seconds: float) -> None: ...

    def check_cancelled(self) -> None: ...


class SystemClock:
    """Real time source whose sleeps wake early when cancelled.

    All threads of one process share a single instance so a signal handler
    calling `cancel()` stops every waiting flow at its next sleep boundary.
    """

    def __init__(self, cancel_event: Optional[threading.Event] = None) -> None:
        self._cancel_event = cancel_event or threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        self._cancel_event.set()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    def check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise OperationCancelled("Operation cancelled")

    def sleep(self, seconds: float) -> None:
        self.check_cancelled()
        if seconds <= 0:
            return
        deadline = time.monotonic() + seconds
        remaining = seconds
        # Event.wait may return slightly early; loop until the deadline.
        while remaining > 0:
            if self._cancel_event.wait(remaining):
                raise OperationCancelled("Operation cancelled")
            remaining = deadline - time.monotonic()
