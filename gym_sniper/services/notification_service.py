"""Out-of-band delivery of booking outcomes.

`notify` never raises and never blocks the booking flow on SMTP. Emails go
out on worker threads; short-lived commands call `flush` before exiting so
pending deliveries are not cut off with the process.
"""

from __future__ import annotations

import smtplib
import threading
import time
from email.mime.text import MIMEText
from typing import Optional, Protocol

from gym_sniper.domain.models import NotificationEvent
from gym_sniper.utils.config import EmailSection, PortalConfig
from gym_sniper.utils.formatting import format_class_time
from gym_sniper.utils.logger import get_logger


logger = get_logger(__name__)

SMTP_TIMEOUT_SECONDS = 15


class Notifier(Protocol):
    def notify(self, event: NotificationEvent) -> None: ...

    def flush(self, timeout: Optional[float] = None) -> bool: ...


class LoggingNotifier:
    """Default sink when no email settings are configured."""

    def notify(self, event: NotificationEvent) -> None:
        logger.info(
            "Notification: class %s %s at %s - %s",
            event.class_id,
            event.outcome,
            event.occurred_at.isoformat(),
            event.message,
        )

    def flush(self, timeout: Optional[float] = None) -> bool:
        return True


def compose_message(event: NotificationEvent) -> tuple[str, str]:
    """Return (subject, body) for an outcome event."""
    class_name = event.class_name or f"class {event.class_id}"
    when = format_class_time(event.class_start_time) if event.class_start_time else "Unknown"
    trainer = event.trainer or "Not assigned"

    if event.succeeded:
        verb = "Confirmed" if event.outcome == "booked" else "Waitlisted"
        subject = f"Gym Booking {verb}: {class_name}"
        body = (
            "Your gym class has been successfully booked!\n\n"
            if event.outcome == "booked"
            else "The class was full, so you were added to the waitlist.\n\n"
        )
        body += (
            f"Class: {class_name}\n"
            f"Time: {when}\n"
            f"Trainer: {trainer}\n\n"
            f"{event.message}\n\n"
            "See you there!"
        )
        return subject, body

    subject = f"Gym Booking Failed: {class_name}"
    body = (
        "Failed to book your gym class.\n\n"
        f"Class: {class_name}\n"
        f"Time: {when}\n"
        f"Trainer: {trainer}\n\n"
        f"Reason: {event.message}\n\n"
        "You may want to try booking manually or check the waitlist."
    )
    return subject, body


class EmailNotifier:
    """Sends outcome emails over SMTP with STARTTLS."""

    def __init__(self, config: EmailSection, background: bool = True) -> None:
        self._config = config
        self._background = background
        self._workers: list[threading.Thread] = []
        self._workers_lock = threading.Lock()

    def notify(self, event: NotificationEvent) -> None:
        if not self._background:
            self._deliver(event)
            return
        worker = threading.Thread(
            target=self._deliver,
            args=(event,),
            name=f"notify-{event.class_id}",
            daemon=True,
        )
        with self._workers_lock:
            self._workers = [item for item in self._workers if item.is_alive()]
            self._workers.append(worker)
        worker.start()

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for pending deliveries. Returns False if some are still running."""
        with self._workers_lock:
            pending = list(self._workers)
        deadline = None if timeout is None else time.monotonic() + timeout
        for worker in pending:
            remaining = None if deadline is None else max(deadline - time.monotonic(), 0.0)
            worker.join(remaining)
        with self._workers_lock:
            self._workers = [item for item in self._workers if item.is_alive()]
            return not self._workers

    def _deliver(self, event: NotificationEvent) -> None:
        subject, body = compose_message(event)
        message = MIMEText(body, "plain", "utf-8")
        message["Subject"] = subject
        message["From"] = self._config.sender
        message["To"] = self._config.recipient

        try:
            with smtplib.SMTP(
                self._config.smtp_server,
                self._config.smtp_port,
                timeout=SMTP_TIMEOUT_SECONDS,
            ) as server:
                server.starttls()
                server.login(self._config.username, self._config.password)
                server.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Failed to send %s email for class %s: %s", event.outcome, event.class_id, exc)
            return
        logger.info("Booking %s email sent for class %s", event.outcome, event.class_id)


def build_notifier(portal_config: Optional[PortalConfig]) -> Notifier:
    if portal_config is not None and portal_config.email is not None:
        return EmailNotifier(portal_config.email)
    return LoggingNotifier()
