from __future__ import annotations

import smtplib
import threading
from datetime import datetime, timezone

from conftest import LONDON, build_portal_config

from gym_sniper.domain.models import NotificationEvent
from gym_sniper.services import notification_service
from gym_sniper.services.notification_service import (
    EmailNotifier,
    LoggingNotifier,
    build_notifier,
    compose_message,
)
from gym_sniper.utils.config import EmailSection


EMAIL = {
    "smtp_server": "smtp.example.com",
    "smtp_port": 2525,
    "username": "bot",
    "password": "pw",
    "from": "bot@example.com",
    "to": "member@example.com",
}


class FakeSMTP:
    instances: list["FakeSMTP"] = []
    fail_login = False

    def __init__(self, host, port, timeout=None) -> None:
        self.host = host
        self.port = port
        self.calls: list[str] = []
        self.messages = []
        FakeSMTP.instances.append(self)

    def __enter__(self) -> "FakeSMTP":
        return self

    def __exit__(self, *exc_info) -> None:
        self.calls.append("quit")

    def starttls(self) -> None:
        self.calls.append("starttls")

    def login(self, username, password) -> None:
        if FakeSMTP.fail_login:
            raise smtplib.SMTPAuthenticationError(535, b"bad credentials")
        self.calls.append(f"login:{username}")

    def send_message(self, message) -> None:
        self.calls.append("send")
        self.messages.append(message)


def _build_event(outcome: str, message: str) -> NotificationEvent:
    return NotificationEvent(
        class_id=76014,
        outcome=outcome,
        occurred_at=datetime(2025, 2, 4, 7, 15, tzinfo=timezone.utc),
        message=message,
        class_name="Yoga Flow",
        class_start_time=datetime(2025, 2, 11, 9, 15, tzinfo=LONDON),
        trainer="Alex Smith",
    )


def test_compose_message_for_success_and_failure():
    subject, body = compose_message(_build_event("booked", "Booked"))
    assert subject == "Gym Booking Confirmed: Yoga Flow"
    assert "Time: Tue 11 Feb 09:15" in body
    assert "Trainer: Alex Smith" in body

    subject, body = compose_message(_build_event("failed", "Daily booking limit reached"))
    assert subject == "Gym Booking Failed: Yoga Flow"
    assert "Reason: Daily booking limit reached" in body


def test_email_notifier_sends_over_starttls(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail_login = False
    monkeypatch.setattr(notification_service.smtplib, "SMTP", FakeSMTP)
    notifier = EmailNotifier(EmailSection.model_validate(EMAIL), background=False)

    notifier.notify(_build_event("waitlisted", "Joined waitlist at position #2"))

    server = FakeSMTP.instances[0]
    assert (server.host, server.port) == ("smtp.example.com", 2525)
    assert server.calls == ["starttls", "login:bot", "send", "quit"]
    message = server.messages[0]
    assert message["To"] == "member@example.com"
    assert message["Subject"] == "Gym Booking Waitlisted: Yoga Flow"


def test_email_failures_are_logged_not_raised(monkeypatch, caplog):
    FakeSMTP.instances = []
    FakeSMTP.fail_login = True
    monkeypatch.setattr(notification_service.smtplib, "SMTP", FakeSMTP)
    notifier = EmailNotifier(EmailSection.model_validate(EMAIL), background=False)

    notifier.notify(_build_event("booked", "Booked"))

    assert FakeSMTP.instances[0].messages == []
    assert "Failed to send booked email" in caplog.text


def test_build_notifier_picks_email_only_when_configured():
    assert isinstance(build_notifier(build_portal_config()), LoggingNotifier)
    assert isinstance(build_notifier(build_portal_config(email=EMAIL)), EmailNotifier)
    assert isinstance(build_notifier(None), LoggingNotifier)


class GatedSMTP(FakeSMTP):
    """Holds every send until the test opens the gate."""

    gate = threading.Event()

    def send_message(self, message) -> None:
        GatedSMTP.gate.wait(5)
        super().send_message(message)


def test_flush_waits_for_background_deliveries(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail_login = False
    GatedSMTP.gate = threading.Event()
    monkeypatch.setattr(notification_service.smtplib, "SMTP", GatedSMTP)
    notifier = EmailNotifier(EmailSection.model_validate(EMAIL))

    notifier.notify(_build_event("booked", "Booked"))

    assert notifier.flush(timeout=0.05) is False
    GatedSMTP.gate.set()
    assert notifier.flush(timeout=5) is True
    assert len(FakeSMTP.instances[0].messages) == 1
    assert notifier.flush(timeout=0) is True


def test_logging_notifier_has_nothing_to_flush():
    assert LoggingNotifier().flush(timeout=0) is True
