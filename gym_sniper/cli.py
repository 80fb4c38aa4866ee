"""Command line interface for gym-sniper."""

from __future__ import annotations

import argparse
import signal
import sys
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Sequence

import uvicorn

from gym_sniper.app import create_app
from gym_sniper.domain.matching import filter_classes
from gym_sniper.domain.models import Booked, ClassInstance, SnipeQueueEntry, Waitlisted, describe_outcome
from gym_sniper.domain.window import opens_at, seconds_until
from gym_sniper.repository.queue_repository import QueueStoreError, SnipeQueueRepository
from gym_sniper.services.booking_service import BookingService, RetryPolicy
from gym_sniper.services.daemon_service import SniperDaemon
from gym_sniper.services.notification_service import Notifier, build_notifier
from gym_sniper.services.queue_service import SnipeQueueError, SnipeQueueService, SnipeRunner
from gym_sniper.services.scheduler_service import ScheduleService
from gym_sniper.services.session_client import PortalError, PortalSessionClient
from gym_sniper.services.snipe_service import SnipeEngine, SnipeResult, SnipeStrategy
from gym_sniper.utils.clock import OperationCancelled, SystemClock
from gym_sniper.utils.config import ConfigError, PortalConfig, Settings, get_settings, load_portal_config
from gym_sniper.utils.formatting import format_class_time, format_duration, render_table, truncate
from gym_sniper.utils.logger import configure_logging, get_logger


logger = get_logger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIG = 2
EXIT_CANCELLED = 130

NOTIFY_FLUSH_TIMEOUT_SECONDS = 60.0


@dataclass
class Runtime:
    """Everything a command needs, built once from the config file."""

    settings: Settings
    portal_config: PortalConfig
    clock: SystemClock
    notifier: Notifier

    def new_client(self) -> PortalSessionClient:
        return PortalSessionClient(self.portal_config, settings=self.settings, clock=self.clock)

    def new_booking_service(self, client: PortalSessionClient) -> BookingService:
        return BookingService(client, settings=self.settings, clock=self.clock, notifier=self.notifier)

    def new_queue_service(
        self,
        client: Optional[PortalSessionClient] = None,
        runner: Optional[SnipeRunner] = None,
    ) -> SnipeQueueService:
        return SnipeQueueService(
            SnipeQueueRepository(self.settings),
            client=client,
            runner=runner,
            settings=self.settings,
            clock=self.clock,
            tz=self.portal_config.tz,
        )

    def strategy(self, override: Optional[str] = None) -> SnipeStrategy:
        configured = override or self.portal_config.sniper.strategy or self.settings.snipe_strategy
        return SnipeStrategy.parse(configured)


def _print_classes(classes: Sequence[ClassInstance]) -> None:
    if not classes:
        print("No classes found.")
        return
    rows = [
        (
            str(item.id),
            truncate(item.name, 25),
            format_class_time(item.start_time),
            item.status_label,
            truncate(item.trainer or "-", 20),
        )
        for item in classes
    ]
    print(render_table(("ID", "Name", "Time", "Status", "Trainer"), (8, 25, 16, 12, 20), rows))


def _print_snipes(entries: Sequence[SnipeQueueEntry], now: datetime) -> None:
    if not entries:
        print("No snipes queued.")
        return
    rows = []
    for entry in entries:
        remaining = seconds_until(entry.window_opens_at, now)
        rows.append(
            (
                str(entry.class_id),
                truncate(entry.class_name, 22),
                format_class_time(entry.class_start_time),
                entry.window_opens_at.strftime("%a %d %b %H:%M"),
                entry.status.value,
                format_duration(remaining) if entry.is_open and remaining > 0 else "-",
            )
        )
    print(
        render_table(
            ("ID", "Name", "Class time", "Window opens", "Status", "Opens in"),
            (8, 22, 16, 16, 10, 12),
            rows,
        )
    )


def cmd_login(runtime: Runtime, args: argparse.Namespace) -> int:
    with runtime.new_client() as client:
        session = client.login()
    print(f"Login successful (session issued {session.issued_at:%H:%M:%S} UTC).")
    return EXIT_OK


def cmd_list(runtime: Runtime, args: argparse.Namespace) -> int:
    with runtime.new_client() as client:
        classes = client.get_classes(args.days)
    _print_classes(filter_classes(classes, class_name=args.class_name))
    return EXIT_OK


def cmd_trainer(runtime: Runtime, args: argparse.Namespace) -> int:
    with runtime.new_client() as client:
        classes = client.get_classes(args.days)
    matches = filter_classes(classes, trainer=args.name)
    print(f"Classes with trainer matching '{args.name}':")
    _print_classes(matches)
    return EXIT_OK


def cmd_upcoming(runtime: Runtime, args: argparse.Namespace) -> int:
    with runtime.new_client() as client:
        classes = client.get_classes(args.days)
    now = runtime.clock.now()
    rows = []
    for item in classes:
        if seconds_until(item.start_time, now) <= 0:
            continue
        window = opens_at(item.start_time, runtime.settings.booking_window_offset)
        remaining = seconds_until(window, now)
        rows.append(
            (
                str(item.id),
                truncate(item.name, 25),
                format_class_time(item.start_time),
                item.status_label,
                window.strftime("%a %d %b %H:%M"),
                format_duration(remaining) if remaining > 0 else "OPEN",
            )
        )
    if not rows:
        print("No upcoming classes.")
        return EXIT_OK
    print(
        render_table(
            ("ID", "Name", "Time", "Status", "Window opens", "Opens in"),
            (8, 25, 16, 12, 16, 12),
            rows,
        )
    )
    return EXIT_OK


def cmd_book(runtime: Runtime, args: argparse.Namespace) -> int:
    with runtime.new_client() as client:
        booking = runtime.new_booking_service(client)
        outcome = booking.attempt(args.class_id, RetryPolicy.for_schedule(runtime.settings))
    print(f"Class {args.class_id}: {describe_outcome(outcome)}")
    return EXIT_OK if isinstance(outcome, (Booked, Waitlisted)) else EXIT_ERROR


def cmd_bookings(runtime: Runtime, args: argparse.Namespace) -> int:
    with runtime.new_client() as client:
        bookings = client.get_my_bookings()
    if not bookings:
        print("No current bookings.")
        return EXIT_OK
    rows = [
        (
            str(item.id),
            truncate(item.name, 25),
            format_class_time(item.start_time),
            item.status_label,
            f"#{item.waitlist_position}" if item.waitlist_position else "-",
        )
        for item in bookings
    ]
    print(render_table(("ID", "Name", "Time", "Status", "Waitlist"), (8, 25, 16, 12, 8), rows))
    return EXIT_OK


def cmd_cancel(runtime: Runtime, args: argparse.Namespace) -> int:
    with runtime.new_client() as client:
        client.cancel_booking(args.class_id)
    print(f"Cancelled booking for class {args.class_id}.")
    return EXIT_OK


def _run_snipe(runtime: Runtime, class_id: int, strategy: SnipeStrategy) -> SnipeResult:
    with runtime.new_client() as client:
        engine = SnipeEngine(
            client,
            runtime.new_booking_service(client),
            settings=runtime.settings,
            clock=runtime.clock,
            notifier=runtime.notifier,
            strategy=strategy,
        )
        return engine.run(class_id)


def cmd_snipe(runtime: Runtime, args: argparse.Namespace) -> int:
    strategy = runtime.strategy(args.strategy)
    print(f"Sniping class {args.class_id} ({strategy.value} mode). Press Ctrl+C to stop.")
    result = _run_snipe(runtime, args.class_id, strategy)
    print(f"Class {args.class_id}: {result.state.value} - {result.message}")
    return EXIT_OK if result.succeeded else EXIT_ERROR


def cmd_snipe_add(runtime: Runtime, args: argparse.Namespace) -> int:
    with runtime.new_client() as client:
        entry = runtime.new_queue_service(client=client).add(args.class_id)
    remaining = seconds_until(entry.window_opens_at, runtime.clock.now())
    print(
        f"Queued {entry.class_name} ({format_class_time(entry.class_start_time)}); "
        f"window opens {entry.window_opens_at:%a %d %b %H:%M} "
        f"(in {format_duration(remaining)})."
    )
    print("Run 'gym-sniper snipe-daemon' to process the queue.")
    return EXIT_OK


def cmd_snipe_remove(runtime: Runtime, args: argparse.Namespace) -> int:
    runtime.new_queue_service().remove(args.class_id)
    print(f"Removed snipe for class {args.class_id}.")
    return EXIT_OK


def cmd_snipes(runtime: Runtime, args: argparse.Namespace) -> int:
    _print_snipes(runtime.new_queue_service().list_entries(), runtime.clock.now())
    return EXIT_OK


def _build_schedule_service(
    runtime: Runtime,
    client: PortalSessionClient,
    lock: Optional[threading.RLock] = None,
) -> ScheduleService:
    return ScheduleService(
        client,
        runtime.new_booking_service(client),
        runtime.portal_config.schedule_targets(),
        settings=runtime.settings,
        clock=runtime.clock,
        lock=lock,
    )


def cmd_snipe_daemon(runtime: Runtime, args: argparse.Namespace) -> int:
    strategy = runtime.strategy(args.strategy)

    def runner(entry: SnipeQueueEntry) -> SnipeResult:
        return _run_snipe(runtime, entry.class_id, strategy)

    queue_service = runtime.new_queue_service(runner=runner)
    with runtime.new_client() as schedule_client:
        schedule_service: Optional[ScheduleService] = None
        if runtime.portal_config.targets:
            schedule_service = _build_schedule_service(
                runtime,
                schedule_client,
                lock=SnipeQueueRepository(runtime.settings).lock,
            )
        print("Snipe daemon running. Press Ctrl+C to stop.")
        SniperDaemon(queue_service, clock=runtime.clock, schedule_service=schedule_service).run()
    return EXIT_OK


def cmd_schedule(runtime: Runtime, args: argparse.Namespace) -> int:
    if not runtime.portal_config.targets:
        print("No [[targets]] configured.")
        return EXIT_CONFIG
    with runtime.new_client() as client:
        schedule_service = _build_schedule_service(runtime, client)
        for target in schedule_service.targets:
            print(f"  - {target.class_name_pattern} days={sorted(target.days) or 'any'} time={target.time or 'any'}")
        print("Scheduler running. Press Ctrl+C to stop.")
        schedule_service.run_forever()
    return EXIT_OK


def cmd_serve(runtime: Runtime, args: argparse.Namespace) -> int:
    settings = runtime.settings
    host = args.host or settings.api_host
    port = args.port or settings.api_port
    app = create_app(settings=settings, portal_config=runtime.portal_config, clock=runtime.clock)
    print(f"Serving API on http://{host}:{port} (docs at /docs)")
    uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gym-sniper",
        description="Book gym classes the moment their booking window opens.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  gym-sniper list -d 3                 # Classes for the next three days
  gym-sniper snipe 76014               # Wait for the window and book
  gym-sniper snipe-add 76014           # Queue for the daemon
  gym-sniper snipe-daemon              # Process the queue and schedule
        """,
    )
    parser.add_argument("-c", "--config", type=Path, default=None, help="Path to config.toml")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("login", help="Check the configured credentials").set_defaults(handler=cmd_login)

    list_parser = commands.add_parser("list", help="List available classes")
    list_parser.add_argument("-d", "--days", type=int, default=7)
    list_parser.add_argument("-n", "--class-name", default=None, help="Filter by class name")
    list_parser.set_defaults(handler=cmd_list)

    trainer_parser = commands.add_parser("trainer", help="List classes by trainer")
    trainer_parser.add_argument("name")
    trainer_parser.add_argument("-d", "--days", type=int, default=28)
    trainer_parser.set_defaults(handler=cmd_trainer)

    upcoming_parser = commands.add_parser("upcoming", help="Classes with their booking window times")
    upcoming_parser.add_argument("-d", "--days", type=int, default=8)
    upcoming_parser.set_defaults(handler=cmd_upcoming)

    book_parser = commands.add_parser("book", help="Book a class now")
    book_parser.add_argument("class_id", type=int)
    book_parser.set_defaults(handler=cmd_book)

    commands.add_parser("bookings", help="Show current bookings").set_defaults(handler=cmd_bookings)

    cancel_parser = commands.add_parser("cancel", help="Cancel a booking")
    cancel_parser.add_argument("class_id", type=int)
    cancel_parser.set_defaults(handler=cmd_cancel)

    snipe_parser = commands.add_parser("snipe", help="Wait for a class window and book it")
    snipe_parser.add_argument("class_id", type=int)
    snipe_parser.add_argument("--strategy", choices=[item.value for item in SnipeStrategy], default=None)
    snipe_parser.set_defaults(handler=cmd_snipe)

    snipe_add_parser = commands.add_parser("snipe-add", help="Queue a snipe")
    snipe_add_parser.add_argument("class_id", type=int)
    snipe_add_parser.set_defaults(handler=cmd_snipe_add)

    snipe_remove_parser = commands.add_parser("snipe-remove", help="Remove a queued snipe")
    snipe_remove_parser.add_argument("class_id", type=int)
    snipe_remove_parser.set_defaults(handler=cmd_snipe_remove)

    commands.add_parser("snipes", help="Show the snipe queue").set_defaults(handler=cmd_snipes)

    daemon_parser = commands.add_parser("snipe-daemon", help="Process the snipe queue and schedule")
    daemon_parser.add_argument("--strategy", choices=[item.value for item in SnipeStrategy], default=None)
    daemon_parser.set_defaults(handler=cmd_snipe_daemon)

    commands.add_parser("schedule", help="Auto-book configured targets").set_defaults(handler=cmd_schedule)

    serve_parser = commands.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default=None)
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.set_defaults(handler=cmd_serve, manages_signals=True)

    return parser


def _install_signal_handlers(clock: SystemClock) -> None:
    def _cancel(signum: int, frame: object) -> None:
        clock.cancel()

    signal.signal(signal.SIGINT, _cancel)
    signal.signal(signal.SIGTERM, _cancel)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        settings = get_settings()
        if args.config is not None:
            settings = replace(settings, config_path=args.config)
        portal_config = load_portal_config(settings.config_path)
    except ConfigError as exc:
        logger.error("%s", exc)
        return EXIT_CONFIG

    clock = SystemClock()
    runtime = Runtime(
        settings=settings,
        portal_config=portal_config,
        clock=clock,
        notifier=build_notifier(portal_config),
    )
    if not getattr(args, "manages_signals", False):
        _install_signal_handlers(clock)

    handler: Callable[[Runtime, argparse.Namespace], int] = args.handler
    try:
        return handler(runtime, args)
    except OperationCancelled:
        logger.warning("Cancelled")
        return EXIT_CANCELLED
    except (SnipeQueueError, PortalError, QueueStoreError) as exc:
        logger.error("%s", exc)
        return EXIT_ERROR
    finally:
        if not runtime.notifier.flush(NOTIFY_FLUSH_TIMEOUT_SECONDS):
            logger.warning("Exiting with notification emails still being sent")


if __name__ == "__main__":
    sys.exit(main())
