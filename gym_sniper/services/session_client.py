"""Authenticated, browser-shaped client for the gym's client portal.

The client owns exactly one `Session` at a time. Every flow (a CLI command,
the queue loop, the scheduler loop, the HTTP API) builds its own client, so
session state is never shared between flows.

Failure classification happens here: callers of `book` and `join_waitlist`
only ever see a `BookingOutcome`, never an exception, while catalogue
queries raise `PortalError` subclasses.
"""

from __future__ import annotations

import random
import threading
from datetime import datetime
from typing import Any, Optional
from urllib.parse import urlsplit
from zoneinfo import ZoneInfo

import requests
from requests.adapters import BaseAdapter

from gym_sniper.domain.models import (
    Booked,
    BookingOutcome,
    ClassInstance,
    ClassStatus,
    FailureCode,
    PermanentFailure,
    Session,
    TransientFailure,
    Waitlisted,
)
from gym_sniper.utils.clock import Clock, SystemClock
from gym_sniper.utils.config import PortalConfig, Settings, get_settings
from gym_sniper.utils.logger import get_logger


logger = get_logger(__name__)

USER_AGENT = "Mozilla/5.0 (X11; Linux x86_64; rv:146.0) Gecko/20100101 Firefox/146.0"
ACCEPT_LANGUAGE = "en-GB,en;q=0.5"

LOGIN_PATH = "Auth/Login"
WEEKLY_CLASSES_PATH = "Classes/ClassCalendar/WeeklyClasses"
CLASS_DETAILS_PATH = "Classes/ClassCalendar/Details"
BOOK_CLASS_PATH = "Classes/ClassCalendar/BookClass"
CANCEL_BOOKING_PATH = "Classes/ClassCalendar/CancelBooking"

_AUTH_REJECTED = {401, 403}


class PortalError(Exception):
    """Base exception for portal communication failures."""


class AuthError(PortalError):
    """Raised when credentials are rejected or the session cannot be renewed."""


class NetworkError(PortalError):
    """Raised on transport failures, timeouts and unusable responses."""


class ClassNotFoundError(PortalError):
    """Raised when a class id does not exist on the portal."""


class BookingRejectedError(PortalError):
    """Raised when the portal refuses a booking change such as a cancellation."""


def classify_booking_rejection(class_id: int, status_code: int, body: str) -> BookingOutcome:
    """Map a non-2xx BookClass response onto a booking outcome."""
    lowered = body.lower()
    if status_code >= 500:
        return TransientFailure(class_id, f"Portal error {status_code}")
    if "dailybookinglimitreached" in lowered:
        return PermanentFailure(
            class_id,
            "Daily booking limit reached",
            FailureCode.DAILY_LIMIT,
        )
    if "toosoontobook" in lowered:
        return PermanentFailure(class_id, "Booking window not open yet", FailureCode.TOO_SOON)
    if "already" in lowered:
        return PermanentFailure(
            class_id,
            "Already booked or on the waitlist",
            FailureCode.ALREADY_BOOKED,
        )
    if "full" in lowered or "awaitable" in lowered:
        return PermanentFailure(class_id, "Class is full", FailureCode.CLASS_FULL)
    if status_code == 404:
        return PermanentFailure(class_id, f"Class {class_id} does not exist", FailureCode.NOT_FOUND)
    return TransientFailure(class_id, f"Booking failed ({status_code}): {body[:200]}")


class PortalSessionClient:
    """HTTP client for login, catalogue queries and bookings."""

    def __init__(
        self,
        portal_config: PortalConfig,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        adapter: Optional[BaseAdapter] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._config = portal_config
        self._settings = settings or get_settings()
        self._clock = clock or SystemClock()
        self._rng = rng or random.Random()
        self._tz = portal_config.tz
        self._base_url = portal_config.gym.base_url
        self._club_id = portal_config.gym.club_id
        self._session: Optional[Session] = None
        self._auth_lock = threading.RLock()
        self._timeout = self._settings.request_timeout_seconds
        self._http = requests.Session()
        self._http.headers.update(
            {
                "User-Agent": USER_AGENT,
                "Accept-Language": ACCEPT_LANGUAGE,
            }
        )
        if adapter is not None:
            self._http.mount("https://", adapter)
            self._http.mount("http://", adapter)

    def __enter__(self) -> "PortalSessionClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def timezone(self) -> ZoneInfo:
        return self._tz

    def _origin(self) -> str:
        url = urlsplit(self._base_url)
        return f"{url.scheme}://{url.netloc}"

    def _headers(self, session: Optional[Session] = None) -> dict[str, str]:
        headers = {
            "Accept": "application/json, text/plain, */*",
            "Origin": self._origin(),
            "Referer": f"{self._base_url}/",
            "X-Requested-With": "XMLHttpRequest",
            "CP-LANG": "en",
            "CP-MODE": "desktop",
        }
        if session is not None:
            headers["Authorization"] = f"Bearer {session.token}"
        return headers

    def _pause(self, time_critical: bool) -> None:
        if time_critical:
            low = self._settings.critical_request_delay_min_seconds
            high = self._settings.critical_request_delay_max_seconds
        else:
            low = self._settings.request_delay_min_seconds
            high = self._settings.request_delay_max_seconds
        if high > 0:
            self._clock.sleep(self._rng.uniform(low, high))

    def login(self) -> Session:
        """Authenticate with the configured credentials and own the new session."""
        credentials = self._config.credentials
        payload = {
            "RememberMe": False,
            "Login": credentials.email,
            "Password": credentials.password,
        }
        url = f"{self._base_url}/{LOGIN_PATH}"
        logger.debug("Logging in to %s", url)

        with self._auth_lock:
            self._pause(time_critical=False)
            try:
                response = self._http.post(
                    url,
                    json=payload,
                    headers=self._headers(),
                    timeout=self._timeout,
                )
            except requests.RequestException as exc:
                raise NetworkError(f"Login request failed: {exc}") from exc

            if not response.ok:
                raise AuthError(f"Login failed with status: {response.status_code}")

            token = response.headers.get("jwt-token")
            if not token:
                raise AuthError("No JWT token in login response")

            member = self._member_info(response)
            if member:
                logger.debug("Logged in as %s (ID: %s)", member.get("FirstName"), member.get("Id"))

            self._session = Session(
                token=token,
                cookies=self._http.cookies.get_dict(),
                issued_at=self._clock.now(),
                club_id=self._club_id,
                base_url=self._base_url,
            )
            return self._session

    @staticmethod
    def _member_info(response: requests.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        user = (body or {}).get("User") or {}
        return user.get("Member") or {}

    def refresh(self) -> Session:
        """Replace the owned session. The portal has no refresh endpoint."""
        logger.info("Refreshing portal session")
        return self.login()

    def _ensure_session(self) -> Session:
        with self._auth_lock:
            if self._session is None:
                return self.login()
            return self._session

    def _send(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
        time_critical: bool = False,
    ) -> requests.Response:
        session = self._ensure_session()
        response = self._send_once(method, path, session, json, params, time_critical)
        if response.status_code in _AUTH_REJECTED:
            logger.info("Session rejected with %s; re-authenticating once", response.status_code)
            session = self.refresh()
            response = self._send_once(method, path, session, json, params, time_critical)
            if response.status_code in _AUTH_REJECTED:
                raise AuthError(f"Request to {path} rejected after re-login: {response.status_code}")
        return response

    def _send_once(
        self,
        method: str,
        path: str,
        session: Session,
        json: Optional[dict[str, Any]],
        params: Optional[dict[str, Any]],
        time_critical: bool,
    ) -> requests.Response:
        self._pause(time_critical)
        try:
            return self._http.request(
                method,
                f"{self._base_url}/{path}",
                json=json,
                params=params,
                headers=self._headers(session),
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise NetworkError(f"{method} {path} failed: {exc}") from exc

    def _parse_time(self, raw: str) -> datetime:
        parsed = datetime.fromisoformat(raw)
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=self._tz)
        return parsed.astimezone(self._tz)

    def _parse_class(self, item: dict[str, Any], waitlist_position: Optional[int] = None) -> ClassInstance:
        try:
            raw_status = str(item.get("Status") or "")
            trainer = item.get("Trainer") or (item.get("TrainerDetails") or {}).get("Title")
            return ClassInstance(
                id=int(item["Id"]),
                name=str(item["Name"]),
                start_time=self._parse_time(str(item["StartTime"])),
                status=ClassStatus.parse(raw_status),
                trainer=trainer,
                waitlist_position=waitlist_position,
                raw_status=raw_status,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Unparseable class item: {exc}") from exc

    def _json(self, response: requests.Response, what: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise NetworkError(f"Invalid JSON in {what} response") from exc

    def get_classes(self, days: int) -> list[ClassInstance]:
        """Catalogue for today plus the next `days` days, sorted by start time."""
        payload = {"clubId": self._club_id, "categoryId": None, "daysInWeek": days}
        response = self._send("POST", WEEKLY_CLASSES_PATH, json=payload)
        if not response.ok:
            raise NetworkError(f"Failed to get classes: {response.status_code}")

        body = self._json(response, "weekly classes") or {}
        classes: list[ClassInstance] = []
        for zone in body.get("CalendarData") or []:
            for hour in zone.get("ClassesPerHour") or []:
                for day_classes in hour.get("ClassesPerDay") or []:
                    for item in day_classes or []:
                        try:
                            classes.append(self._parse_class(item))
                        except ValueError as exc:
                            logger.debug("Skipping class item: %s", exc)

        classes.sort(key=lambda item: item.start_time)
        return classes

    def get_class(self, class_id: int) -> ClassInstance:
        response = self._send("GET", CLASS_DETAILS_PATH, params={"classId": class_id})
        if response.status_code == 404:
            raise ClassNotFoundError(f"Class {class_id} does not exist")
        if not response.ok:
            raise NetworkError(f"Failed to get class details: {response.status_code}")

        details = self._json(response, "class details") or {}
        waitlist_position = None
        for user in details.get("Users") or []:
            if (user.get("User") or {}).get("IsCurrentUser"):
                waitlist_position = user.get("StandByQueueNumber")
                break
        try:
            return self._parse_class(details, waitlist_position=waitlist_position)
        except ValueError as exc:
            raise NetworkError(f"Class {class_id} details could not be parsed: {exc}") from exc

    def book(self, class_id: int, *, time_critical: bool = False) -> BookingOutcome:
        """Single booking call; never raises for remote failures."""
        payload = {"classId": class_id, "clubId": str(self._club_id)}
        try:
            response = self._send("POST", BOOK_CLASS_PATH, json=payload, time_critical=time_critical)
        except AuthError as exc:
            return PermanentFailure(class_id, str(exc), FailureCode.AUTH_FAILED)
        except NetworkError as exc:
            return TransientFailure(class_id, str(exc))

        if not response.ok:
            return classify_booking_rejection(class_id, response.status_code, response.text)

        try:
            ticket = (response.json().get("Tickets") or [None])[0] or {}
            return Booked(
                class_id=class_id,
                class_name=ticket.get("Name"),
                start_time=self._parse_time(ticket["StartTime"]) if ticket.get("StartTime") else None,
            )
        except (AttributeError, TypeError, ValueError):
            logger.debug("Booking response for class %s had no readable ticket", class_id)
            return Booked(class_id=class_id)

    def join_waitlist(self, class_id: int) -> BookingOutcome:
        """Request a place on a full class; the portal files it on the standby queue."""
        outcome = self.book(class_id)
        if isinstance(outcome, PermanentFailure) and outcome.code in {
            FailureCode.CLASS_FULL,
            FailureCode.DAILY_LIMIT,
        }:
            return PermanentFailure(class_id, outcome.reason, FailureCode.WAITLIST_CLOSED)
        joined = isinstance(outcome, Booked) or (
            isinstance(outcome, PermanentFailure) and outcome.code == FailureCode.ALREADY_BOOKED
        )
        if not joined:
            return outcome

        try:
            details = self.get_class(class_id)
        except PortalError as exc:
            logger.warning("Joined waitlist for class %s but could not read position: %s", class_id, exc)
            return Waitlisted(class_id)
        if details.status == ClassStatus.BOOKED:
            return Booked(class_id, details.name, details.start_time)
        return Waitlisted(class_id, details.waitlist_position)

    def cancel_booking(self, class_id: int) -> None:
        payload = {"classId": class_id, "clubId": str(self._club_id)}
        response = self._send("POST", CANCEL_BOOKING_PATH, json=payload)
        if response.status_code == 404:
            raise ClassNotFoundError(f"Class {class_id} does not exist")
        if not response.ok:
            raise BookingRejectedError(
                f"Cancel failed ({response.status_code}): {response.text[:200]}"
            )

    def get_my_bookings(self) -> list[ClassInstance]:
        """Booked and waitlisted classes, re-read for their waitlist positions."""
        classes = self.get_classes(self._settings.bookings_lookahead_days)
        bookings: list[ClassInstance] = []
        for item in classes:
            if item.status not in {ClassStatus.BOOKED, ClassStatus.AWAITING}:
                continue
            try:
                bookings.append(self.get_class(item.id))
            except PortalError as exc:
                logger.debug("Skipping booking %s: %s", item.id, exc)
        return bookings
