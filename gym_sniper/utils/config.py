"""Runtime settings and portal configuration loading."""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from gym_sniper.domain.matching import build_schedule_target, parse_weekday
from gym_sniper.domain.models import ScheduleTarget


_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
_ENV_PREFIX = "GYM_SNIPER_"
SNIPE_STRATEGIES = ("precise", "polling")


class ConfigError(Exception):
    """Raised when the config file or a GYM_SNIPER_* setting is missing or invalid."""


def _env(name: str, default: str) -> str:
    return os.getenv(f"{_ENV_PREFIX}{name}", default)


def _env_float(name: str, default: float) -> float:
    raw = _env(name, str(default))
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{_ENV_PREFIX}{name} must be a number, got '{raw}'") from exc


def _env_int(name: str, default: int) -> int:
    raw = _env(name, str(default))
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{_ENV_PREFIX}{name} must be an integer, got '{raw}'") from exc


@dataclass(frozen=True)
class Settings:
    """Process-wide tuning knobs. Read once from the environment."""

    app_name: str = "gym-sniper"
    app_version: str = "0.1.0"
    log_level: str = "INFO"

    config_path: Path = Path("config.toml")
    queue_path: Path = Path("snipes.json")

    booking_window_offset: timedelta = timedelta(days=7, hours=2)

    request_timeout_seconds: float = 5.0
    request_delay_min_seconds: float = 0.2
    request_delay_max_seconds: float = 0.5
    critical_request_delay_min_seconds: float = 0.01
    critical_request_delay_max_seconds: float = 0.06

    snipe_strategy: str = "precise"
    snipe_max_attempts: int = 10
    snipe_retry_delay_min_seconds: float = 0.2
    snipe_retry_delay_max_seconds: float = 0.3
    snipe_max_elapsed_seconds: float = 600.0
    not_ready_recheck_seconds: float = 0.2
    transient_retry_delay_min_seconds: float = 0.2
    transient_retry_delay_max_seconds: float = 0.5

    precise_wake_lead_seconds: float = 60.0
    sleep_chunk_seconds: float = 3600.0
    poll_jitter_max_seconds: float = 1.0
    polling_refresh_lead_seconds: float = 600.0
    session_max_age_seconds: float = 1800.0
    refresh_max_attempts: int = 5
    refresh_backoff_initial_seconds: float = 1.0
    fetch_max_attempts: int = 3

    queue_activation_lead_seconds: float = 300.0
    queue_retention_days: int = 7
    queue_lock_timeout_seconds: float = 10.0
    daemon_poll_seconds: float = 60.0

    schedule_tick_seconds: float = 60.0
    schedule_retry_window_seconds: float = 300.0
    schedule_catalogue_days: int = 8
    bookings_lookahead_days: int = 14

    api_host: str = "127.0.0.1"
    api_port: int = 8000
    api_token: Optional[str] = None

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self.queue_retention_days)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings from GYM_SNIPER_* environment variables.

    Malformed values raise `ConfigError`; nothing is cached until they parse.
    """
    strategy = _env("SNIPE_STRATEGY", "precise").lower()
    if strategy not in SNIPE_STRATEGIES:
        raise ConfigError(
            f"{_ENV_PREFIX}SNIPE_STRATEGY must be 'precise' or 'polling', got '{strategy}'"
        )
    return Settings(
        log_level=_env("LOG_LEVEL", "INFO"),
        config_path=Path(_env("CONFIG_PATH", "config.toml")),
        queue_path=Path(_env("QUEUE_PATH", "snipes.json")),
        request_timeout_seconds=_env_float("REQUEST_TIMEOUT_SECONDS", 5.0),
        snipe_strategy=strategy,
        snipe_max_attempts=_env_int("SNIPE_MAX_ATTEMPTS", 10),
        queue_activation_lead_seconds=_env_float("QUEUE_ACTIVATION_LEAD_SECONDS", 300.0),
        schedule_tick_seconds=_env_float("SCHEDULE_TICK_SECONDS", 60.0),
        api_host=_env("API_HOST", "127.0.0.1"),
        api_port=_env_int("API_PORT", 8000),
        api_token=os.getenv(f"{_ENV_PREFIX}API_TOKEN") or None,
    )


class GymSection(BaseModel):
    model_config = ConfigDict(frozen=True)

    base_url: str = Field(min_length=1)
    club_id: int = Field(gt=0)
    timezone: str = "UTC"

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("base_url must be an http(s) URL")
        return value.rstrip("/")

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone '{value}'") from exc
        return value


class CredentialsSection(BaseModel):
    model_config = ConfigDict(frozen=True)

    email: str = Field(min_length=1)
    password: str = Field(min_length=1)


class TargetSection(BaseModel):
    model_config = ConfigDict(frozen=True)

    class_name: str = Field(min_length=1)
    days: Optional[list[str]] = None
    time: Optional[str] = None

    @field_validator("days")
    @classmethod
    def validate_days(cls, value: Optional[list[str]]) -> Optional[list[str]]:
        if value is None:
            return None
        for day in value:
            parse_weekday(day)
        return value

    @field_validator("time")
    @classmethod
    def validate_time(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not _TIME_PATTERN.match(value):
            raise ValueError("time must follow HH:MM format")
        return value

    def to_target(self) -> ScheduleTarget:
        return build_schedule_target(self.class_name, self.days, self.time)


class EmailSection(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    smtp_server: str = Field(min_length=1)
    smtp_port: int = Field(default=587, gt=0)
    username: str
    password: str
    sender: str = Field(alias="from", min_length=1)
    recipient: str = Field(alias="to", min_length=1)


class SniperSection(BaseModel):
    model_config = ConfigDict(frozen=True)

    strategy: Optional[str] = None

    @field_validator("strategy")
    @classmethod
    def validate_strategy(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        normalized = value.lower()
        if normalized not in SNIPE_STRATEGIES:
            raise ValueError("strategy must be 'precise' or 'polling'")
        return normalized


class PortalConfig(BaseModel):
    """Immutable snapshot of the user's config file."""

    model_config = ConfigDict(frozen=True)

    gym: GymSection
    credentials: CredentialsSection
    targets: list[TargetSection] = Field(default_factory=list)
    email: Optional[EmailSection] = None
    sniper: SniperSection = Field(default_factory=SniperSection)

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.gym.timezone)

    def schedule_targets(self) -> list[ScheduleTarget]:
        return [target.to_target() for target in self.targets]


def load_portal_config(path: Path | str) -> PortalConfig:
    """Read and validate the TOML config file."""
    config_path = Path(path)
    try:
        with config_path.open("rb") as handle:
            raw = tomllib.load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file '{config_path}' does not exist") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Config file '{config_path}' is not valid TOML: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Failed to read config file '{config_path}': {exc}") from exc

    try:
        return PortalConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config file '{config_path}': {exc}") from exc
