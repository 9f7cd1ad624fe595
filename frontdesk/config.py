"""
Centralized configuration with environment variable overrides.

Clinic hours, polling cadence, storage location and mailbox settings are
all configurable here. Nothing is hardcoded in the context manager or the
intake gateway.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import time

from dotenv import load_dotenv

from frontdesk.logging_context import OriginFilter

load_dotenv()

logger = logging.getLogger(__name__)

WEEKDAY_NAMES = ("MON", "TUE", "WED", "THU", "FRI", "SAT", "SUN")

LOG_FORMAT = "%(asctime)s [%(name)s] (%(origin)s) %(levelname)s: %(message)s"


def _safe_int(env_var: str, default: str) -> int:
    """Parse an integer from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid integer for {env_var}: {raw!r}"
        ) from None


def _safe_float(env_var: str, default: str) -> float:
    """Parse a float from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return float(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid float for {env_var}: {raw!r}"
        ) from None


def _safe_bool(env_var: str, default: str) -> bool:
    """Parse a boolean flag (true/false, yes/no, 1/0) from an env var."""
    raw = os.getenv(env_var, default).strip().lower()
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"Invalid boolean for {env_var}: {raw!r}")


def parse_clock_time(value: str) -> time:
    """Parse an ``HH:MM`` string into a :class:`datetime.time`."""
    try:
        hours, minutes = value.strip().split(":")
        return time(int(hours), int(minutes))
    except (ValueError, AttributeError):
        raise ValueError(f"Invalid time of day: {value!r} (expected HH:MM)") from None


def parse_weekdays(value: str) -> frozenset[int]:
    """Parse ``MON,TUE,...`` into a set of ``datetime.weekday()`` numbers."""
    days = set()
    for token in value.split(","):
        name = token.strip().upper()[:3]
        if not name:
            continue
        if name not in WEEKDAY_NAMES:
            raise ValueError(f"Unknown weekday name: {token.strip()!r}")
        days.add(WEEKDAY_NAMES.index(name))
    return frozenset(days)


@dataclass(frozen=True)
class SchedulingConfig:
    """Polling cadence, business hours and reservation scan settings."""

    poll_interval_seconds: float = _safe_float("POLL_INTERVAL_SECONDS", "30")
    open_time: str = os.getenv("CLINIC_OPEN_TIME", "09:00")
    close_time: str = os.getenv("CLINIC_CLOSE_TIME", "18:00")
    days_of_week: str = os.getenv("CLINIC_DAYS", "MON,TUE,WED,THU,FRI")
    slot_granularity_minutes: int = _safe_int("SLOT_GRANULARITY_MINUTES", "30")
    booking_lookahead_days: int = _safe_int("BOOKING_LOOKAHEAD_DAYS", "60")
    deduplicate_intake: bool = _safe_bool("DEDUPLICATE_INTAKE", "false")

    @property
    def opening(self) -> time:
        return parse_clock_time(self.open_time)

    @property
    def closing(self) -> time:
        return parse_clock_time(self.close_time)

    @property
    def weekdays(self) -> frozenset[int]:
        return parse_weekdays(self.days_of_week)


@dataclass(frozen=True)
class StorageConfig:
    """Location of the persisted dataset."""

    data_file: str = os.getenv("DATA_FILE", "data/frontdesk.json")


@dataclass(frozen=True)
class IntakeConfig:
    """Mailbox used as the ticket intake channel."""

    imap_host: str = os.getenv("IMAP_HOST", "imap.gmail.com")
    imap_port: int = _safe_int("IMAP_PORT", "993")
    imap_user: str = os.getenv("IMAP_USER", "")
    imap_password: str = os.getenv("IMAP_PASSWORD", "")
    imap_mailbox: str = os.getenv("IMAP_MAILBOX", "INBOX")
    imap_use_ssl: bool = _safe_bool("IMAP_USE_SSL", "true")


@dataclass(frozen=True)
class AppConfig:
    """Root configuration aggregating all sub-configs."""

    scheduling: SchedulingConfig = field(default_factory=SchedulingConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    intake: IntakeConfig = field(default_factory=IntakeConfig)
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    clinic_name: str = os.getenv("CLINIC_NAME", "Clinic Front Desk")


def _validate_scheduling(scheduling: SchedulingConfig) -> None:
    if scheduling.poll_interval_seconds <= 0:
        raise ValueError(
            f"POLL_INTERVAL_SECONDS must be > 0, got {scheduling.poll_interval_seconds}"
        )
    if scheduling.slot_granularity_minutes < 1:
        raise ValueError(
            "SLOT_GRANULARITY_MINUTES must be >= 1, "
            f"got {scheduling.slot_granularity_minutes}"
        )
    if (24 * 60) % scheduling.slot_granularity_minutes != 0:
        raise ValueError(
            "SLOT_GRANULARITY_MINUTES must divide a day evenly, "
            f"got {scheduling.slot_granularity_minutes}"
        )
    if scheduling.booking_lookahead_days < 1:
        raise ValueError(
            f"BOOKING_LOOKAHEAD_DAYS must be >= 1, got {scheduling.booking_lookahead_days}"
        )
    if scheduling.opening >= scheduling.closing:
        raise ValueError(
            "CLINIC_OPEN_TIME must be before CLINIC_CLOSE_TIME, "
            f"got {scheduling.open_time} - {scheduling.close_time}"
        )
    opening_minutes = scheduling.opening.hour * 60 + scheduling.opening.minute
    if opening_minutes % scheduling.slot_granularity_minutes:
        raise ValueError(
            f"CLINIC_OPEN_TIME {scheduling.open_time} must fall on a "
            f"{scheduling.slot_granularity_minutes}-minute slot boundary"
        )
    if not scheduling.weekdays:
        raise ValueError("CLINIC_DAYS must name at least one weekday")


def _validate_config(config: AppConfig) -> None:
    """Validate configuration values are within acceptable ranges."""
    _validate_scheduling(config.scheduling)

    if not config.storage.data_file.strip():
        raise ValueError("DATA_FILE must not be empty")

    if not 0 < config.intake.imap_port < 65536:
        raise ValueError(f"IMAP_PORT must be between 1 and 65535, got {config.intake.imap_port}")


def load_config() -> AppConfig:
    """Load and validate application configuration."""
    config = AppConfig()
    _validate_config(config)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, OriginFilter) for f in handler.filters):
            handler.addFilter(OriginFilter())
    logger.info("Configuration loaded for '%s'", config.clinic_name)
    return config


# Singleton instance
settings = load_config()
