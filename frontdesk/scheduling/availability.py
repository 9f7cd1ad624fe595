"""
Appointment slot rules: business hours, slot rounding and the
first-available scan.

Everything here is a pure function of the configuration, the set of
occupied booking instants and "now", so the context manager can call it
while holding its snapshot lock.
"""

import logging
from collections.abc import Collection
from datetime import datetime, timedelta

from frontdesk.config import SchedulingConfig

logger = logging.getLogger(__name__)


class ConflictError(Exception):
    """Raised when a booking collides with an existing reservation."""

    def __init__(self, booking: datetime, holder_ticket_id: str) -> None:
        super().__init__(
            f"{booking.isoformat(timespec='minutes')} is already booked by ticket {holder_ticket_id}"
        )
        self.booking = booking
        self.holder_ticket_id = holder_ticket_id


class NoAvailabilityError(Exception):
    """Raised when no free slot exists within the lookahead horizon."""


def is_within_business_hours(candidate: datetime, config: SchedulingConfig) -> bool:
    """Check the candidate falls on an open day between opening and closing time."""
    if candidate.weekday() not in config.weekdays:
        return False
    return config.opening <= candidate.time() < config.closing


def round_up_to_slot(moment: datetime, granularity_minutes: int) -> datetime:
    """Round ``moment`` up to the next slot boundary (boundaries count from midnight)."""
    midnight = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    slot = timedelta(minutes=granularity_minutes)
    elapsed = moment - midnight
    slots, remainder = divmod(elapsed, slot)
    if remainder:
        slots += 1
    return midnight + slots * slot


def next_opening(after: datetime, config: SchedulingConfig) -> datetime:
    """Return the first opening time strictly after ``after``."""
    opening = config.opening
    day = after.replace(hour=opening.hour, minute=opening.minute, second=0, microsecond=0)
    if day <= after:
        day += timedelta(days=1)
    # At most one week away since at least one weekday is open.
    for _ in range(8):
        if day.weekday() in config.weekdays:
            return day
        day += timedelta(days=1)
    raise ValueError("No open weekday configured")


def is_valid_reservation(
    candidate: datetime,
    occupied: Collection[datetime],
    now: datetime,
    config: SchedulingConfig,
) -> bool:
    """A reservation is valid when it is in the future, within hours and free."""
    if candidate <= now:
        return False
    if not is_within_business_hours(candidate, config):
        return False
    return candidate not in occupied


def find_first_available(
    occupied: Collection[datetime],
    now: datetime,
    config: SchedulingConfig,
) -> datetime:
    """
    Scan forward from ``now`` for the earliest valid reservation.

    The scan steps one slot at a time, jumps over closed periods to the next
    opening time and gives up at ``now + booking_lookahead_days``.

    Raises:
        NoAvailabilityError: If every slot up to the horizon is taken.
    """
    slot = timedelta(minutes=config.slot_granularity_minutes)
    horizon = now + timedelta(days=config.booking_lookahead_days)

    candidate = round_up_to_slot(now, config.slot_granularity_minutes)
    if candidate <= now:
        candidate += slot

    while candidate <= horizon:
        if not is_within_business_hours(candidate, config):
            candidate = next_opening(candidate, config)
            continue
        if candidate not in occupied:
            return candidate
        candidate += slot

    logger.warning(
        "No free slot within %d days of %s", config.booking_lookahead_days, now.isoformat()
    )
    raise NoAvailabilityError(
        f"No free appointment slot in the next {config.booking_lookahead_days} days"
    )
