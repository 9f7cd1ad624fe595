from frontdesk.scheduling.availability import (
    ConflictError,
    NoAvailabilityError,
    find_first_available,
    is_valid_reservation,
    is_within_business_hours,
    next_opening,
    round_up_to_slot,
)

__all__ = [
    "ConflictError",
    "NoAvailabilityError",
    "find_first_available",
    "is_valid_reservation",
    "is_within_business_hours",
    "next_opening",
    "round_up_to_slot",
]
