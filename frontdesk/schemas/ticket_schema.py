"""Ticket and reservation data models."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator

from frontdesk.utils import to_local_naive


class TicketState(str, Enum):
    """Processing status of a ticket."""
    AWAITING = "awaiting"
    SCHEDULED = "scheduled"


class Ticket(BaseModel):
    """
    A patient request received through intake or entered at the desk.

    ``user`` holds the owning ``User.id``. ``booking`` is the confirmed
    appointment time and is set exactly when the ticket is SCHEDULED.
    Both timestamps are stored as naive local time.
    """
    model_config = ConfigDict(validate_assignment=True)

    id: str
    user: str
    message: str = ""
    last_interaction: datetime
    booking: Optional[datetime] = None
    state: TicketState = TicketState.AWAITING

    @field_validator("last_interaction", "booking")
    @classmethod
    def _local_naive(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_local_naive(value)

    @property
    def is_reservation(self) -> bool:
        return self.state == TicketState.SCHEDULED and self.booking is not None


class Reservation(BaseModel):
    """Scheduling projection of a SCHEDULED ticket, as the desk lists it."""
    ticket_id: str
    user_id: str
    display_name: str
    booking: datetime
    message: str = ""
