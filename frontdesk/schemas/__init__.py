from frontdesk.schemas.intake_schema import NewTicketMessage
from frontdesk.schemas.patient_schema import User
from frontdesk.schemas.ticket_schema import Reservation, Ticket, TicketState

__all__ = [
    "NewTicketMessage",
    "Reservation",
    "Ticket",
    "TicketState",
    "User",
]
