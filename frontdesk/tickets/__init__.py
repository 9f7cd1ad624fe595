from frontdesk.tickets.state_machine import (
    InvalidTransitionError,
    TicketStateMachine,
    TicketTrigger,
    resolve_state,
    state_for_booking,
)

__all__ = [
    "InvalidTransitionError",
    "TicketStateMachine",
    "TicketTrigger",
    "resolve_state",
    "state_for_booking",
]
