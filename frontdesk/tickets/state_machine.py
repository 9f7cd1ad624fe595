"""
Finite state machine for the ticket lifecycle.

A ticket is either AWAITING (received, not yet turned into an appointment)
or SCHEDULED (holds a confirmed booking). The only transitions are the two
edges of that pair; every state change goes through the table below.

Usage:
    sm = TicketStateMachine(TicketState.AWAITING)
    sm.transition(TicketTrigger.BOOKING_CONFIRMED)
    assert sm.current_state == TicketState.SCHEDULED
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from frontdesk.schemas.ticket_schema import TicketState

logger = logging.getLogger(__name__)


class TicketTrigger(str, Enum):
    """Events that move a ticket between states."""
    BOOKING_CONFIRMED = "booking_confirmed"
    BOOKING_CLEARED = "booking_cleared"


@dataclass
class Transition:
    """A single valid state transition."""
    from_state: TicketState
    to_state: TicketState
    trigger: TicketTrigger


class InvalidTransitionError(Exception):
    """Raised when a transition is not valid from the current state."""


class TicketStateMachine:
    """Transition table for a single ticket."""

    TRANSITIONS: list[Transition] = [
        Transition(TicketState.AWAITING, TicketState.SCHEDULED,
                   TicketTrigger.BOOKING_CONFIRMED),
        Transition(TicketState.SCHEDULED, TicketState.AWAITING,
                   TicketTrigger.BOOKING_CLEARED),
    ]

    def __init__(self, initial: TicketState = TicketState.AWAITING) -> None:
        self._current_state = initial

    @property
    def current_state(self) -> TicketState:
        return self._current_state

    def transition(self, trigger: TicketTrigger) -> TicketState:
        """
        Execute a state transition.

        Raises:
            InvalidTransitionError: If no valid transition exists.
        """
        for t in self.TRANSITIONS:
            if t.from_state == self._current_state and t.trigger == trigger:
                old_state = self._current_state
                self._current_state = t.to_state
                logger.debug(
                    "Ticket transition: %s -> %s (trigger: %s)",
                    old_state.value, self._current_state.value, trigger.value,
                )
                return self._current_state

        valid = [t.value for t in self.get_valid_triggers()]
        raise InvalidTransitionError(
            f"No valid transition from '{self._current_state.value}' "
            f"with trigger '{trigger.value}'. Valid triggers: {valid}"
        )

    def get_valid_triggers(self) -> list[TicketTrigger]:
        """Return all triggers valid from the current state."""
        return [t.trigger for t in self.TRANSITIONS if t.from_state == self._current_state]


def state_for_booking(booking: Optional[datetime]) -> TicketState:
    """A ticket with a booking is SCHEDULED; clearing the booking re-opens it."""
    return TicketState.SCHEDULED if booking is not None else TicketState.AWAITING


def resolve_state(current: Optional[TicketState], booking: Optional[datetime]) -> TicketState:
    """
    Work out the state a saved ticket ends up in.

    ``current`` is the stored state, or None for a ticket that does not exist
    yet. Editing fields other than the booking leaves the state alone.
    """
    target = state_for_booking(booking)
    if current is None or current == target:
        return target

    trigger = (
        TicketTrigger.BOOKING_CONFIRMED
        if target == TicketState.SCHEDULED
        else TicketTrigger.BOOKING_CLEARED
    )
    return TicketStateMachine(current).transition(trigger)
