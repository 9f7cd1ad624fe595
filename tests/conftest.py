"""Shared test fixtures and helpers."""

import threading
from datetime import datetime
from typing import Optional

import pytest

from frontdesk.config import SchedulingConfig
from frontdesk.context_manager import ContextManager
from frontdesk.intake.gateway import IntakeError
from frontdesk.schemas.intake_schema import NewTicketMessage
from frontdesk.schemas.patient_schema import User
from frontdesk.schemas.ticket_schema import Ticket, TicketState
from frontdesk.store.data_store import JsonDataStore, StorageError

# Monday 4 March 2024, before opening
NOW = datetime(2024, 3, 4, 8, 10)


def make_user(
    user_id: str = "U1",
    first_name: str = "Maria",
    last_name: str = "Rossi",
    email: str = "maria.rossi@example.com",
    phone: str = "",
) -> User:
    return User(id=user_id, first_name=first_name, last_name=last_name, email=email, phone=phone)


def make_ticket(
    ticket_id: str = "T1",
    user: str = "U1",
    message: str = "I need an appointment",
    last_interaction: datetime = datetime(2024, 3, 1, 9, 0),
    booking: Optional[datetime] = None,
    state: Optional[TicketState] = None,
) -> Ticket:
    if state is None:
        state = TicketState.SCHEDULED if booking else TicketState.AWAITING
    return Ticket(
        id=ticket_id,
        user=user,
        message=message,
        last_interaction=last_interaction,
        booking=booking,
        state=state,
    )


def make_message(
    sender_email: str = "new.patient@example.com",
    sender_name: str = "Luca Bianchi",
    body: str = "Hello, I would like a visit.",
    received_at: Optional[datetime] = datetime(2024, 3, 4, 7, 45),
) -> NewTicketMessage:
    return NewTicketMessage(
        sender_email=sender_email,
        sender_name=sender_name,
        body=body,
        received_at=received_at,
    )


class ScriptedGateway:
    """Intake gateway returning one scripted batch (or error) per poll."""

    def __init__(self, batches=None):
        self.batches = list(batches or [])
        self.calls = 0
        self.polled = threading.Event()

    def push(self, batch) -> None:
        self.batches.append(batch)

    def poll(self):
        self.calls += 1
        self.polled.set()
        if not self.batches:
            return []
        batch = self.batches.pop(0)
        if isinstance(batch, Exception):
            raise batch
        return list(batch)


class CountingStore:
    """In-memory store that records every load and save."""

    def __init__(self, users=None, tickets=None):
        self.users = list(users or [])
        self.tickets = list(tickets or [])
        self.loads = 0
        self.saves = 0
        self.fail_saves = False
        self.fail_loads = False

    def load(self):
        self.loads += 1
        if self.fail_loads:
            raise StorageError("disk unreadable")
        return list(self.users), list(self.tickets)

    def save(self, users, tickets):
        if self.fail_saves:
            raise StorageError("disk full")
        self.saves += 1
        self.users = list(users)
        self.tickets = list(tickets)


@pytest.fixture
def scheduling():
    return SchedulingConfig(
        poll_interval_seconds=3600,
        open_time="09:00",
        close_time="18:00",
        days_of_week="MON,TUE,WED,THU,FRI",
        slot_granularity_minutes=30,
        booking_lookahead_days=14,
        deduplicate_intake=False,
    )


@pytest.fixture
def gateway():
    return ScriptedGateway()


@pytest.fixture
def store():
    return CountingStore(users=[make_user()], tickets=[make_ticket()])


@pytest.fixture
def manager(store, gateway, scheduling):
    """A loaded manager without a background thread."""
    ctx = ContextManager(
        store, gateway, scheduling, clock=lambda: NOW, run_in_background=False
    )
    ctx.load_data()
    return ctx


@pytest.fixture
def json_store(tmp_path):
    return JsonDataStore(tmp_path / "data" / "frontdesk.json")


@pytest.fixture
def intake_error():
    return IntakeError("connection refused")
