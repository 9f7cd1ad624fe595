"""
Context manager: the single owner of the front-desk snapshot.

Holds every patient and ticket in memory, persists each change through the
data store before anyone is told about it, and runs the background intake
poller that turns incoming e-mails into AWAITING tickets.

One re-entrant lock guards the snapshot, the persistence call and the task
state flag, so a background merge and a desk edit can never interleave.
Consumers read copies and learn about changes through subscriptions.

Usage:
    manager = ContextManager(JsonDataStore("data/frontdesk.json"), gateway)
    manager.subscribe_updates(refresh_lists)
    manager.load_data()
    manager.start_task()
"""

import threading
import uuid
from contextlib import contextmanager
from datetime import date, datetime
from enum import Enum
from typing import Callable, Iterator, Optional

from frontdesk.config import AppConfig, SchedulingConfig, settings
from frontdesk.events import EventChannel, Subscription
from frontdesk.intake.gateway import ImapIntakeGateway, IntakeError, TicketIntakeGateway
from frontdesk.logging_context import INTAKE, get_context_logger, set_origin
from frontdesk.scheduling.availability import (
    ConflictError,
    find_first_available,
    is_valid_reservation,
)
from frontdesk.schemas.intake_schema import NewTicketMessage
from frontdesk.schemas.patient_schema import User
from frontdesk.schemas.ticket_schema import Reservation, Ticket, TicketState
from frontdesk.store.data_store import DataStore, JsonDataStore, StorageError
from frontdesk.tickets.state_machine import resolve_state
from frontdesk.utils import normalize_email, split_display_name, to_local_naive

logger = get_context_logger(__name__)


class ContextNotLoadedError(RuntimeError):
    """Raised when the context is used before ``load_data()``."""


class UnknownUserError(KeyError):
    """Raised when a ticket references a user that is not stored."""


class TicketNotFoundError(KeyError):
    """Raised when selecting a ticket that does not exist."""


class TaskState(str, Enum):
    """Background synchronization status."""
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"


def new_user_id() -> str:
    return f"US-{uuid.uuid4().hex[:8].upper()}"


def new_ticket_id() -> str:
    return f"TK-{uuid.uuid4().hex[:8].upper()}"


def _check_integrity(users: list[User], tickets: list[Ticket]) -> None:
    """Reject a loaded dataset that breaks the snapshot invariants."""
    user_ids: set[str] = set()
    for user in users:
        if user.id in user_ids:
            raise StorageError(f"Duplicate user id {user.id!r}")
        user_ids.add(user.id)

    ticket_ids: set[str] = set()
    bookings: dict[datetime, str] = {}
    for ticket in tickets:
        if ticket.id in ticket_ids:
            raise StorageError(f"Duplicate ticket id {ticket.id!r}")
        ticket_ids.add(ticket.id)
        if ticket.user not in user_ids:
            raise StorageError(f"Ticket {ticket.id!r} references unknown user {ticket.user!r}")
        if ticket.is_reservation:
            holder = bookings.setdefault(ticket.booking, ticket.id)
            if holder != ticket.id:
                raise StorageError(
                    f"Tickets {holder!r} and {ticket.id!r} share booking {ticket.booking}"
                )


class IntakePoller:
    """
    Background thread calling ``cycle`` every ``interval_seconds``.

    Waiting happens on an Event, so ``wake()`` triggers an immediate cycle
    and ``stop()`` returns without sitting out the interval.
    """

    def __init__(
        self,
        cycle: Callable[[], object],
        interval_seconds: float,
        name: str = "intake-poller",
    ) -> None:
        self.name = name
        self._cycle = cycle
        self._interval = interval_seconds
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._wake = threading.Event()
        self._stop = threading.Event()

    def start(self) -> None:
        """Start the thread, or revive and wake the one still in its loop.

        A thread whose ``stop()`` join timed out is still inside a cycle; it
        keeps running instead of exiting once that cycle returns.
        """
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                self._stop.clear()
                self._wake.set()
                return
            self._stop.clear()
            self._wake.clear()
            self._thread = threading.Thread(target=self._loop, daemon=True, name=self.name)
            self._thread.start()
        logger.info("Poller '%s' started (interval=%ss)", self.name, self._interval)

    def wake(self) -> None:
        self._wake.set()

    def stop(self, join_timeout_seconds: float = 5.0) -> None:
        with self._lock:
            self._stop.set()
            self._wake.set()
            thread = self._thread

        if thread is None:
            return
        thread.join(timeout=join_timeout_seconds)
        logger.info("Poller '%s' stopped (joined=%s)", self.name, not thread.is_alive())

    def is_alive(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def _should_exit(self) -> bool:
        # Decided under the lock so start() never revives a thread on its way out.
        with self._lock:
            if not self._stop.is_set():
                return False
            if self._thread is threading.current_thread():
                self._thread = None
            return True

    def _loop(self) -> None:
        set_origin(INTAKE)
        while not self._should_exit():
            self._wake.clear()
            try:
                self._cycle()
            except Exception:
                logger.exception("Poller '%s' cycle failed", self.name)
            self._wake.wait(self._interval)


class ContextManager:
    """
    Owns the patient/ticket snapshot, its persistence and intake polling.

    Every mutation runs mutate-then-persist under the snapshot lock and only
    then notifies update subscribers. Storage failures end the session: they
    are reported once on the storage channel and every later mutation raises
    ``StorageError`` straight away. Intake failures are reported per poll and
    the poller carries on at its normal interval.
    """

    def __init__(
        self,
        store: DataStore,
        gateway: TicketIntakeGateway,
        config: Optional[SchedulingConfig] = None,
        clock: Callable[[], datetime] = datetime.now,
        run_in_background: bool = True,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._config = config or settings.scheduling
        self._clock = clock

        self._lock = threading.RLock()
        self._users: dict[str, User] = {}
        self._tickets: dict[str, Ticket] = {}
        self._loaded = False
        self._failure: Optional[StorageError] = None

        self._task_state = TaskState.IDLE
        self._pending: list[NewTicketMessage] = []
        self._selected: Optional[str] = None
        self._state_before_edit: Optional[TaskState] = None

        self._updates: EventChannel[Callable[[], None]] = EventChannel("updates")
        self._storage_errors: EventChannel[Callable[[Exception], None]] = EventChannel(
            "storage_errors"
        )
        self._intake_errors: EventChannel[Callable[[Exception], None]] = EventChannel(
            "intake_errors"
        )

        self._poller = (
            IntakePoller(self._background_cycle, self._config.poll_interval_seconds)
            if run_in_background
            else None
        )

    @classmethod
    def from_config(cls, config: AppConfig, **kwargs) -> "ContextManager":
        """Build a manager backed by the configured data file and mailbox."""
        return cls(
            JsonDataStore(config.storage.data_file),
            ImapIntakeGateway(config.intake),
            config.scheduling,
            **kwargs,
        )

    def __enter__(self) -> "ContextManager":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe_updates(self, callback: Callable[[], None]) -> Subscription:
        """Called with no arguments after every committed change."""
        return self._updates.subscribe(callback)

    def subscribe_storage_errors(self, callback: Callable[[Exception], None]) -> Subscription:
        return self._storage_errors.subscribe(callback)

    def subscribe_intake_errors(self, callback: Callable[[Exception], None]) -> Subscription:
        return self._intake_errors.subscribe(callback)

    def view(self) -> "ContextView":
        """Return a read-and-subscribe facade for presentation code."""
        return ContextView(self)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def task_state(self) -> TaskState:
        with self._lock:
            return self._task_state

    @property
    def selected_ticket(self) -> Optional[str]:
        with self._lock:
            return self._selected

    @property
    def failed(self) -> bool:
        with self._lock:
            return self._failure is not None

    def load_data(self) -> None:
        """Load the full dataset from the store. Must precede every other call."""
        try:
            with self._lock:
                users, tickets = self._store.load()
                _check_integrity(users, tickets)
                self._users = {user.id: user for user in users}
                self._tickets = {ticket.id: ticket for ticket in tickets}
                self._loaded = True
        except StorageError as exc:
            self._storage_failure(exc)
            raise
        logger.info("Loaded %d users and %d tickets", len(users), len(tickets))

    def start_task(self) -> None:
        """Start or resume intake polling, merging anything held back while paused."""
        try:
            with self._lock:
                self._require_loaded()
                if self._failure is not None:
                    logger.warning("Not starting intake: storage failed earlier")
                    return
                if self._task_state != TaskState.RUNNING:
                    logger.info("Intake task %s", "resumed" if self._pending else "started")
                self._task_state = TaskState.RUNNING
                ingested = self._merge_locked([]) if self._pending else 0
        except StorageError as exc:
            self._storage_failure(exc)
            return

        if ingested:
            self._notify()
        if self._poller is not None:
            self._poller.start()
            self._poller.wake()

    def stop_task(self) -> None:
        """Pause polling. A poll already in flight is held back until ``start_task``."""
        with self._lock:
            if self._task_state != TaskState.PAUSED:
                logger.info("Intake task paused")
            self._task_state = TaskState.PAUSED

    def close(self) -> None:
        """Stop the background thread and merge any messages held back while paused.

        Held-back messages are already marked seen in the mailbox, so they
        are committed here rather than dropped with the session.
        """
        if self._poller is not None:
            self._poller.stop()

        try:
            with self._lock:
                if not self._pending:
                    return
                if not self._loaded or self._failure is not None:
                    logger.warning(
                        "Discarding %d held-back messages: storage unavailable",
                        len(self._pending),
                    )
                    self._pending = []
                    return
                ingested = self._merge_locked([])
        except StorageError as exc:
            self._storage_failure(exc)
            return

        if ingested:
            logger.info("Merged %d held-back tickets on close", ingested)
            self._notify()

    def poll_once(self) -> int:
        """Run one synchronization cycle in the calling thread.

        Returns the number of tickets ingested. Nothing is polled while the
        task is paused or after a storage failure.
        """
        with self._lock:
            self._require_loaded()
            if self._failure is not None or self._task_state == TaskState.PAUSED:
                return 0

        try:
            messages = list(self._gateway.poll())
        except IntakeError as exc:
            logger.error("Intake poll failed: %s", exc)
            self._intake_errors.emit(exc)
            return 0

        try:
            with self._lock:
                if self._failure is not None:
                    return 0
                if self._task_state == TaskState.PAUSED:
                    if messages:
                        self._pending.extend(messages)
                        logger.info("Holding back %d messages while paused", len(messages))
                    return 0
                ingested = self._merge_locked(messages)
        except StorageError as exc:
            self._storage_failure(exc)
            return 0

        if ingested:
            logger.info("Ingested %d new tickets", ingested)
            self._notify()
        return ingested

    def _background_cycle(self) -> None:
        with self._lock:
            if self._task_state != TaskState.RUNNING or self._failure is not None:
                return
        self.poll_once()

    # ------------------------------------------------------------------
    # Selection (editing sessions)
    # ------------------------------------------------------------------

    def select_ticket(self, ticket_id: str) -> Ticket:
        """Start editing ``ticket_id``; polling pauses until the edit ends."""
        with self._lock:
            self._require_loaded()
            ticket = self._tickets.get(ticket_id)
            if ticket is None:
                raise TicketNotFoundError(ticket_id)
            if self._state_before_edit is None:
                self._state_before_edit = self._task_state
            self._selected = ticket_id
            self.stop_task()
        logger.debug("Selected ticket %s", ticket_id)
        return ticket.model_copy()

    def clear_selection(self) -> None:
        """End the editing session without saving."""
        with self._lock:
            resume = self._clear_selection_locked()
        if resume:
            self.start_task()

    def reload(self) -> None:
        """Drop the selection and resume polling."""
        with self._lock:
            self._clear_selection_locked()
        self.start_task()

    def _clear_selection_locked(self) -> bool:
        self._selected = None
        previous, self._state_before_edit = self._state_before_edit, None
        if previous is None:
            return False
        if previous == TaskState.RUNNING:
            return True
        self._task_state = previous
        return False

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_user(self, user_id: str) -> Optional[User]:
        with self._lock:
            self._require_loaded()
            user = self._users.get(user_id)
            return user.model_copy() if user is not None else None

    def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        with self._lock:
            self._require_loaded()
            ticket = self._tickets.get(ticket_id)
            return ticket.model_copy() if ticket is not None else None

    def get_awaiting_tickets(self) -> list[Ticket]:
        """AWAITING tickets, oldest interaction first."""
        with self._lock:
            self._require_loaded()
            awaiting = [t for t in self._tickets.values() if t.state == TicketState.AWAITING]
        awaiting.sort(key=lambda t: (t.last_interaction, t.id))
        return [t.model_copy() for t in awaiting]

    def get_reservations_for_date(self, day: date) -> list[Ticket]:
        """SCHEDULED tickets booked on ``day``, earliest first."""
        with self._lock:
            self._require_loaded()
            booked = [
                t for t in self._tickets.values()
                if t.is_reservation and t.booking.date() == day
            ]
        booked.sort(key=lambda t: t.booking)
        return [t.model_copy() for t in booked]

    def list_reservations(self, day: date) -> list[Reservation]:
        """Reservations on ``day`` with the patient's display name."""
        with self._lock:
            tickets = self.get_reservations_for_date(day)
            return [
                Reservation(
                    ticket_id=t.id,
                    user_id=t.user,
                    display_name=self._users[t.user].display_name,
                    booking=t.booking,
                    message=t.message,
                )
                for t in tickets
            ]

    def is_valid_reservation(
        self, candidate: datetime, ignore_ticket: Optional[str] = None
    ) -> bool:
        """True when ``candidate`` is in the future, within hours and unoccupied.

        ``ignore_ticket`` leaves that ticket's own booking out of the
        occupancy check, for re-confirming a ticket at its current time.
        """
        with self._lock:
            self._require_loaded()
            occupied = self._occupied(exclude=ignore_ticket)
        return is_valid_reservation(candidate, occupied, self._clock(), self._config)

    def first_available_reservation(self) -> datetime:
        """Earliest free slot from now. Raises ``NoAvailabilityError``."""
        with self._lock:
            self._require_loaded()
            occupied = self._occupied()
        return find_first_available(occupied, self._clock(), self._config)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def set_user(self, user: User) -> bool:
        """Insert or replace a user. Returns True when the user is new."""
        with self._writing():
            created = user.id not in self._users
            users = dict(self._users)
            users[user.id] = user.model_copy()
            self._persist(users, self._tickets)
        logger.info("%s user %s", "Created" if created else "Updated", user.id)
        self._notify()
        return created

    def set_ticket(self, ticket: Ticket) -> Ticket:
        """
        Insert or replace a ticket.

        The stored state follows the booking: a booking confirms the ticket
        (SCHEDULED), no booking re-opens it (AWAITING). Saving the ticket
        being edited ends the editing session.

        Raises:
            ConflictError: If another ticket already holds the booking.
            UnknownUserError: If ``ticket.user`` is not a stored user.
        """
        with self._writing():
            if ticket.user not in self._users:
                raise UnknownUserError(ticket.user)

            current = self._tickets.get(ticket.id)
            booking = to_local_naive(ticket.booking)
            state = resolve_state(current.state if current else None, booking)

            if booking is not None:
                holder = self._booking_holder(booking, exclude=ticket.id)
                if holder is not None:
                    logger.warning(
                        "Booking %s for ticket %s conflicts with ticket %s",
                        booking, ticket.id, holder,
                    )
                    raise ConflictError(booking, holder)

            saved = ticket.model_copy(update={
                "state": state,
                "booking": booking,
                "last_interaction": to_local_naive(ticket.last_interaction),
            })
            tickets = dict(self._tickets)
            tickets[saved.id] = saved
            self._persist(self._users, tickets)
            resume = self._selected == ticket.id and self._clear_selection_locked()

        logger.info("Saved ticket %s (%s)", saved.id, saved.state.value)
        self._notify()
        if resume:
            self.start_task()
        return saved.model_copy()

    def delete_ticket(self, ticket_id: str) -> bool:
        """Remove a ticket. Returns False, without notifying, when it does not exist."""
        with self._writing():
            if ticket_id not in self._tickets:
                logger.debug("Delete of unknown ticket %s ignored", ticket_id)
                return False
            tickets = dict(self._tickets)
            del tickets[ticket_id]
            self._persist(self._users, tickets)
            resume = self._selected == ticket_id and self._clear_selection_locked()

        logger.info("Deleted ticket %s", ticket_id)
        self._notify()
        if resume:
            self.start_task()
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_loaded(self) -> None:
        if not self._loaded:
            raise ContextNotLoadedError("load_data() must be called first")

    @contextmanager
    def _writing(self) -> Iterator[None]:
        """Hold the lock for a mutation; report storage failures after releasing it."""
        try:
            with self._lock:
                self._require_loaded()
                if self._failure is not None:
                    raise StorageError("Storage failed earlier in this session") from self._failure
                yield
        except StorageError as exc:
            self._storage_failure(exc)
            raise

    def _persist(self, users: dict[str, User], tickets: dict[str, Ticket]) -> None:
        # Caller holds the lock; the snapshot only changes once the save succeeded.
        self._store.save(list(users.values()), list(tickets.values()))
        self._users = users
        self._tickets = tickets

    def _storage_failure(self, exc: StorageError) -> None:
        with self._lock:
            if self._failure is not None:
                return
            self._failure = exc
            self._task_state = TaskState.IDLE
        logger.error("Storage failure, session cannot continue: %s", exc)
        self._storage_errors.emit(exc)

    def _notify(self) -> None:
        self._updates.emit()

    def _occupied(self, exclude: Optional[str] = None) -> set[datetime]:
        return {
            t.booking for t in self._tickets.values()
            if t.is_reservation and t.id != exclude
        }

    def _booking_holder(self, booking: datetime, exclude: str) -> Optional[str]:
        for t in self._tickets.values():
            if t.id != exclude and t.is_reservation and t.booking == booking:
                return t.id
        return None

    def _merge_locked(self, messages: list[NewTicketMessage]) -> int:
        """Turn held-back plus new messages into AWAITING tickets and persist them."""
        batch, self._pending = self._pending + messages, []
        if not batch:
            return 0

        users = dict(self._users)
        tickets = dict(self._tickets)
        by_email = {u.email: u.id for u in users.values() if u.email}
        ingested = 0

        for message in batch:
            address = normalize_email(message.sender_email)
            user_id = by_email.get(address)
            if user_id is None:
                first_name, last_name = split_display_name(message.sender_name, address)
                user = User(
                    id=new_user_id(), first_name=first_name, last_name=last_name, email=address
                )
                users[user.id] = user
                by_email[address] = user.id
                user_id = user.id
                logger.info("New patient %s from %s", user.id, address)
            elif self._config.deduplicate_intake and self._is_duplicate(
                tickets, user_id, message.body
            ):
                logger.info("Skipping duplicate message from %s", address)
                continue

            ticket = Ticket(
                id=new_ticket_id(),
                user=user_id,
                message=message.body,
                last_interaction=message.received_at or self._clock(),
                state=TicketState.AWAITING,
            )
            tickets[ticket.id] = ticket
            ingested += 1
            logger.debug("Ticket %s created for %s", ticket.id, user_id)

        if ingested:
            self._persist(users, tickets)
        return ingested

    @staticmethod
    def _is_duplicate(tickets: dict[str, Ticket], user_id: str, body: str) -> bool:
        text = body.strip()
        return any(
            t.user == user_id and t.state == TicketState.AWAITING and t.message.strip() == text
            for t in tickets.values()
        )


class ContextView:
    """
    What presentation code gets: queries and subscriptions.

    Mutations stay on ``ContextManager`` so nothing can skip the
    mutate-persist-notify sequence.
    """

    def __init__(self, manager: ContextManager) -> None:
        self._manager = manager

    @property
    def selected_ticket(self) -> Optional[str]:
        return self._manager.selected_ticket

    def get_user(self, user_id: str) -> Optional[User]:
        return self._manager.get_user(user_id)

    def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        return self._manager.get_ticket(ticket_id)

    def get_awaiting_tickets(self) -> list[Ticket]:
        return self._manager.get_awaiting_tickets()

    def get_reservations_for_date(self, day: date) -> list[Ticket]:
        return self._manager.get_reservations_for_date(day)

    def list_reservations(self, day: date) -> list[Reservation]:
        return self._manager.list_reservations(day)

    def is_valid_reservation(
        self, candidate: datetime, ignore_ticket: Optional[str] = None
    ) -> bool:
        return self._manager.is_valid_reservation(candidate, ignore_ticket)

    def first_available_reservation(self) -> datetime:
        return self._manager.first_available_reservation()

    def subscribe_updates(self, callback: Callable[[], None]) -> Subscription:
        return self._manager.subscribe_updates(callback)

    def subscribe_storage_errors(self, callback: Callable[[Exception], None]) -> Subscription:
        return self._manager.subscribe_storage_errors(callback)

    def subscribe_intake_errors(self, callback: Callable[[Exception], None]) -> Subscription:
        return self._manager.subscribe_intake_errors(callback)
