"""
Headless front-desk runner.

Loads the dataset, starts mailbox polling and prints the waiting queue
whenever it changes. The desktop interface drives the same ContextManager.

Usage:
    Mailbox mode: python main.py
    Demo mode:    python main.py demo
"""

import logging
import sys
import threading
from datetime import datetime, timedelta

from frontdesk.config import settings
from frontdesk.context_manager import ContextManager, ContextView
from frontdesk.intake.gateway import QueueIntakeGateway
from frontdesk.scheduling.availability import NoAvailabilityError
from frontdesk.schemas.intake_schema import NewTicketMessage
from frontdesk.store.data_store import JsonDataStore, StorageError
from frontdesk.utils import format_timestamp

logger = logging.getLogger(__name__)

DEMO_MESSAGES = [
    ("Maria Rossi", "maria.rossi@example.com", "I would like to book a check-up."),
    ("Luca Bianchi", "luca.bianchi@example.com", "Can I move my appointment?"),
    ("Maria Rossi", "maria.rossi@example.com", "Mornings work best for me."),
]


def _print_queue(view: ContextView) -> None:
    """Print the waiting queue the way the tickets list shows it."""
    tickets = view.get_awaiting_tickets()
    print(f"\n{len(tickets)} awaiting ticket(s):")
    for ticket in tickets:
        user = view.get_user(ticket.user)
        name = user.display_name if user else ticket.user
        print(f"  {format_timestamp(ticket.last_interaction)}  {name}: {ticket.message}")
    try:
        print(f"First free slot: {format_timestamp(view.first_available_reservation())}")
    except NoAvailabilityError as exc:
        print(f"No free slot: {exc}")


def _run(manager: ContextManager, seconds: float = 0) -> int:
    """Run until interrupted, ``seconds`` elapse or storage fails. Returns an exit code."""
    fatal = threading.Event()

    def on_storage_error(exc: Exception) -> None:
        logger.critical("Check the data folder is readable and writable: %s", exc)
        fatal.set()

    def on_intake_error(exc: Exception) -> None:
        logger.error("Check the mailbox connection and credentials: %s", exc)

    view = manager.view()
    view.subscribe_updates(lambda: _print_queue(view))
    view.subscribe_storage_errors(on_storage_error)
    view.subscribe_intake_errors(on_intake_error)

    with manager:
        try:
            manager.load_data()
        except StorageError:
            return 1
        _print_queue(view)
        manager.start_task()
        try:
            fatal.wait(seconds or None)
        except KeyboardInterrupt:
            logger.info("Interrupted, shutting down")
    return 1 if fatal.is_set() else 0


def _run_mailbox_mode() -> int:
    """Poll the configured IMAP mailbox until interrupted."""
    return _run(ContextManager.from_config(settings))


def _run_demo_mode() -> int:
    """Feed a few canned messages through an in-memory gateway."""
    now = datetime.now().replace(second=0, microsecond=0)
    gateway = QueueIntakeGateway([
        NewTicketMessage(
            sender_name=name, sender_email=address, body=body,
            received_at=now - timedelta(minutes=10 * (len(DEMO_MESSAGES) - i)),
        )
        for i, (name, address, body) in enumerate(DEMO_MESSAGES)
    ])
    manager = ContextManager(
        JsonDataStore(settings.storage.data_file), gateway, settings.scheduling
    )
    return _run(manager, seconds=3)


if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] == "demo":
        sys.exit(_run_demo_mode())
    else:
        sys.exit(_run_mailbox_mode())
