"""
Ticket intake channels.

The clinic receives requests by e-mail. ``ImapIntakeGateway`` reads unseen
messages from a mailbox on every poll; ``QueueIntakeGateway`` is an
in-memory channel fed by ``push()``, used for the console demo and tests.
Both hand back ``NewTicketMessage`` objects and never hold state that the
context manager relies on between polls.
"""

import email
import imaplib
import logging
import threading
from email import policy
from email.message import EmailMessage
from email.utils import parseaddr, parsedate_to_datetime
from typing import Optional, Protocol

from frontdesk.config import IntakeConfig
from frontdesk.schemas.intake_schema import NewTicketMessage
from frontdesk.utils import normalize_email, to_local_naive

logger = logging.getLogger(__name__)


class IntakeError(Exception):
    """Raised when the intake channel cannot be reached or read."""


class TicketIntakeGateway(Protocol):
    """Source of new ticket messages."""

    def poll(self) -> list[NewTicketMessage]:
        ...


def _extract_body(message: EmailMessage) -> str:
    part = message.get_body(preferencelist=("plain",))
    if part is None:
        return ""
    try:
        return part.get_content().strip()
    except (LookupError, UnicodeDecodeError):
        payload = part.get_payload(decode=True) or b""
        return payload.decode("utf-8", errors="replace").strip()


def parse_email_message(raw: bytes) -> NewTicketMessage:
    """
    Turn a raw RFC 822 message into a ``NewTicketMessage``.

    The sender comes from ``From``, the body from the first ``text/plain``
    part and the receipt time from ``Date`` (converted to local time).

    Raises:
        ValueError: If the message has no usable sender address.
    """
    message = email.message_from_bytes(raw, policy=policy.default)

    sender_name, sender_address = parseaddr(str(message.get("From", "")))
    if "@" not in sender_address:
        raise ValueError(f"Message has no sender address: {message.get('From')!r}")

    received_at = None
    try:
        date_header = message.get("Date")
        if date_header:
            received_at = to_local_naive(parsedate_to_datetime(str(date_header)))
    except (TypeError, ValueError):
        logger.debug("Unparseable Date header in message from %s", sender_address)

    message_id = message.get("Message-ID")
    return NewTicketMessage(
        sender_email=normalize_email(sender_address),
        sender_name=sender_name.strip(),
        body=_extract_body(message),
        received_at=received_at,
        message_id=str(message_id).strip() if message_id else None,
    )


class ImapIntakeGateway:
    """Reads unseen messages from an IMAP mailbox, one connection per poll."""

    def __init__(self, config: IntakeConfig, timeout: float = 30.0) -> None:
        self._config = config
        self._timeout = timeout

    def _connect(self) -> imaplib.IMAP4:
        if self._config.imap_use_ssl:
            return imaplib.IMAP4_SSL(
                self._config.imap_host, self._config.imap_port, timeout=self._timeout
            )
        return imaplib.IMAP4(
            self._config.imap_host, self._config.imap_port, timeout=self._timeout
        )

    def poll(self) -> list[NewTicketMessage]:
        """Fetch every unseen message, then mark the batch as seen.

        Messages are read with ``BODY.PEEK[]`` so a poll that fails part-way
        leaves the whole batch unseen for the next attempt.
        """
        try:
            client = self._connect()
        except (imaplib.IMAP4.error, OSError) as exc:
            raise IntakeError(f"Cannot connect to {self._config.imap_host}: {exc}") from exc

        try:
            client.login(self._config.imap_user, self._config.imap_password)
            status, _ = client.select(self._config.imap_mailbox)
            if status != "OK":
                raise IntakeError(f"Cannot open mailbox {self._config.imap_mailbox!r}")

            status, data = client.search(None, "UNSEEN")
            if status != "OK":
                raise IntakeError("Mailbox search failed")

            messages = []
            fetched = []
            for num in data[0].split():
                status, parts = client.fetch(num, "(BODY.PEEK[])")
                if status != "OK":
                    raise IntakeError(f"Cannot fetch message {num!r}")
                raw = next(
                    (part[1] for part in parts if isinstance(part, tuple)), None
                )
                if raw is None:
                    continue
                try:
                    messages.append(parse_email_message(raw))
                except ValueError as exc:
                    logger.warning("Skipping message %s: %s", num.decode(), exc)
                fetched.append(num)

            self._mark_seen(client, fetched)
        except (imaplib.IMAP4.error, OSError) as exc:
            raise IntakeError(f"Mailbox error on {self._config.imap_host}: {exc}") from exc
        finally:
            try:
                client.logout()
            except (imaplib.IMAP4.error, OSError):
                logger.debug("Logout from %s failed", self._config.imap_host)

        logger.debug("Fetched %d messages from %s", len(messages), self._config.imap_mailbox)
        return messages

    def _mark_seen(self, client: imaplib.IMAP4, nums: list[bytes]) -> None:
        try:
            for num in nums:
                client.store(num, "+FLAGS", "\\Seen")
        except (imaplib.IMAP4.error, OSError) as exc:
            logger.warning(
                "Could not mark messages as seen on %s, they may be delivered again: %s",
                self._config.imap_host, exc,
            )


class QueueIntakeGateway:
    """In-memory intake channel; ``poll()`` drains whatever was pushed."""

    def __init__(self, messages: Optional[list[NewTicketMessage]] = None) -> None:
        self._lock = threading.Lock()
        self._queue: list[NewTicketMessage] = list(messages or [])

    def push(self, message: NewTicketMessage) -> None:
        with self._lock:
            self._queue.append(message)

    def poll(self) -> list[NewTicketMessage]:
        with self._lock:
            batch, self._queue = self._queue, []
        return batch
