"""
File-backed persistence for patients and tickets.

The whole dataset is written as one JSON document. Writes go to a sibling
temporary file that atomically replaces the target, so readers never see a
half-written file and a failed save leaves the previous content in place.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from frontdesk.schemas.patient_schema import User
from frontdesk.schemas.ticket_schema import Ticket

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


class StorageError(Exception):
    """Raised when the dataset cannot be read, parsed or written."""


class DataStore(Protocol):
    """Persistence boundary used by the context manager."""

    def load(self) -> tuple[list[User], list[Ticket]]:
        ...

    def save(self, users: list[User], tickets: list[Ticket]) -> None:
        ...


class JsonDataStore:
    """Stores the dataset in a single JSON file."""

    def __init__(self, path: str | os.PathLike) -> None:
        self.path = Path(path)

    def load(self) -> tuple[list[User], list[Ticket]]:
        """Read every user and ticket. A missing file is an empty dataset."""
        if not self.path.exists():
            logger.info("No data file at %s, starting with an empty dataset", self.path)
            return [], []

        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StorageError(f"Cannot read {self.path}: {exc}") from exc

        try:
            document = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StorageError(f"Corrupt data file {self.path}: {exc}") from exc

        if not isinstance(document, dict):
            raise StorageError(f"Corrupt data file {self.path}: expected a JSON object")

        try:
            users = [User.model_validate(item) for item in document.get("users", [])]
            tickets = [Ticket.model_validate(item) for item in document.get("tickets", [])]
        except (ValidationError, TypeError) as exc:
            raise StorageError(f"Invalid records in {self.path}: {exc}") from exc

        logger.debug("Loaded %d users and %d tickets from %s", len(users), len(tickets), self.path)
        return users, tickets

    def save(self, users: list[User], tickets: list[Ticket]) -> None:
        """Replace the stored dataset with ``users`` and ``tickets``."""
        document = {
            "version": FORMAT_VERSION,
            "users": [user.model_dump(mode="json") for user in users],
            "tickets": [ticket.model_dump(mode="json") for ticket in tickets],
        }
        payload = json.dumps(document, indent=2, ensure_ascii=False) + "\n"

        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
            tmp_name = None
        except OSError as exc:
            raise StorageError(f"Cannot write {self.path}: {exc}") from exc
        finally:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)

        logger.debug("Saved %d users and %d tickets to %s", len(users), len(tickets), self.path)
