"""Messages produced by the ticket intake channel."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, field_validator

from frontdesk.utils import to_local_naive


class NewTicketMessage(BaseModel):
    """A single inbound request, before it is matched to a patient."""
    sender_email: str
    sender_name: str = ""
    body: str = ""
    received_at: Optional[datetime] = None
    message_id: Optional[str] = None

    @field_validator("received_at")
    @classmethod
    def _local_naive(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_local_naive(value)
