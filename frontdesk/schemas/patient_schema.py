"""Patient (user) data model."""

from pydantic import BaseModel, field_validator

from frontdesk.utils import normalize_email, normalize_phone


class User(BaseModel):
    """A patient known to the front desk."""
    id: str
    first_name: str
    last_name: str = ""
    email: str = ""
    phone: str = ""

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return normalize_email(value)

    @field_validator("phone")
    @classmethod
    def _normalize_phone(cls, value: str) -> str:
        return normalize_phone(value)

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()
