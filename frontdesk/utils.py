"""Shared utilities used across the front-desk engine."""

import re
from datetime import datetime
from typing import Optional

DISPLAY_FORMAT = "%d/%m/%Y %H:%M"


def normalize_phone(value: str) -> str:
    """Normalize a phone number by stripping everything except digits and a leading +.

    Examples:
        >>> normalize_phone("0412 345 678")
        '0412345678'
        >>> normalize_phone("+39 (02) 345-678")
        '+3902345678'
    """
    value = value.strip()
    if value.startswith("+"):
        return "+" + re.sub(r"[^\d]", "", value[1:])
    return re.sub(r"[^\d]", "", value)


def normalize_email(value: str) -> str:
    """Lower-case and trim an e-mail address so lookups are case-insensitive."""
    return value.strip().lower()


def split_display_name(name: str, fallback: str = "") -> tuple[str, str]:
    """Split a sender display name into (first, last).

    Everything after the first word is treated as the last name. When the
    name is blank, the local part of ``fallback`` (usually an e-mail
    address) becomes the first name.

    Examples:
        >>> split_display_name("Maria Grazia Rossi")
        ('Maria', 'Grazia Rossi')
        >>> split_display_name("", "mario.rossi@example.com")
        ('mario.rossi', '')
    """
    parts = name.strip().strip('"').split()
    if not parts:
        return fallback.split("@", 1)[0].strip(), ""
    return parts[0], " ".join(parts[1:])


def format_timestamp(value: Optional[datetime]) -> str:
    """Render a timestamp the way the desk lists show it (empty when unset)."""
    if value is None:
        return ""
    return value.strftime(DISPLAY_FORMAT)


def to_local_naive(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive local time; naive values pass through.

    The engine compares every timestamp against ``datetime.now()``, so all
    stored times are naive local.
    """
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)
