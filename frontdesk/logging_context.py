"""Origin-aware logging context for telling foreground and intake work apart.

Consumer operations and the background intake poller both log through the
context manager. The origin tag records which execution context produced
a line, so an operator reading the log can separate user edits from
mailbox synchronization.

Usage:
    from frontdesk.logging_context import get_context_logger, set_origin

    set_origin("intake")
    logger = get_context_logger(__name__)
    logger.info("Polling mailbox")  # → (intake) Polling mailbox
"""

import logging
from contextvars import ContextVar

FOREGROUND = "foreground"
INTAKE = "intake"

_origin: ContextVar[str] = ContextVar("origin", default=FOREGROUND)


def set_origin(origin: str) -> None:
    """Set the origin tag for the current thread or async context."""
    _origin.set(origin)


def get_origin() -> str:
    """Retrieve the current origin tag."""
    return _origin.get()


class OriginFilter(logging.Filter):
    """Injects origin into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.origin = _origin.get()  # type: ignore[attr-defined]
        return True


def get_context_logger(name: str) -> logging.Logger:
    """Return a logger with the OriginFilter attached.

    The filter adds ``origin`` to each record so formatters can
    include ``%(origin)s`` in their format string.
    """
    logger = logging.getLogger(name)
    if not any(isinstance(f, OriginFilter) for f in logger.filters):
        logger.addFilter(OriginFilter())
    return logger
