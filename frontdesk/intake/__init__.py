from frontdesk.intake.gateway import (
    ImapIntakeGateway,
    IntakeError,
    QueueIntakeGateway,
    TicketIntakeGateway,
    parse_email_message,
)

__all__ = [
    "ImapIntakeGateway",
    "IntakeError",
    "QueueIntakeGateway",
    "TicketIntakeGateway",
    "parse_email_message",
]
