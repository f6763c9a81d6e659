from whatsdesk.schemas.ticket import (
    MessageOut,
    ReminderCreateRequest,
    ReminderOut,
    SendMessageRequest,
    StatusChangeRequest,
    TicketOut,
)
from whatsdesk.schemas.whatsapp import ConnectionStatusResponse, QrResetRequest

__all__ = [
    "ConnectionStatusResponse",
    "MessageOut",
    "QrResetRequest",
    "ReminderCreateRequest",
    "ReminderOut",
    "SendMessageRequest",
    "StatusChangeRequest",
    "TicketOut",
]
