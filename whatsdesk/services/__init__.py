from whatsdesk.services.state_machine import (
    InvalidTransitionError,
    TicketStatus,
    can_transition,
    transition,
)
from whatsdesk.services.ticket_service import (
    change_ticket_status,
    reconcile_ticket,
    save_message,
)

__all__ = [
    "InvalidTransitionError",
    "TicketStatus",
    "can_transition",
    "change_ticket_status",
    "reconcile_ticket",
    "save_message",
    "transition",
]
