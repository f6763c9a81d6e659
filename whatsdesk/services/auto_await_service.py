"""Move idle tickets in service back to the waiting queue."""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from whatsdesk.logging_config import get_logger
from whatsdesk.models import Ticket
from whatsdesk.services.event_service import EventBus
from whatsdesk.services.settings_service import get_int_setting
from whatsdesk.services.state_machine import TicketStatus, park
from whatsdesk.services.ticket_service import ticket_payload, utcnow

logger = get_logger("auto_await_service")


def process_auto_await(db: Session, bus: Optional[EventBus] = None, now: Optional[datetime] = None) -> dict:
    """em_atendimento tickets idle longer than the `await_minutes` setting become aguardando.

    Disabled while the setting is missing or zero.
    """
    minutes = get_int_setting(db, "await_minutes", 0)
    if minutes <= 0:
        return {"moved": 0, "ticket_ids": []}

    now = now or utcnow()
    cutoff = now - timedelta(minutes=minutes)
    tickets = (
        db.query(Ticket)
        .filter(Ticket.status == TicketStatus.EM_ATENDIMENTO.value, Ticket.updated_at <= cutoff)
        .all()
    )

    for ticket in tickets:
        ticket.status = park(TicketStatus(ticket.status)).value
        ticket.seller_id = None
        ticket.updated_at = now
    db.commit()

    if tickets:
        logger.info(f"Auto-await: moved {len(tickets)} tickets to 'aguardando' (timeout {minutes} min)")
        if bus is not None:
            for ticket in tickets:
                bus.emit("ticket", ticket_payload(ticket, action="auto_await"))

    return {"moved": len(tickets), "ticket_ids": [ticket.id for ticket in tickets]}
