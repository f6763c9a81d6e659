from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from whatsdesk.logging_config import get_logger, mask_phone
from whatsdesk.models import Message, Ticket
from whatsdesk.services.state_machine import ACTIVE_STATUS_VALUES, TicketStatus, close
from whatsdesk.services.ticket_service import save_message
from whatsdesk.services.whatsapp.content import MEDIA_LOADING, failure_label

logger = get_logger("health_service")

STUCK_MEDIA_MINUTES = 10
DUPLICATE_CLOSED_NOTE = "Atendimento encerrado automaticamente: havia outro atendimento ativo para este contato."


def _stuck_media_query(db: Session, cutoff: datetime):
    return db.query(Message).filter(Message.media_url == MEDIA_LOADING, Message.updated_at <= cutoff)


def check_and_heal(db: Session, now: Optional[datetime] = None) -> dict:
    """Check storage invariants and repair violations."""
    now = now or datetime.now(timezone.utc)
    healed = []

    # Invariant 1: at most one active ticket per phone (legacy rows may predate the unique index).
    duplicated_phones = (
        db.query(Ticket.phone)
        .filter(Ticket.status.in_(ACTIVE_STATUS_VALUES))
        .group_by(Ticket.phone)
        .having(func.count(Ticket.id) > 1)
        .all()
    )

    for (phone,) in duplicated_phones:
        tickets = (
            db.query(Ticket)
            .filter(Ticket.phone == phone, Ticket.status.in_(ACTIVE_STATUS_VALUES))
            .order_by(Ticket.id.desc())
            .all()
        )
        for ticket in tickets[1:]:
            old_status = ticket.status
            ticket.status = close(TicketStatus(old_status)).value
            ticket.updated_at = now
            save_message(db, ticket.id, "system", DUPLICATE_CLOSED_NOTE, message_type="system", now=now)
            healed.append(
                {
                    "ticket_id": ticket.id,
                    "issue": f"duplicate_active_{old_status}",
                    "action": f"closed_in_favor_of_{tickets[0].id}",
                }
            )
            logger.warning(f"Closed duplicate active ticket {ticket.id} for {mask_phone(phone)}")

    # Invariant 2: media never stays on the loading placeholder.
    cutoff = now - timedelta(minutes=STUCK_MEDIA_MINUTES)
    for message in _stuck_media_query(db, cutoff).all():
        message.media_url = None
        message.content = failure_label(message.message_type)
        message.updated_at = now
        healed.append({"message_id": message.id, "issue": "media_stuck_loading", "action": "marked_failed"})
        logger.warning(f"Healed message {message.id}: media stuck on placeholder")

    db.commit()

    return {
        "healed_count": len(healed),
        "details": healed,
        "checked_at": now.isoformat(),
    }


def get_system_health(db: Session, now: Optional[datetime] = None) -> dict:
    """Ticket counts per status and media still loading."""
    now = now or datetime.now(timezone.utc)
    counts = dict(db.query(Ticket.status, func.count(Ticket.id)).group_by(Ticket.status).all())
    tickets = {status.value: counts.get(status.value, 0) for status in TicketStatus}

    cutoff = now - timedelta(minutes=STUCK_MEDIA_MINUTES)
    return {
        "tickets": tickets,
        "media": {
            "loading": db.query(Message).filter(Message.media_url == MEDIA_LOADING).count(),
            "stuck": _stuck_media_query(db, cutoff).count(),
        },
        "checked_at": now.isoformat(),
    }
