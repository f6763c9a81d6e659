from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from whatsdesk.database import dialect_name
from whatsdesk.logging_config import get_logger, mask_phone
from whatsdesk.models import Message, Ticket
from whatsdesk.services.result import Result
from whatsdesk.services.state_machine import (
    ACTIVE_STATUS_VALUES,
    InvalidTransitionError,
    TicketStatus,
    transition,
)

logger = get_logger("ticket_service")

PREVIOUS_TICKET_NOTES = {
    TicketStatus.RESOLVIDO.value: "Novo atendimento iniciado. O atendimento anterior foi resolvido.",
    TicketStatus.ENCERRADO.value: "Novo atendimento iniciado. O atendimento anterior foi encerrado.",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ReconcileOutcome:
    ticket: Ticket
    is_new: bool
    previous_status: Optional[str] = None


def get_active_ticket(db: Session, phone: str) -> Optional[Ticket]:
    return (
        db.query(Ticket)
        .filter(Ticket.phone == phone, Ticket.status.in_(ACTIVE_STATUS_VALUES))
        .order_by(Ticket.id.desc())
        .first()
    )


def get_latest_ticket(db: Session, phone: str) -> Optional[Ticket]:
    return db.query(Ticket).filter(Ticket.phone == phone).order_by(Ticket.id.desc()).first()


def _lock_phone(db: Session, phone: str) -> None:
    """Serialize reconciliation per phone for the rest of the transaction (PostgreSQL only)."""
    if dialect_name(db) == "postgresql":
        db.execute(text("SELECT pg_advisory_xact_lock(hashtext(:phone))"), {"phone": phone})


def reconcile_ticket(
    db: Session,
    phone: str,
    contact_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ReconcileOutcome:
    """Find the active ticket for `phone` or open a new one, in one transaction.

    Commits on success. A concurrent insert for the same phone trips the
    active-ticket unique index; the transaction is rolled back and the ticket
    created by the other writer is returned instead.
    """
    now = now or utcnow()
    try:
        _lock_phone(db, phone)
        ticket = get_active_ticket(db, phone)
        if ticket:
            if contact_name and ticket.contact_name != contact_name:
                ticket.contact_name = contact_name
            ticket.updated_at = now
            db.commit()
            return ReconcileOutcome(ticket=ticket, is_new=False)

        previous = get_latest_ticket(db, phone)
        previous_status = previous.status if previous else None

        ticket = Ticket(
            phone=phone,
            status=TicketStatus.PENDENTE.value,
            contact_name=contact_name,
            created_at=now,
            updated_at=now,
        )
        db.add(ticket)
        db.flush()
        db.commit()
        logger.info(
            f"Opened ticket {ticket.id} for {mask_phone(phone)}",
            extra={"context": {"ticket_id": ticket.id, "previous_status": previous_status}},
        )
        return ReconcileOutcome(ticket=ticket, is_new=True, previous_status=previous_status)
    except (IntegrityError, OperationalError) as e:
        db.rollback()
        logger.warning(f"Ticket reconciliation conflict for {mask_phone(phone)}, re-reading: {e}")
        ticket = get_active_ticket(db, phone)
        if ticket is None:
            raise
        return ReconcileOutcome(ticket=ticket, is_new=False)


def save_message(
    db: Session,
    ticket_id: int,
    sender: str,
    content: str,
    message_type: str = "text",
    media_url: Optional[str] = None,
    sender_name: Optional[str] = None,
    reply_to_id: Optional[int] = None,
    whatsapp_key: Optional[str] = None,
    whatsapp_message: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Message:
    """Save message to database."""
    now = now or utcnow()
    message = Message(
        ticket_id=ticket_id,
        sender=sender,
        sender_name=sender_name,
        content=content or "",
        message_type=message_type,
        media_url=media_url,
        reply_to_id=reply_to_id,
        whatsapp_key=whatsapp_key,
        whatsapp_message=whatsapp_message,
        created_at=now,
        updated_at=now,
    )
    db.add(message)
    db.flush()
    return message


def add_previous_ticket_note(db: Session, ticket: Ticket, previous_status: Optional[str]) -> Optional[Message]:
    """Record on a new ticket that the contact's previous conversation was closed."""
    note = PREVIOUS_TICKET_NOTES.get(previous_status or "")
    if not note:
        return None
    return save_message(db, ticket.id, "system", note, message_type="system")


def find_message_by_provider_id(db: Session, ticket_id: int, provider_id: str) -> Optional[Message]:
    if not provider_id:
        return None
    return (
        db.query(Message)
        .filter(Message.ticket_id == ticket_id, Message.whatsapp_key.like(f'%"id": "{provider_id}"%'))
        .order_by(Message.id.desc())
        .first()
    )


def has_outbound_message(db: Session, ticket_id: int) -> bool:
    """True once an agent or automatic message was sent to the contact on this ticket."""
    return (
        db.query(Message.id)
        .filter(
            Message.ticket_id == ticket_id,
            Message.sender.in_(("agent", "system")),
            Message.message_type != "system",
        )
        .first()
        is not None
    )


def change_ticket_status(
    db: Session,
    ticket_id: int,
    new_status: str,
    seller_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Result[Ticket]:
    """Agent-driven status change. The caller commits."""
    ticket = db.query(Ticket).filter(Ticket.id == ticket_id).first()
    if not ticket:
        return Result.failure(f"Ticket {ticket_id} not found", "not_found")

    try:
        target = TicketStatus(new_status)
        transition(TicketStatus(ticket.status), target)
    except ValueError:
        return Result.failure(f"Invalid status: {new_status}", "invalid_status")
    except InvalidTransitionError as e:
        return Result.failure(str(e), "invalid_transition")

    ticket.status = target.value
    if target == TicketStatus.AGUARDANDO:
        ticket.seller_id = None
    elif target == TicketStatus.EM_ATENDIMENTO and seller_id is not None:
        ticket.seller_id = seller_id
    ticket.updated_at = now or utcnow()
    db.flush()
    return Result.success(ticket)


def ticket_payload(ticket: Ticket, **extra) -> dict:
    payload = {
        "ticketId": ticket.id,
        "phone": ticket.phone,
        "status": ticket.status,
        "sellerId": ticket.seller_id,
        "contactName": ticket.contact_name,
    }
    payload.update(extra)
    return payload


def message_payload(message: Message, phone: str, **extra) -> dict:
    payload = {
        "ticketId": message.ticket_id,
        "phone": phone,
        "messageId": message.id,
        "sender": message.sender,
        "messageType": message.message_type,
        "content": message.content,
        "mediaUrl": message.media_url,
    }
    payload.update(extra)
    return payload
