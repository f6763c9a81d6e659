import json
from typing import Optional

from sqlalchemy.orm import Session

from whatsdesk.database import SessionLocal, get_db_context
from whatsdesk.logging_config import get_logger, mask_phone
from whatsdesk.models import Message, Ticket
from whatsdesk.services.event_service import EventBus
from whatsdesk.services.identity_service import is_group_or_broadcast
from whatsdesk.services.result import Result
from whatsdesk.services.settings_service import get_closing_message
from whatsdesk.services.state_machine import TicketStatus, can_transition, is_active
from whatsdesk.services.ticket_service import message_payload, save_message, ticket_payload, utcnow
from whatsdesk.services.whatsapp.supervisor import NotConnectedError, phone_to_jid

logger = get_logger("outbound_service")


def _loads(raw: Optional[str]):
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


def reply_jid_for_ticket(db: Session, ticket: Ticket) -> str:
    """Address the contact the way they last wrote to us, else by phone."""
    rows = (
        db.query(Message.whatsapp_key)
        .filter(Message.ticket_id == ticket.id, Message.sender == "client", Message.whatsapp_key.isnot(None))
        .order_by(Message.id.desc())
        .limit(5)
        .all()
    )
    for (raw_key,) in rows:
        key = _loads(raw_key)
        jid = key.get("remoteJid") if isinstance(key, dict) else None
        if jid and not is_group_or_broadcast(jid):
            return jid
    return phone_to_jid(ticket.phone)


def quoted_payload(message: Optional[Message]) -> Optional[dict]:
    """Provider key + payload of a stored message, as needed to quote it."""
    if message is None:
        return None
    key = _loads(message.whatsapp_key)
    payload = _loads(message.whatsapp_message)
    if not isinstance(key, dict) or not isinstance(payload, dict):
        return None
    return {"key": key, "message": payload}


async def send_agent_message(
    db: Session,
    supervisor,
    ticket_id: int,
    text: str,
    sender_name: Optional[str] = None,
    seller_id: Optional[int] = None,
    reply_to_id: Optional[int] = None,
    event_bus: Optional[EventBus] = None,
) -> Result[Message]:
    """Send an agent reply to the ticket's contact and record it. Commits on success."""
    ticket = db.query(Ticket).filter(Ticket.id == ticket_id).first()
    if not ticket:
        return Result.failure(f"Ticket {ticket_id} not found", "not_found")
    if not is_active(ticket.status):
        return Result.failure(f"Ticket {ticket_id} is {ticket.status}", "ticket_closed")
    if not text or not text.strip():
        return Result.failure("Message text is empty", "empty_message")
    if supervisor is None or not supervisor.session.is_open:
        return Result.failure("WhatsApp is not connected", "not_connected")

    reply_to = None
    if reply_to_id is not None:
        reply_to = db.query(Message).filter(Message.id == reply_to_id, Message.ticket_id == ticket.id).first()
    quoted = quoted_payload(reply_to)

    body = f"*{sender_name}:*\n\n{text}" if sender_name else text
    options = {"quoted": quoted} if quoted else None
    try:
        sent = await supervisor.send_message(reply_jid_for_ticket(db, ticket), {"text": body}, options)
    except NotConnectedError as e:
        return Result.failure(str(e), "not_connected")
    except Exception as e:
        logger.error(f"Agent message to {mask_phone(ticket.phone)} failed: {e}", exc_info=True)
        return Result.failure(f"Send failed: {e}", "send_failed")

    sent = sent or {}
    now = utcnow()
    message = save_message(
        db,
        ticket.id,
        "agent",
        text,
        sender_name=sender_name,
        reply_to_id=reply_to.id if reply_to else None,
        whatsapp_key=json.dumps(sent["key"], ensure_ascii=False) if sent.get("key") else None,
        whatsapp_message=json.dumps(sent["message"], ensure_ascii=False) if sent.get("message") else None,
        now=now,
    )

    if seller_id is not None and (ticket.status == TicketStatus.AGUARDANDO.value or ticket.seller_id is None):
        ticket.seller_id = seller_id
    if can_transition(TicketStatus(ticket.status), TicketStatus.EM_ATENDIMENTO):
        ticket.status = TicketStatus.EM_ATENDIMENTO.value
    ticket.updated_at = now
    db.commit()

    if event_bus is not None:
        event_bus.emit("message", message_payload(message, ticket.phone))
        event_bus.emit("ticket", ticket_payload(ticket, action="reply"))
    return Result.success(message)


async def send_closing_message(supervisor, ticket_id: int, session_factory=None) -> bool:
    """Tell the contact their ticket was resolved. Failures are logged, never raised."""
    session_factory = session_factory or SessionLocal
    with get_db_context(session_factory) as db:
        ticket = db.query(Ticket).filter(Ticket.id == ticket_id).first()
        if not ticket:
            return False
        jid = reply_jid_for_ticket(db, ticket)
        text = get_closing_message(db)
        phone = ticket.phone

    try:
        await supervisor.send_message(jid, {"text": text})
    except Exception as e:
        logger.warning(f"Closing message to {mask_phone(phone)} failed: {e}")
        return False

    with get_db_context(session_factory) as db:
        save_message(db, ticket_id, "system", text)
    return True
