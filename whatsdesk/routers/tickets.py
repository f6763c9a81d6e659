from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from whatsdesk.database import get_db
from whatsdesk.models import Message, Ticket
from whatsdesk.routers.deps import get_event_bus, get_supervisor, get_tasks
from whatsdesk.schemas.ticket import (
    MessageOut,
    ReminderCreateRequest,
    ReminderOut,
    SendMessageRequest,
    StatusChangeRequest,
    TicketOut,
)
from whatsdesk.services.outbound_service import send_agent_message, send_closing_message
from whatsdesk.services.reminder_service import cancel_reminder, create_reminder
from whatsdesk.services.state_machine import TicketStatus
from whatsdesk.services.ticket_service import change_ticket_status, ticket_payload

router = APIRouter(tags=["tickets"])

ERROR_STATUS = {
    "not_found": 404,
    "invalid_status": 400,
    "empty_message": 400,
    "invalid_transition": 409,
    "ticket_closed": 409,
    "not_scheduled": 409,
    "not_connected": 503,
    "send_failed": 502,
}


def _raise_for(result) -> None:
    raise HTTPException(status_code=ERROR_STATUS.get(result.error_code, 400), detail=result.error)


@router.get("/tickets", response_model=list[TicketOut])
def list_tickets(status: Optional[str] = None, limit: int = 100, db: Session = Depends(get_db)):
    query = db.query(Ticket)
    if status:
        query = query.filter(Ticket.status == status)
    return query.order_by(Ticket.updated_at.desc()).limit(min(limit, 500)).all()


@router.get("/tickets/{ticket_id}/messages", response_model=list[MessageOut])
def list_messages(ticket_id: int, db: Session = Depends(get_db)):
    if not db.query(Ticket.id).filter(Ticket.id == ticket_id).first():
        raise HTTPException(status_code=404, detail=f"Ticket {ticket_id} not found")
    return db.query(Message).filter(Message.ticket_id == ticket_id).order_by(Message.id.asc()).all()


@router.post("/tickets/{ticket_id}/messages", response_model=MessageOut)
async def post_message(
    ticket_id: int,
    request: SendMessageRequest,
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor),
    event_bus=Depends(get_event_bus),
):
    """Send an agent reply to the contact, optionally quoting a stored message."""
    result = await send_agent_message(
        db,
        supervisor,
        ticket_id,
        request.text,
        sender_name=request.sender_name,
        seller_id=request.seller_id,
        reply_to_id=request.reply_to_id,
        event_bus=event_bus,
    )
    if not result.ok:
        _raise_for(result)
    return result.value


@router.patch("/tickets/{ticket_id}/status", response_model=TicketOut)
async def update_status(
    ticket_id: int,
    request: StatusChangeRequest,
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor),
    event_bus=Depends(get_event_bus),
    tasks=Depends(get_tasks),
):
    result = change_ticket_status(db, ticket_id, request.status, seller_id=request.seller_id)
    if not result.ok:
        _raise_for(result)
    db.commit()

    ticket = result.value
    if ticket.status == TicketStatus.RESOLVIDO.value and supervisor is not None and tasks is not None:
        tasks.spawn(send_closing_message(supervisor, ticket.id), name="closing_message")
    if event_bus is not None:
        event_bus.emit("ticket", ticket_payload(ticket, action="status"))
    return ticket


@router.post("/tickets/{ticket_id}/reminders", response_model=ReminderOut)
def add_reminder(ticket_id: int, request: ReminderCreateRequest, db: Session = Depends(get_db)):
    result = create_reminder(db, ticket_id, request.seller_id, request.scheduled_at, request.note)
    if not result.ok:
        _raise_for(result)
    db.commit()
    return result.value


@router.delete("/reminders/{reminder_id}", response_model=ReminderOut)
def delete_reminder(reminder_id: int, db: Session = Depends(get_db)):
    result = cancel_reminder(db, reminder_id)
    if not result.ok:
        _raise_for(result)
    db.commit()
    return result.value
