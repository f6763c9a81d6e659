from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from whatsdesk.logging_config import get_logger
from whatsdesk.models import Ticket, TicketReminder
from whatsdesk.services.event_service import EventBus
from whatsdesk.services.result import Result

logger = get_logger("reminder_service")

SCHEDULED = "scheduled"
NOTIFIED = "notified"
CANCELLED = "cancelled"


def _ensure_timezone(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def create_reminder(
    db: Session,
    ticket_id: int,
    seller_id: int,
    scheduled_at: datetime,
    note: Optional[str] = None,
) -> Result[TicketReminder]:
    ticket = db.query(Ticket).filter(Ticket.id == ticket_id).first()
    if not ticket:
        return Result.failure(f"Ticket {ticket_id} not found", "not_found")

    now = datetime.now(timezone.utc)
    reminder = TicketReminder(
        ticket_id=ticket_id,
        seller_id=seller_id,
        note=note,
        scheduled_at=_ensure_timezone(scheduled_at),
        status=SCHEDULED,
        created_at=now,
        updated_at=now,
    )
    db.add(reminder)
    db.flush()
    return Result.success(reminder)


def cancel_reminder(db: Session, reminder_id: int) -> Result[TicketReminder]:
    reminder = db.query(TicketReminder).filter(TicketReminder.id == reminder_id).first()
    if not reminder:
        return Result.failure(f"Reminder {reminder_id} not found", "not_found")
    if reminder.status != SCHEDULED:
        return Result.failure(f"Reminder {reminder_id} is {reminder.status}", "not_scheduled")

    reminder.status = CANCELLED
    reminder.updated_at = datetime.now(timezone.utc)
    return Result.success(reminder)


def get_due_reminders(db: Session, now: Optional[datetime] = None) -> List[TicketReminder]:
    """Scheduled reminders whose time has come, oldest first."""
    now = _ensure_timezone(now or datetime.now(timezone.utc))
    return (
        db.query(TicketReminder)
        .filter(TicketReminder.status == SCHEDULED, TicketReminder.scheduled_at <= now)
        .order_by(TicketReminder.scheduled_at.asc())
        .all()
    )


def mark_reminder_notified(db: Session, reminder: TicketReminder, now: datetime) -> None:
    reminder.status = NOTIFIED
    reminder.notified_at = now
    reminder.updated_at = now


def process_due_reminders(db: Session, bus: Optional[EventBus], now: Optional[datetime] = None) -> dict:
    """Notify sellers about due reminders. Returns summary."""
    now = _ensure_timezone(now or datetime.now(timezone.utc))
    reminders = get_due_reminders(db, now)
    items = []

    for reminder in reminders:
        ticket = reminder.ticket
        payload = {
            "reminderId": reminder.id,
            "ticketId": reminder.ticket_id,
            "phone": ticket.phone if ticket else None,
            "sellerId": reminder.seller_id,
            "note": reminder.note,
        }
        if bus is not None:
            bus.emit("reminder", payload)
        mark_reminder_notified(db, reminder, now)
        items.append(payload)

    if items:
        db.commit()
        logger.info(f"Notified {len(items)} ticket reminders")

    return {"notified": len(items), "items": items}
