"""Contacts that receive automatic replies (out-of-hours notice, welcome)."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from whatsdesk.config import settings
from whatsdesk.models import AutoReplyContact


def is_auto_reply_eligible(db: Session, phone: str) -> bool:
    if not settings.auto_reply_allowlist_only:
        return True
    return db.query(AutoReplyContact.phone).filter(AutoReplyContact.phone == phone).first() is not None


def add_auto_reply_contact(db: Session, phone: str, note: Optional[str] = None) -> AutoReplyContact:
    contact = db.query(AutoReplyContact).filter(AutoReplyContact.phone == phone).first()
    if contact:
        contact.note = note or contact.note
        return contact
    contact = AutoReplyContact(phone=phone, note=note, created_at=datetime.now(timezone.utc))
    db.add(contact)
    db.flush()
    return contact


def remove_auto_reply_contact(db: Session, phone: str) -> bool:
    deleted = db.query(AutoReplyContact).filter(AutoReplyContact.phone == phone).delete()
    return deleted > 0


def list_auto_reply_contacts(db: Session) -> list[AutoReplyContact]:
    return db.query(AutoReplyContact).order_by(AutoReplyContact.created_at.desc()).all()
