from sqlalchemy import Column, DateTime, Text

from whatsdesk.database import Base


class AutoReplyContact(Base):
    __tablename__ = "auto_reply_contacts"

    phone = Column(Text, primary_key=True)
    note = Column(Text)
    created_at = Column(DateTime(timezone=True))
