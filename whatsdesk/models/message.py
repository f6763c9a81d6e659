from sqlalchemy import Column, DateTime, ForeignKey, Integer, Text
from sqlalchemy.orm import relationship

from whatsdesk.database import Base


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ticket_id = Column(Integer, ForeignKey("tickets.id"), nullable=False, index=True)
    sender = Column(Text, nullable=False)  # client, agent, system
    sender_name = Column(Text)
    content = Column(Text, nullable=False, default="")
    message_type = Column(Text, nullable=False, default="text")
    media_url = Column(Text)  # path/URL, or "loading" while the download runs
    reply_to_id = Column(Integer, ForeignKey("messages.id"))
    whatsapp_key = Column(Text)  # provider key JSON, needed to quote this message later
    whatsapp_message = Column(Text)  # provider payload JSON
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    ticket = relationship("Ticket", back_populates="messages", foreign_keys=[ticket_id])
