from sqlalchemy import Column, DateTime, ForeignKey, Integer, Text
from sqlalchemy.orm import relationship

from whatsdesk.database import Base


class TicketReminder(Base):
    __tablename__ = "ticket_reminders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ticket_id = Column(Integer, ForeignKey("tickets.id"), nullable=False)
    seller_id = Column(Integer, nullable=False)
    note = Column(Text)
    scheduled_at = Column(DateTime(timezone=True), nullable=False)
    status = Column(Text, nullable=False, default="scheduled")  # scheduled, notified, cancelled
    notified_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    ticket = relationship("Ticket", back_populates="reminders")
