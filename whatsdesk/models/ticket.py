from sqlalchemy import Column, DateTime, Index, Integer, Text, text
from sqlalchemy.orm import relationship

from whatsdesk.database import Base

ACTIVE_STATUS_SQL = "status IN ('pendente', 'aguardando', 'em_atendimento')"


class Ticket(Base):
    __tablename__ = "tickets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phone = Column(Text, nullable=False, index=True)
    seller_id = Column(Integer)
    status = Column(Text, nullable=False, default="pendente")  # pendente, aguardando, em_atendimento, resolvido, encerrado
    contact_name = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    messages = relationship("Message", back_populates="ticket", foreign_keys="Message.ticket_id")
    reminders = relationship("TicketReminder", back_populates="ticket")

    __table_args__ = (
        # At most one active ticket per phone.
        Index(
            "uq_tickets_active_phone",
            "phone",
            unique=True,
            sqlite_where=text(ACTIVE_STATUS_SQL),
            postgresql_where=text(ACTIVE_STATUS_SQL),
        ),
        Index("idx_tickets_status_updated_at", "status", "updated_at"),
    )
