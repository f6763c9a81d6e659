from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

TicketStatusValue = Literal["pendente", "aguardando", "em_atendimento", "resolvido", "encerrado"]


class TicketOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    phone: str
    status: str
    seller_id: Optional[int] = None
    contact_name: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    ticket_id: int
    sender: str
    sender_name: Optional[str] = None
    content: str
    message_type: str
    media_url: Optional[str] = None
    reply_to_id: Optional[int] = None
    created_at: datetime


class StatusChangeRequest(BaseModel):
    status: TicketStatusValue
    seller_id: Optional[int] = None


class SendMessageRequest(BaseModel):
    text: str = Field(min_length=1)
    sender_name: Optional[str] = None
    seller_id: Optional[int] = None
    reply_to_id: Optional[int] = None


class ReminderCreateRequest(BaseModel):
    seller_id: int
    scheduled_at: datetime
    note: Optional[str] = None


class ReminderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    ticket_id: int
    seller_id: int
    note: Optional[str] = None
    scheduled_at: datetime
    status: str
    notified_at: Optional[datetime] = None
