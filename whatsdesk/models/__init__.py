from whatsdesk.models.auto_reply_contact import AutoReplyContact
from whatsdesk.models.business_hours import BusinessException, BusinessHours
from whatsdesk.models.message import Message
from whatsdesk.models.out_of_hours_log import OutOfHoursLog
from whatsdesk.models.setting import Setting
from whatsdesk.models.ticket import Ticket
from whatsdesk.models.ticket_reminder import TicketReminder

__all__ = [
    "Ticket",
    "Message",
    "Setting",
    "BusinessHours",
    "BusinessException",
    "OutOfHoursLog",
    "AutoReplyContact",
    "TicketReminder",
]
