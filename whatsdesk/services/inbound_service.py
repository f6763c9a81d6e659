"""Inbound message pipeline: provider envelope -> ticket + message rows.

Runs once per message from the supervisor's pipeline worker. The message is
made durable first; media download and automatic replies are spawned as
tracked background tasks afterwards.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from whatsdesk.config import settings as default_settings
from whatsdesk.database import SessionLocal, get_db_context
from whatsdesk.logging_config import get_logger, mask_phone
from whatsdesk.services import media_service
from whatsdesk.services.auto_reply_service import is_auto_reply_eligible
from whatsdesk.services.business_hours_service import get_business_status
from whatsdesk.services.event_service import EventBus
from whatsdesk.services.identity_service import IdentityResolver, is_group_or_broadcast
from whatsdesk.services.identity_service import resolver as default_resolver
from whatsdesk.services.settings_service import get_out_of_hours_message, get_welcome_message
from whatsdesk.services.task_service import TaskTracker
from whatsdesk.services.throttle_service import should_send_out_of_hours
from whatsdesk.services.ticket_service import (
    add_previous_ticket_note,
    find_message_by_provider_id,
    has_outbound_message,
    message_payload,
    reconcile_ticket,
    save_message,
    ticket_payload,
    utcnow,
)
from whatsdesk.services.whatsapp.content import MEDIA_LOADING, classify_content, unwrap_message
from whatsdesk.services.whatsapp.supervisor import phone_to_jid

logger = get_logger("inbound_service")


@dataclass
class InboundResult:
    ticket_id: int
    message_id: int
    phone: str
    is_new_ticket: bool
    previous_status: Optional[str] = None
    message_type: str = "text"


def is_processable(envelope: dict) -> bool:
    key = envelope.get("key") or {}
    if key.get("fromMe"):
        return False
    if is_group_or_broadcast(key.get("remoteJid")):
        return False
    return bool(envelope.get("message"))


class InboundPipeline:
    def __init__(
        self,
        supervisor,
        session_factory=None,
        event_bus: Optional[EventBus] = None,
        tasks: Optional[TaskTracker] = None,
        resolver: Optional[IdentityResolver] = None,
        config=None,
    ):
        self.supervisor = supervisor
        self.session_factory = session_factory or SessionLocal
        self.event_bus = event_bus
        self.config = config or default_settings
        self.tasks = tasks or getattr(supervisor, "tasks", None) or TaskTracker(self.config.max_background_tasks)
        self.resolver = resolver or default_resolver
        self._welcome_pending: set[int] = set()

    def _emit(self, event: str, payload: dict) -> None:
        if self.event_bus is not None:
            self.event_bus.emit(event, payload)

    async def handle(self, envelope: dict, now: Optional[datetime] = None) -> Optional[InboundResult]:
        if not is_processable(envelope):
            return None

        extracted = classify_content(unwrap_message(envelope.get("message"), self.config.message_unwrap_depth))
        if extracted is None:
            return None

        key = envelope.get("key") or {}
        now = now or utcnow()
        contact_name = envelope.get("pushName") or None

        with get_db_context(self.session_factory) as db:
            phone = self.resolver.resolve(envelope, db)
            if not phone:
                logger.warning(
                    "Dropping message with unresolvable sender",
                    extra={"context": {"message_id": key.get("id")}},
                )
                return None

            outcome = reconcile_ticket(db, phone, contact_name, now)
            ticket = outcome.ticket
            note = add_previous_ticket_note(db, ticket, outcome.previous_status) if outcome.is_new else None

            reply_to = None
            if extracted.quoted_id:
                reply_to = find_message_by_provider_id(db, ticket.id, extracted.quoted_id)

            message = save_message(
                db,
                ticket.id,
                "client",
                extracted.content,
                message_type=extracted.message_type,
                media_url=MEDIA_LOADING if extracted.has_media else None,
                sender_name=contact_name,
                reply_to_id=reply_to.id if reply_to else None,
                whatsapp_key=json.dumps(key, ensure_ascii=False),
                whatsapp_message=json.dumps(envelope.get("message"), ensure_ascii=False),
                now=now,
            )
            ticket.updated_at = now
            db.flush()

            result = InboundResult(
                ticket_id=ticket.id,
                message_id=message.id,
                phone=phone,
                is_new_ticket=outcome.is_new,
                previous_status=outcome.previous_status,
                message_type=extracted.message_type,
            )
            events = []
            if outcome.is_new:
                events.append(("ticket", ticket_payload(ticket, action="created", isNew=True)))
            if note is not None:
                events.append(("message", message_payload(note, phone)))
            events.append(("message", message_payload(message, phone, isNewTicket=outcome.is_new)))

        logger.info(
            f"Inbound {extracted.message_type} from {mask_phone(phone)} on ticket {result.ticket_id}",
            extra={"context": {"ticket_id": result.ticket_id, "is_new": result.is_new_ticket}},
        )
        for event, payload in events:
            self._emit(event, payload)

        if extracted.has_media:
            self.tasks.spawn(
                media_service.fetch_and_store(
                    self.supervisor,
                    envelope,
                    result.message_id,
                    phone,
                    extracted,
                    session_factory=self.session_factory,
                    event_bus=self.event_bus,
                ),
                name="media_fetch",
            )

        reply_jid = key.get("remoteJid") or phone_to_jid(phone)
        self.tasks.spawn(self.auto_reply(phone, result.ticket_id, reply_jid, now), name="auto_reply")
        return result

    def _pick_auto_reply(self, phone: str, ticket_id: int, now: datetime) -> tuple[Optional[str], str]:
        with get_db_context(self.session_factory) as db:
            if not is_auto_reply_eligible(db, phone):
                return None, "not_eligible"

            status = get_business_status(db, now)
            if not status.is_open:
                if not should_send_out_of_hours(db, phone, now):
                    return None, "throttled"
                return get_out_of_hours_message(db), "out_of_hours"

            if ticket_id in self._welcome_pending or has_outbound_message(db, ticket_id):
                return None, "already_greeted"
            self._welcome_pending.add(ticket_id)
            return get_welcome_message(db), "welcome"

    async def auto_reply(self, phone: str, ticket_id: int, jid: str, now: datetime) -> Optional[str]:
        """Send the out-of-hours notice or the one-time welcome. Send errors are logged only."""
        text, kind = self._pick_auto_reply(phone, ticket_id, now)
        if not text:
            logger.debug(f"No auto reply for {mask_phone(phone)}: {kind}")
            return None

        try:
            try:
                sent = await self.supervisor.send_message(jid, {"text": text})
            except Exception as e:
                logger.warning(f"Auto reply ({kind}) to {mask_phone(phone)} failed: {e}")
                return None

            sent_key = (sent or {}).get("key")
            with get_db_context(self.session_factory) as db:
                message = save_message(
                    db,
                    ticket_id,
                    "system",
                    text,
                    whatsapp_key=json.dumps(sent_key, ensure_ascii=False) if sent_key else None,
                )
                payload = message_payload(message, phone, action=kind)
        finally:
            self._welcome_pending.discard(ticket_id)

        self._emit("message", payload)
        logger.info(f"Auto reply ({kind}) sent to {mask_phone(phone)}")
        return kind
