from datetime import datetime, timezone

import pytest

from whatsdesk.models import BusinessHours, Message, Ticket
from whatsdesk.services import auto_reply_service, media_service
from whatsdesk.services.auto_reply_service import add_auto_reply_contact
from whatsdesk.services.event_service import EventBus
from whatsdesk.services.inbound_service import InboundPipeline, is_processable
from whatsdesk.services.settings_service import DEFAULT_OUT_OF_HOURS_MESSAGE, DEFAULT_WELCOME_MESSAGE
from whatsdesk.services.task_service import TaskTracker
from whatsdesk.services.ticket_service import PREVIOUS_TICKET_NOTES

PHONE = "5511999990000"
JID = f"{PHONE}@s.whatsapp.net"

# Monday 10:00 in Sao Paulo.
OPEN_NOW = datetime(2024, 1, 15, 13, 0, tzinfo=timezone.utc)
# Monday 20:30 in Sao Paulo.
CLOSED_NOW = datetime(2024, 1, 15, 23, 30, tzinfo=timezone.utc)


class FakeSupervisor:
    def __init__(self):
        self.sent = []
        self.media = b"\xff\xd8 jpeg bytes"
        self.download_error = None
        self.send_error = None

    async def send_message(self, jid, content, options=None):
        if self.send_error:
            raise self.send_error
        self.sent.append((jid, content, options))
        return {"key": {"remoteJid": jid, "fromMe": True, "id": f"OUT{len(self.sent)}"}}

    async def download_media(self, message):
        if self.download_error:
            raise self.download_error
        return self.media


def envelope(msg_id="M1", message=None, remote_jid=JID, from_me=False, push_name="Maria"):
    return {
        "key": {"remoteJid": remote_jid, "fromMe": from_me, "id": msg_id},
        "pushName": push_name,
        "message": message if message is not None else {"conversation": "Olá, tudo bem?"},
    }


@pytest.fixture
def supervisor():
    return FakeSupervisor()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def tasks():
    return TaskTracker()


@pytest.fixture
def pipeline(supervisor, session_factory, bus, tasks):
    return InboundPipeline(supervisor, session_factory=session_factory, event_bus=bus, tasks=tasks)


@pytest.fixture
def monday_hours(db):
    db.add(BusinessHours(day=1, open_time="09:00", close_time="18:00", enabled=True))
    db.commit()


@pytest.fixture
def allow_all(monkeypatch):
    monkeypatch.setattr(auto_reply_service.settings, "auto_reply_allowlist_only", False)


class TestFiltering:
    def test_own_messages_skipped(self):
        assert not is_processable(envelope(from_me=True))

    def test_group_and_broadcast_skipped(self):
        assert not is_processable(envelope(remote_jid="120363000000@g.us"))
        assert not is_processable(envelope(remote_jid="status@broadcast"))

    def test_empty_message_skipped(self):
        assert not is_processable({"key": {"remoteJid": JID}, "message": None})

    @pytest.mark.asyncio
    async def test_protocol_only_message_records_nothing(self, pipeline, db):
        result = await pipeline.handle(envelope(message={"protocolMessage": {"type": 0}}), now=OPEN_NOW)
        assert result is None
        assert db.query(Ticket).count() == 0

    @pytest.mark.asyncio
    async def test_unresolvable_sender_dropped(self, pipeline, db):
        result = await pipeline.handle(envelope(remote_jid="123@lid"), now=OPEN_NOW)
        assert result is None
        assert db.query(Message).count() == 0


class TestTicketReconciliation:
    @pytest.mark.asyncio
    async def test_first_message_opens_pending_ticket(self, pipeline, db, tasks):
        result = await pipeline.handle(envelope(), now=OPEN_NOW)
        await tasks.drain()

        assert result.is_new_ticket is True
        ticket = db.query(Ticket).one()
        assert ticket.phone == PHONE
        assert ticket.status == "pendente"
        assert ticket.contact_name == "Maria"
        message = db.query(Message).filter(Message.sender == "client").one()
        assert message.content == "Olá, tudo bem?"
        assert message.message_type == "text"
        assert '"id": "M1"' in message.whatsapp_key

    @pytest.mark.asyncio
    async def test_follow_up_joins_active_ticket(self, pipeline, db, tasks):
        first = await pipeline.handle(envelope("M1"), now=OPEN_NOW)
        second = await pipeline.handle(envelope("M2", {"conversation": "Alguém aí?"}), now=OPEN_NOW)
        await tasks.drain()

        assert second.is_new_ticket is False
        assert second.ticket_id == first.ticket_id
        assert db.query(Ticket).count() == 1

    @pytest.mark.asyncio
    async def test_message_after_resolution_opens_new_ticket(self, pipeline, db, tasks):
        first = await pipeline.handle(envelope("M1"), now=OPEN_NOW)
        ticket = db.get(Ticket, first.ticket_id)
        ticket.status = "resolvido"
        db.commit()

        second = await pipeline.handle(envelope("M2"), now=OPEN_NOW)
        await tasks.drain()

        assert second.is_new_ticket is True
        assert second.previous_status == "resolvido"
        assert second.ticket_id != first.ticket_id
        note = db.query(Message).filter(Message.ticket_id == second.ticket_id, Message.message_type == "system").one()
        assert note.content == PREVIOUS_TICKET_NOTES["resolvido"]

    @pytest.mark.asyncio
    async def test_quoted_reply_links_original(self, pipeline, db, tasks):
        first = await pipeline.handle(envelope("ORIG"), now=OPEN_NOW)
        reply = {"extendedTextMessage": {"text": "sobre isso", "contextInfo": {"stanzaId": "ORIG"}}}
        second = await pipeline.handle(envelope("M2", reply), now=OPEN_NOW)
        await tasks.drain()

        message = db.get(Message, second.message_id)
        assert message.reply_to_id == first.message_id

    @pytest.mark.asyncio
    async def test_events_published(self, pipeline, bus, tasks):
        queue = bus.subscribe()
        await pipeline.handle(envelope(), now=OPEN_NOW)
        await tasks.drain()

        events = []
        while not queue.empty():
            events.append(queue.get_nowait())
        assert events[0]["event"] == "ticket"
        assert events[0]["data"]["isNew"] is True
        assert events[1]["event"] == "message"
        assert events[1]["data"]["isNewTicket"] is True


class TestMedia:
    @pytest.mark.asyncio
    async def test_image_stored_and_linked(self, pipeline, db, tasks, tmp_path, monkeypatch):
        monkeypatch.setattr(media_service.settings, "media_dir", str(tmp_path / "media"))
        image = {"imageMessage": {"mimetype": "image/jpeg", "caption": "foto do produto"}}

        result = await pipeline.handle(envelope(message=image), now=OPEN_NOW)
        await tasks.drain()

        message = db.get(Message, result.message_id)
        assert message.message_type == "image"
        assert message.content == "foto do produto"
        assert message.media_url.startswith("/media/images/img_")
        assert message.media_url.endswith(".jpeg")
        stored = list((tmp_path / "media" / "images").iterdir())
        assert len(stored) == 1

    @pytest.mark.asyncio
    async def test_download_failure_marks_message(self, pipeline, supervisor, db, tasks, tmp_path, monkeypatch):
        monkeypatch.setattr(media_service.settings, "media_dir", str(tmp_path / "media"))
        supervisor.download_error = RuntimeError("media expired")

        result = await pipeline.handle(envelope(message={"audioMessage": {"mimetype": "audio/ogg"}}), now=OPEN_NOW)
        await tasks.drain()

        message = db.get(Message, result.message_id)
        assert message.message_type == "audio"
        assert message.media_url is None
        assert message.content == "[Áudio - erro ao carregar]"


class TestAutoReplies:
    @pytest.mark.asyncio
    async def test_welcome_sent_once(self, pipeline, supervisor, db, tasks, monday_hours, allow_all):
        await pipeline.handle(envelope("M1"), now=OPEN_NOW)
        await tasks.drain()
        await pipeline.handle(envelope("M2"), now=OPEN_NOW)
        await tasks.drain()

        assert len(supervisor.sent) == 1
        jid, content, _ = supervisor.sent[0]
        assert jid == JID
        assert content == {"text": DEFAULT_WELCOME_MESSAGE}
        recorded = db.query(Message).filter(Message.sender == "system", Message.message_type == "text").one()
        assert recorded.content == DEFAULT_WELCOME_MESSAGE

    @pytest.mark.asyncio
    async def test_contact_outside_allowlist_gets_nothing(self, pipeline, supervisor, tasks, monday_hours):
        await pipeline.handle(envelope(), now=OPEN_NOW)
        await tasks.drain()
        assert supervisor.sent == []

    @pytest.mark.asyncio
    async def test_allowlisted_contact_gets_welcome(self, pipeline, supervisor, db, tasks, monday_hours):
        add_auto_reply_contact(db, PHONE)
        db.commit()

        await pipeline.handle(envelope(), now=OPEN_NOW)
        await tasks.drain()

        assert len(supervisor.sent) == 1

    @pytest.mark.asyncio
    async def test_out_of_hours_notice_throttled(self, pipeline, supervisor, tasks, monday_hours, allow_all):
        await pipeline.handle(envelope("M1"), now=CLOSED_NOW)
        await tasks.drain()
        await pipeline.handle(envelope("M2"), now=CLOSED_NOW)
        await tasks.drain()

        assert [content["text"] for _, content, _ in supervisor.sent] == [DEFAULT_OUT_OF_HOURS_MESSAGE]

    @pytest.mark.asyncio
    async def test_send_failure_does_not_lose_message(self, pipeline, supervisor, db, tasks, monday_hours, allow_all):
        supervisor.send_error = RuntimeError("not connected")

        result = await pipeline.handle(envelope(), now=OPEN_NOW)
        await tasks.drain()

        assert result is not None
        assert db.query(Message).filter(Message.sender == "client").count() == 1
        assert db.query(Message).filter(Message.sender == "system").count() == 0
        assert tasks.failure_counts() == {}
