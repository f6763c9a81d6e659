import json
from datetime import datetime, timezone

import pytest

from whatsdesk.services.identity_service import (
    IdentityContext,
    IdentityResolver,
    from_phone_fields,
    is_group_or_broadcast,
    is_opaque_id,
    normalize_phone,
    normalize_widened,
    resolve_phone,
)
from whatsdesk.services.ticket_service import reconcile_ticket, save_message


def envelope(**key):
    return {"key": {"fromMe": False, "id": "MSG1", **key}, "message": {"conversation": "oi"}}


class TestNormalizePhone:
    def test_local_number_gets_country_code(self):
        assert normalize_phone("11999990000") == "5511999990000"
        assert normalize_phone("1133334444") == "551133334444"

    def test_country_code_number_unchanged(self):
        assert normalize_phone("5511999990000") == "5511999990000"
        assert normalize_phone("551133334444") == "551133334444"

    def test_jid_suffix_and_device_are_stripped(self):
        assert normalize_phone("5511999990000@s.whatsapp.net") == "5511999990000"
        assert normalize_phone("5511999990000:12@s.whatsapp.net") == "5511999990000"

    def test_other_country_codes_accepted(self):
        assert normalize_phone("447911123456") == "447911123456"
        assert normalize_phone("77011234567890") == "77011234567890"

    def test_nine_digits_rejected(self):
        assert normalize_phone("999990000") is None

    def test_too_long_rejected(self):
        assert normalize_phone("1234567890123456") is None

    def test_empty(self):
        assert normalize_phone(None) is None
        assert normalize_phone("") is None
        assert normalize_phone("abc@s.whatsapp.net") is None

    def test_widened_range(self):
        assert normalize_widened("12345678@lid") == "12345678"
        assert normalize_widened("1234567@lid") is None
        assert normalize_widened("1" * 25 + "@lid") == "1" * 25


class TestJidHelpers:
    def test_opaque_id(self):
        assert is_opaque_id("123456789012345@lid") is True
        assert is_opaque_id("5511999990000@s.whatsapp.net") is False
        assert is_opaque_id(None) is False

    def test_group_and_broadcast(self):
        assert is_group_or_broadcast("120363025@g.us") is True
        assert is_group_or_broadcast("status@broadcast") is True
        assert is_group_or_broadcast("5511999990000@s.whatsapp.net") is False


class TestIdentityContext:
    def test_phone_fields_come_before_routing_jid(self):
        ctx = IdentityContext.from_envelope(
            envelope(remoteJid="5511888887777@s.whatsapp.net", senderPn="5511999990000@s.whatsapp.net")
        )
        assert ctx.candidates[0] == "5511999990000@s.whatsapp.net"
        assert from_phone_fields(ctx) == "5511999990000"

    def test_opaque_ids_are_set_aside(self):
        ctx = IdentityContext.from_envelope(envelope(remoteJid="987654321012345@lid"))
        assert ctx.candidates == []
        assert ctx.opaque_ids == ["987654321012345@lid"]


class TestResolvePhone:
    def test_plain_jid(self):
        assert resolve_phone(envelope(remoteJid="5511999990000@s.whatsapp.net")) == "5511999990000"

    def test_opaque_with_alt_phone(self):
        env = envelope(remoteJid="987654321012345@lid", remoteJidAlt="5511999990000@s.whatsapp.net")
        assert resolve_phone(env) == "5511999990000"

    def test_resolution_is_idempotent(self):
        env = envelope(remoteJid="11999990000@s.whatsapp.net")
        assert resolve_phone(env) == resolve_phone(env) == "5511999990000"

    def test_opaque_digits_as_last_resort(self):
        assert resolve_phone(envelope(remoteJid="987654321012345@lid")) == "987654321012345"

    def test_unresolvable(self):
        assert resolve_phone(envelope(remoteJid="123@lid")) is None
        assert resolve_phone({"key": {}}) is None

    def test_opaque_id_resolved_from_history(self, db):
        now = datetime(2024, 1, 15, 13, 0, tzinfo=timezone.utc)
        outcome = reconcile_ticket(db, "5511999990000", now=now)
        stored_key = {"remoteJid": "987654321012345@lid", "fromMe": False, "id": "OLD1"}
        save_message(db, outcome.ticket.id, "client", "oi", whatsapp_key=json.dumps(stored_key), now=now)
        db.commit()

        assert resolve_phone(envelope(remoteJid="987654321012345@lid"), db) == "5511999990000"

    def test_history_ignores_partial_matches(self, db):
        now = datetime(2024, 1, 15, 13, 0, tzinfo=timezone.utc)
        outcome = reconcile_ticket(db, "5511999990000", now=now)
        stored_key = {"remoteJid": "5511999990000@s.whatsapp.net", "note": "987654321012345@lid"}
        save_message(db, outcome.ticket.id, "client", "oi", whatsapp_key=json.dumps(stored_key), now=now)
        db.commit()

        assert resolve_phone(envelope(remoteJid="987654321012345@lid"), db) == "987654321012345"


class TestCustomStrategies:
    def test_first_match_wins(self):
        calls = []

        def first(ctx):
            calls.append("first")
            return "5511000000000"

        def second(ctx):
            calls.append("second")
            return "5511111111111"

        resolver = IdentityResolver(strategies=(first, second))
        assert resolver.resolve(envelope(remoteJid="x@lid")) == "5511000000000"
        assert calls == ["first"]

    @pytest.mark.parametrize("strategies", [()])
    def test_no_strategies_returns_none(self, strategies):
        assert IdentityResolver(strategies).resolve(envelope(remoteJid="5511999990000@s.whatsapp.net")) is None
