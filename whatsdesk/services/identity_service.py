"""Resolve the canonical contact phone of an inbound message envelope.

WhatsApp may hide the real number of a contact behind an opaque linked id
(``...@lid``). Resolution runs an ordered chain of strategies, first match wins:

1. explicit phone fields of the message key, then the routing jid
2. a previous message stored for the same opaque id
3. the digits of the opaque id itself
"""

import json
import re
from dataclasses import dataclass, field
from typing import Callable, Optional

from sqlalchemy.orm import Session

from whatsdesk.logging_config import get_logger, mask_phone
from whatsdesk.models import Message, Ticket

logger = get_logger("identity_service")

OPAQUE_MARKERS = ("@lid",)

# Key fields carrying the real phone, checked before the generic routing fields.
PHONE_KEY_FIELDS = ("senderPn", "participantPn", "remoteJidAlt", "participantAlt")
ROUTING_KEY_FIELDS = ("remoteJid", "participant")

HISTORY_LOOKUP_LIMIT = 50

_SEPARATORS = re.compile(r"[@:]")
_NON_DIGITS = re.compile(r"\D")


def is_opaque_id(value: str | None) -> bool:
    if not value:
        return False
    return any(marker in value for marker in OPAQUE_MARKERS)


def is_group_or_broadcast(jid: str | None) -> bool:
    if not jid:
        return False
    return jid.endswith("@g.us") or jid.endswith("@broadcast") or jid == "status@broadcast"


def _digits(raw: str | None) -> str:
    if not raw:
        return ""
    base = _SEPARATORS.split(raw, maxsplit=1)[0]
    return _NON_DIGITS.sub("", base)


def normalize_phone(raw: str | None) -> Optional[str]:
    """Normalize a jid or phone text to canonical digits, or None if it is not a phone."""
    digits = _digits(raw)
    if not digits:
        return None
    if digits.startswith("55") and 12 <= len(digits) <= 13:
        return digits
    if 10 <= len(digits) <= 11:
        return f"55{digits}"
    if 10 <= len(digits) <= 15:
        return digits
    return None


def normalize_widened(raw: str | None) -> Optional[str]:
    """Looser acceptance used only for opaque-id fallbacks."""
    digits = _digits(raw)
    if 8 <= len(digits) <= 25:
        return digits
    return None


@dataclass
class IdentityContext:
    key: dict
    db: Optional[Session] = None
    candidates: list[str] = field(default_factory=list)
    opaque_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_envelope(cls, envelope: dict, db: Optional[Session] = None) -> "IdentityContext":
        key = envelope.get("key") or {}
        ctx = cls(key=key, db=db)
        for name in PHONE_KEY_FIELDS + ROUTING_KEY_FIELDS:
            value = key.get(name)
            if not value or not isinstance(value, str):
                continue
            if is_opaque_id(value):
                if value not in ctx.opaque_ids:
                    ctx.opaque_ids.append(value)
                continue
            if value not in ctx.candidates:
                ctx.candidates.append(value)
        return ctx


Strategy = Callable[[IdentityContext], Optional[str]]


def from_phone_fields(ctx: IdentityContext) -> Optional[str]:
    for candidate in ctx.candidates:
        phone = normalize_phone(candidate)
        if phone:
            return phone
    return None


def _key_mentions(stored_key: str | None, opaque_id: str) -> bool:
    try:
        key = json.loads(stored_key or "{}")
    except (TypeError, ValueError):
        return False
    if not isinstance(key, dict):
        return False
    return key.get("remoteJid") == opaque_id or key.get("participant") == opaque_id


def from_message_history(ctx: IdentityContext) -> Optional[str]:
    """Reuse the phone of an earlier message stored under the same opaque id."""
    if ctx.db is None or not ctx.opaque_ids or ctx.candidates:
        return None
    for opaque_id in ctx.opaque_ids:
        rows = (
            ctx.db.query(Message.whatsapp_key, Ticket.phone)
            .join(Ticket, Ticket.id == Message.ticket_id)
            .filter(Message.whatsapp_key.like(f"%{opaque_id}%"))
            .order_by(Message.id.desc())
            .limit(HISTORY_LOOKUP_LIMIT)
            .all()
        )
        for stored_key, phone in rows:
            if not _key_mentions(stored_key, opaque_id):
                continue
            resolved = normalize_widened(phone)
            if resolved:
                logger.info(f"Resolved opaque id from history: {mask_phone(resolved)}")
                return resolved
    return None


def from_opaque_digits(ctx: IdentityContext) -> Optional[str]:
    if ctx.candidates:
        return None
    for opaque_id in ctx.opaque_ids:
        resolved = normalize_widened(opaque_id)
        if resolved:
            logger.warning("Using opaque id digits as contact phone")
            return resolved
    return None


DEFAULT_STRATEGIES: tuple[Strategy, ...] = (from_phone_fields, from_message_history, from_opaque_digits)


class IdentityResolver:
    """Run resolution strategies in order; the first non-empty result wins."""

    def __init__(self, strategies: tuple[Strategy, ...] = DEFAULT_STRATEGIES):
        self.strategies = strategies

    def resolve(self, envelope: dict, db: Optional[Session] = None) -> Optional[str]:
        ctx = IdentityContext.from_envelope(envelope, db)
        for strategy in self.strategies:
            phone = strategy(ctx)
            if phone:
                return phone
        logger.warning(
            "Unresolvable contact identity",
            extra={"context": {"candidates": len(ctx.candidates), "opaque_ids": len(ctx.opaque_ids)}},
        )
        return None


resolver = IdentityResolver()


def resolve_phone(envelope: dict, db: Optional[Session] = None) -> Optional[str]:
    return resolver.resolve(envelope, db)
