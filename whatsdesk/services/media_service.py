"""Download inbound media and store it under the media directory."""

import asyncio
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional

import aiofiles
from sqlalchemy.orm import Session

from whatsdesk.config import settings
from whatsdesk.database import SessionLocal, get_db_context
from whatsdesk.logging_config import LoggerAdapter, get_logger
from whatsdesk.models import Message
from whatsdesk.services.event_service import EventBus
from whatsdesk.services.ticket_service import message_payload, utcnow
from whatsdesk.services.whatsapp.content import ExtractedContent, MediaSpec

logger = get_logger("media_service")


def media_extension(spec: MediaSpec, mimetype: Optional[str]) -> str:
    if spec.fixed_extension:
        return spec.fixed_extension
    subtype = (mimetype or spec.default_mimetype).split("/")[-1].split(";")[0].strip()
    return subtype or "bin"


def build_file_name(spec: MediaSpec, mimetype: Optional[str]) -> str:
    return f"{spec.file_prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}.{media_extension(spec, mimetype)}"


async def store_media(data: bytes, spec: MediaSpec, mimetype: Optional[str], media_dir: Optional[str] = None) -> str:
    """Write bytes to disk without blocking the event loop; returns the public media URL."""
    file_name = build_file_name(spec, mimetype)
    directory = Path(media_dir or settings.media_dir) / spec.folder
    directory.mkdir(parents=True, exist_ok=True)
    async with aiofiles.open(directory / file_name, "wb") as f:
        await f.write(data)
    return f"{settings.media_url_prefix}/{spec.folder}/{file_name}"


def set_media_url(db: Session, message_id: int, media_url: str, now: Optional[datetime] = None) -> Optional[Message]:
    message = db.query(Message).filter(Message.id == message_id).first()
    if not message:
        return None
    message.media_url = media_url
    message.updated_at = now or utcnow()
    return message


def mark_media_failed(db: Session, message_id: int, label: str, now: Optional[datetime] = None) -> Optional[Message]:
    """Replace the loading placeholder with an explicit failure marker."""
    message = db.query(Message).filter(Message.id == message_id).first()
    if not message:
        return None
    message.media_url = None
    message.content = label
    message.updated_at = now or utcnow()
    return message


async def fetch_and_store(
    supervisor,
    envelope: dict,
    message_id: int,
    phone: str,
    extracted: ExtractedContent,
    session_factory=None,
    event_bus: Optional[EventBus] = None,
    media_dir: Optional[str] = None,
) -> Optional[str]:
    """Download the media of `envelope` and point message `message_id` at the stored file.

    Any failure, including cancellation on shutdown, leaves the message with
    the failure marker instead of the loading placeholder.
    """
    spec = extracted.media
    session_factory = session_factory or SessionLocal
    log = LoggerAdapter(logger, {"message_id": message_id, "type": spec.message_type})
    media_url = None
    try:
        data = await supervisor.download_media(envelope)
        if not data:
            raise ValueError("empty media payload")
        media_url = await store_media(data, spec, extracted.mimetype, media_dir)
    except asyncio.CancelledError:
        with get_db_context(session_factory) as db:
            mark_media_failed(db, message_id, spec.failure_label)
        log.warning("Media fetch cancelled")
        raise
    except Exception as e:
        log.error(f"Media fetch failed: {e}")

    with get_db_context(session_factory) as db:
        if media_url:
            message = set_media_url(db, message_id, media_url)
        else:
            message = mark_media_failed(db, message_id, spec.failure_label)
        payload = message_payload(message, phone, action="media") if message else None

    if payload and event_bus is not None:
        event_bus.emit("message", payload)
    return media_url
