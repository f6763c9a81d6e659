"""Unwrap provider message envelopes and classify their content."""

from dataclasses import dataclass
from typing import Optional

# Envelopes whose real content sits under {"message": {...}}.
WRAPPER_KEYS = (
    "ephemeralMessage",
    "viewOnceMessage",
    "viewOnceMessageV2",
    "viewOnceMessageV2Extension",
    "documentWithCaptionMessage",
    "editedMessage",
)

# Keys that never carry user-visible content on their own.
IGNORED_KEYS = {"messageContextInfo", "senderKeyDistributionMessage", "protocolMessage"}

OTHER_KEYS = {
    "contactMessage",
    "contactsArrayMessage",
    "locationMessage",
    "liveLocationMessage",
    "pollCreationMessage",
    "pollCreationMessageV3",
    "reactionMessage",
    "buttonsResponseMessage",
    "listResponseMessage",
    "templateButtonReplyMessage",
}

MEDIA_LOADING = "loading"


@dataclass(frozen=True)
class MediaSpec:
    message_type: str
    folder: str
    file_prefix: str
    default_mimetype: str
    label: str
    failure_label: str
    fixed_extension: Optional[str] = None


MEDIA_SPECS = {
    "imageMessage": MediaSpec("image", "images", "img", "image/jpeg", "[Imagem]", "[Imagem - erro ao carregar]"),
    "videoMessage": MediaSpec("video", "videos", "video", "video/mp4", "[Vídeo]", "[Vídeo - erro ao carregar]"),
    "audioMessage": MediaSpec(
        "audio", "audios", "audio", "audio/ogg", "🎤 Áudio", "[Áudio - erro ao carregar]", fixed_extension="ogg"
    ),
    "documentMessage": MediaSpec(
        "document", "documents", "doc", "application/octet-stream", "[Documento]", "[Documento - erro ao carregar]"
    ),
    "stickerMessage": MediaSpec(
        "sticker", "stickers", "sticker", "image/webp", "[Figurinha]", "[Figurinha - erro ao carregar]",
        fixed_extension="webp",
    ),
}


@dataclass
class ExtractedContent:
    message_type: str
    content: str
    media: Optional[MediaSpec] = None
    mimetype: Optional[str] = None
    file_name: Optional[str] = None
    quoted_id: Optional[str] = None

    @property
    def has_media(self) -> bool:
        return self.media is not None


def _inner_message(node: dict) -> Optional[dict]:
    for key in WRAPPER_KEYS:
        wrapper = node.get(key)
        if isinstance(wrapper, dict) and isinstance(wrapper.get("message"), dict):
            return wrapper["message"]
    protocol = node.get("protocolMessage")
    if isinstance(protocol, dict) and isinstance(protocol.get("editedMessage"), dict):
        return protocol["editedMessage"]
    return None


def unwrap_message(message: Optional[dict], max_depth: int = 5) -> Optional[dict]:
    """Peel view-once/ephemeral/edited envelopes, at most `max_depth` levels."""
    current = message
    for _ in range(max_depth):
        if not isinstance(current, dict):
            return None
        inner = _inner_message(current)
        if inner is None:
            return current
        current = inner
    return current if isinstance(current, dict) else None


def _quoted_id(node: dict) -> Optional[str]:
    context = node.get("contextInfo") if isinstance(node, dict) else None
    if isinstance(context, dict):
        return context.get("stanzaId")
    return None


def classify_content(message: dict) -> Optional[ExtractedContent]:
    """Map unwrapped content to a message type and display text; None when nothing to record."""
    if not message:
        return None

    if "conversation" in message or "extendedTextMessage" in message:
        extended = message.get("extendedTextMessage") or {}
        text = message.get("conversation") or extended.get("text") or ""
        return ExtractedContent("text", text, quoted_id=_quoted_id(extended))

    for key, spec in MEDIA_SPECS.items():
        node = message.get(key)
        if not isinstance(node, dict):
            continue
        file_name = node.get("fileName")
        if spec.message_type == "document":
            content = f"[Documento: {file_name or 'arquivo'}]"
        else:
            content = node.get("caption") or spec.label
        return ExtractedContent(
            spec.message_type,
            content,
            media=spec,
            mimetype=node.get("mimetype") or spec.default_mimetype,
            file_name=file_name,
            quoted_id=_quoted_id(node),
        )

    keys = set(message) - IGNORED_KEYS
    if not keys:
        return None
    if keys & OTHER_KEYS:
        return ExtractedContent("other", "[Mídia não suportada]")
    return ExtractedContent("unknown", "[Mensagem não suportada]")


FAILURE_LABELS = {spec.message_type: spec.failure_label for spec in MEDIA_SPECS.values()}


def failure_label(message_type: str) -> str:
    return FAILURE_LABELS.get(message_type, "[Mídia - erro ao carregar]")
