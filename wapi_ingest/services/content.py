"""
Content-type detection and text extraction from message payloads.
"""
from typing import Any, Dict, Optional

from wapi_ingest.models.message import ContentType
from wapi_ingest.services import payload as fields


CONTENT_TYPE_FIELDS = ("messageType", "type", "mediaType")

CONTENT_TYPE_ALIASES = {
    "text": ContentType.TEXT,
    "chat": ContentType.TEXT,
    "conversation": ContentType.TEXT,
    "extendedtextmessage": ContentType.TEXT,
    "image": ContentType.IMAGE,
    "imagemessage": ContentType.IMAGE,
    "photo": ContentType.IMAGE,
    "audio": ContentType.AUDIO,
    "audiomessage": ContentType.AUDIO,
    "ptt": ContentType.AUDIO,
    "voice": ContentType.AUDIO,
    "video": ContentType.VIDEO,
    "videomessage": ContentType.VIDEO,
    "document": ContentType.DOCUMENT,
    "documentmessage": ContentType.DOCUMENT,
    "documentwithcaptionmessage": ContentType.DOCUMENT,
    "file": ContentType.DOCUMENT,
    "sticker": ContentType.STICKER,
    "stickermessage": ContentType.STICKER,
}

# Presence of any of these containers identifies the content type
MEDIA_CONTAINERS = {
    ContentType.IMAGE: ("imageMessage", "image"),
    ContentType.VIDEO: ("videoMessage", "video"),
    ContentType.AUDIO: ("audioMessage", "audio", "pttMessage"),
    ContentType.DOCUMENT: ("documentMessage", "documentWithCaptionMessage.message.documentMessage", "document"),
    ContentType.STICKER: ("stickerMessage", "sticker"),
}

TEXT_FIELDS = (
    "conversation",
    "extendedTextMessage.text",
    "text.message",
    "text.text",
    "text.body",
    "text",
    "body",
    "message",
)
CAPTION_FIELDS = ("caption",)
FILE_NAME_FIELDS = ("fileName", "filename", "title")


def declared_content_type(payload: Dict[str, Any]) -> Optional[ContentType]:
    """Content type named explicitly by a ``type``-like field, if recognizable."""
    for layer in fields.envelope_layers(payload):
        for name in CONTENT_TYPE_FIELDS:
            value = layer.get(name)
            if isinstance(value, str):
                content_type = CONTENT_TYPE_ALIASES.get(value.strip().lower())
                if content_type is not None:
                    return content_type
    return None


def detect_content_type(payload: Dict[str, Any]) -> ContentType:
    declared = declared_content_type(payload)
    if declared is not None:
        return declared
    layers = fields.layers(payload)
    for content_type, containers in MEDIA_CONTAINERS.items():
        if fields.first_value(layers, containers) is not None:
            return content_type
    return ContentType.TEXT


def container(payload: Dict[str, Any], content_type: ContentType) -> Optional[Dict[str, Any]]:
    """The type-specific container dict (e.g. ``imageMessage``), if present."""
    layers = fields.layers(payload)
    for name in MEDIA_CONTAINERS.get(content_type, ()):
        for layer in layers:
            value = fields.get_path(layer, name)
            if isinstance(value, dict) and value:
                return value
    return None


def extract_text(payload: Dict[str, Any], content_type: ContentType) -> Optional[str]:
    """Text body for text messages, caption (or file name) for media."""
    layers = fields.layers(payload)
    if content_type is ContentType.TEXT:
        return fields.first_string(layers, TEXT_FIELDS)

    media = container(payload, content_type)
    scoped = [media] if media else []
    caption = fields.first_string(scoped + layers, CAPTION_FIELDS)
    if caption:
        return caption
    if content_type is ContentType.DOCUMENT:
        return fields.first_string(scoped + layers, FILE_NAME_FIELDS)
    return None
