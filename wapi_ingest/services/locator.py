"""
Media reference location across heterogeneous payload shapes.

Field names are kept as ordered candidate lists per container so new
gateway payload variants are supported by extending a tuple.
"""
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from wapi_ingest.models.message import ContentType
from wapi_ingest.services import payload as fields
from wapi_ingest.services.content import MEDIA_CONTAINERS


class ReferenceKind(str, Enum):
    INLINE_DATA = "inline-data"
    REMOTE_URL = "remote-url"
    FETCH_BY_ID = "fetch-by-id"


@dataclass(frozen=True)
class MediaReference:
    kind: ReferenceKind
    value: str
    mime: Optional[str] = None


WHATSAPP_CDN = "https://mmg.whatsapp.net"

# Inside a type-specific container, in priority order
CONTAINER_INLINE_FIELDS = ("base64", "mediaBase64", "fileBase64", "b64")
CONTAINER_URL_FIELDS = ("url", "mediaUrl", "fileUrl", "downloadUrl", "link")
CONTAINER_PATH_FIELDS = ("directPath",)

# Generic payload-level fields, tried after every container
GENERIC_INLINE_FIELDS = ("base64", "mediaBase64", "fileBase64", "media.base64")
GENERIC_URL_FIELDS = ("mediaUrl", "url", "fileUrl", "downloadUrl", "media.url")

MIME_FIELDS = ("mimetype", "mimeType", "mime_type", "contentType", "media.mimetype")
MEDIA_KEY_FIELDS = ("mediaKey", "media_key", "mediakey", "media.mediaKey")

_DATA_URL = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?:;[\w=.-]+)*;base64,", re.IGNORECASE)
_BASE64_CHARS = re.compile(r"^[A-Za-z0-9+/=\s_-]+$")


def is_remote_url(value: str) -> bool:
    return value.startswith(("http://", "https://"))


def is_encrypted_cdn_url(url: str) -> bool:
    """WhatsApp CDN blobs (mmg.whatsapp.net, ``.enc`` paths) are encrypted."""
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    return host.endswith(".whatsapp.net") or parsed.path.lower().endswith(".enc")


def parse_data_url(value: str) -> Optional[str]:
    """MIME declared by a ``data:`` URL, or None when absent or not a data URL."""
    match = _DATA_URL.match(value)
    return match.group("mime") if match else None


def _classify(value: Any, *, inline_field: bool, mime: Optional[str]) -> Optional[MediaReference]:
    if not isinstance(value, str) or not value.strip():
        return None
    value = value.strip()
    if value.startswith("data:"):
        return MediaReference(ReferenceKind.INLINE_DATA, value, parse_data_url(value) or mime)
    if is_remote_url(value):
        return MediaReference(ReferenceKind.REMOTE_URL, value, mime)
    if inline_field and _BASE64_CHARS.match(value):
        return MediaReference(ReferenceKind.INLINE_DATA, value, mime)
    return None


def _from_container(node: Any, mime: Optional[str]) -> Optional[MediaReference]:
    if isinstance(node, str):
        return _classify(node, inline_field=False, mime=mime)
    if not isinstance(node, dict):
        return None

    mime = fields.first_string([node], MIME_FIELDS) or mime
    for name in CONTAINER_INLINE_FIELDS:
        reference = _classify(node.get(name), inline_field=True, mime=mime)
        if reference:
            return reference
    for name in CONTAINER_URL_FIELDS:
        reference = _classify(node.get(name), inline_field=False, mime=mime)
        if reference:
            return reference
    for name in CONTAINER_PATH_FIELDS:
        path = node.get(name)
        if isinstance(path, str) and path.startswith("/"):
            return MediaReference(ReferenceKind.REMOTE_URL, f"{WHATSAPP_CDN}{path}", mime)
    return None


def declared_mime(payload: Dict[str, Any], content_type: ContentType) -> Optional[str]:
    layers = fields.layers(payload)
    for name in MEDIA_CONTAINERS.get(content_type, ()):
        for layer in layers:
            node = fields.get_path(layer, name)
            if isinstance(node, dict):
                mime = fields.first_string([node], MIME_FIELDS)
                if mime:
                    return mime
    return fields.first_string(layers, MIME_FIELDS)


def locate_media(
    payload: Dict[str, Any],
    content_type: ContentType,
    provider_message_id: Optional[str] = None,
) -> Optional[MediaReference]:
    """Best candidate media reference for a message, first match wins.

    Non-text content with no usable field degenerates to a provider
    download by message id; text content yields None.
    """
    if content_type is ContentType.TEXT:
        return None

    layers = fields.layers(payload)
    mime = declared_mime(payload, content_type)

    for name in MEDIA_CONTAINERS.get(content_type, ()):
        for layer in layers:
            reference = _from_container(fields.get_path(layer, name), mime)
            if reference:
                return reference

    for layer in layers:
        for name in GENERIC_INLINE_FIELDS:
            reference = _classify(fields.get_path(layer, name), inline_field=True, mime=mime)
            if reference:
                return reference
        for name in GENERIC_URL_FIELDS:
            reference = _classify(fields.get_path(layer, name), inline_field=False, mime=mime)
            if reference:
                return reference

    if provider_message_id:
        return MediaReference(ReferenceKind.FETCH_BY_ID, provider_message_id, mime)
    return None


def locate_media_key(payload: Dict[str, Any], content_type: ContentType) -> Optional[str]:
    """Base64 media key for encrypted CDN blobs, container first."""
    layers = fields.layers(payload)
    for name in MEDIA_CONTAINERS.get(content_type, ()):
        for layer in layers:
            node = fields.get_path(layer, name)
            if isinstance(node, dict):
                key = fields.first_string([node], MEDIA_KEY_FIELDS)
                if key:
                    return key
    return fields.first_string(layers, MEDIA_KEY_FIELDS)
