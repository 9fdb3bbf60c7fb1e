"""
Event classification for inbound gateway webhooks.
"""
from enum import Enum
from typing import Any, Dict, Optional

from wapi_ingest.services import payload as fields
from wapi_ingest.services.content import declared_content_type


class EventKind(str, Enum):
    MESSAGE_RECEIVED = "message_received"
    MESSAGE_SENT = "message_sent"
    STATUS_UPDATE = "status_update"
    CONNECTION_UPDATE = "connection_update"
    UNKNOWN = "unknown"


EVENT_NAME_FIELDS = ("event", "eventType", "type")

# Normalized (lower case, "_" -> ".") event names per kind
RECEIVED_EVENTS = {"webhookreceived", "message", "messages.upsert", "message.received", "received.callback"}
SENT_EVENTS = {"webhookdelivery", "send.message", "message.sent", "delivery.callback"}
STATUS_EVENTS = {"webhookstatus", "message.ack", "messages.update", "message.status", "message.status.callback"}
CONNECTION_EVENTS = {"webhookconnected", "webhookdisconnected", "connection.update", "connected.callback",
                     "disconnected.callback"}

MESSAGE_MARKERS = (
    "message", "msgContent", "text", "body", "conversation", "caption",
    "imageMessage", "videoMessage", "audioMessage", "documentMessage", "stickerMessage",
    "image", "video", "audio", "document", "sticker",
)
ACK_FIELDS = ("ack",)
DELIVERY_STATES = {"pending", "sent", "server.ack", "delivery", "delivered", "delivery.ack", "read", "played",
                   "error", "failed"}
CONNECTIVITY_FIELDS = ("connected", "state", "status")


def normalize_event_name(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not value.strip():
        return None
    return value.strip().replace("_", ".").replace("-", ".").lower()


def event_name(payload: Dict[str, Any]) -> Optional[str]:
    """The explicit event name, if the payload carries one from the known vocabulary."""
    known = RECEIVED_EVENTS | SENT_EVENTS | STATUS_EVENTS | CONNECTION_EVENTS
    for name in EVENT_NAME_FIELDS:
        normalized = normalize_event_name(payload.get(name))
        if normalized in known:
            return normalized
    return None


def _has_any(payload: Dict[str, Any], names) -> bool:
    return any(
        name in layer and layer[name] is not None
        for layer in fields.envelope_layers(payload)
        for name in names
    )


def _message_direction(payload: Dict[str, Any]) -> EventKind:
    if fields.is_from_me(payload):
        return EventKind.MESSAGE_SENT
    return EventKind.MESSAGE_RECEIVED


def _has_delivery_state(payload: Dict[str, Any]) -> bool:
    if _has_any(payload, ACK_FIELDS):
        return True
    status = normalize_event_name(fields.first_string(fields.envelope_layers(payload), ("status",)))
    return status in DELIVERY_STATES and fields.provider_message_id(payload) is not None


def classify_event(payload: Dict[str, Any]) -> EventKind:
    """Map an arbitrary webhook payload to a canonical event kind.

    A "received" event name still means outbound traffic when the message is
    marked as sent by us, which is how the gateway reports messages typed on
    the phone itself.
    """
    if not isinstance(payload, dict):
        return EventKind.UNKNOWN

    name = event_name(payload)
    if name in RECEIVED_EVENTS:
        return _message_direction(payload)
    if name in SENT_EVENTS:
        return EventKind.MESSAGE_SENT
    if name in STATUS_EVENTS:
        return EventKind.STATUS_UPDATE
    if name in CONNECTION_EVENTS:
        return EventKind.CONNECTION_UPDATE

    if _has_any(payload, MESSAGE_MARKERS) or declared_content_type(payload) is not None:
        return _message_direction(payload)

    if _has_delivery_state(payload):
        return EventKind.STATUS_UPDATE

    if _has_any(payload, CONNECTIVITY_FIELDS):
        return EventKind.CONNECTION_UPDATE

    return EventKind.UNKNOWN
