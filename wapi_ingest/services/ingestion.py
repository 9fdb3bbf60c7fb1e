"""
Ingestion orchestrator for gateway webhooks.

Per message event:

    classified -> conversation-resolved -> content-extracted -> (skip if empty)
    -> stored -> media-cached (eager, bounded) -> acknowledged
    -> media-cached (background)

Media failures never prevent the message itself from being stored; the row is
kept with a null media reference and the background pass may fill it later.
"""
import uuid
from concurrent.futures import Future, TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError

from wapi_ingest.api.metrics import record_media_outcome, record_webhook_event
from wapi_ingest.core.config import Settings
from wapi_ingest.core.database import session_scope, utcnow
from wapi_ingest.core.errors import MediaCacheError
from wapi_ingest.core.logging import get_logger
from wapi_ingest.models.connection import Connection
from wapi_ingest.models.message import ContentType, Direction, Message, MessageStatus, can_transition
from wapi_ingest.services import payload as fields
from wapi_ingest.services.classifier import EventKind, classify_event, event_name
from wapi_ingest.services.content import detect_content_type, extract_text
from wapi_ingest.services.diagnostics import DiagnosticBuffer
from wapi_ingest.services.identifiers import (
    is_broadcast,
    is_group_identifier,
    normalize_phone,
    normalize_remote_id,
    phone_from_remote_id,
)
from wapi_ingest.services.locator import MediaReference, declared_mime, locate_media, locate_media_key
from wapi_ingest.services.media_cache import CachedMedia, MediaCache, MediaRequest
from wapi_ingest.services.repository import IngestStore
from wapi_ingest.services.resolver import ConversationResolver
from wapi_ingest.services.workers import MediaWorkerPool

logger = get_logger(__name__)

GENERATED_ID_PREFIX = "wapi_"

CHAT_ID_FIELDS = ("chatId", "chat_id", "chat.id", "remoteJid", "key.remoteJid", "phone")
INBOUND_CHAT_FALLBACK_FIELDS = ("from", "sender.id")
OUTBOUND_CHAT_FALLBACK_FIELDS = ("to", "recipient", "recipient.id")
GROUP_FLAG_FIELDS = ("isGroup", "is_group", "chat.isGroup")
PHONE_FIELDS = ("senderPn", "key.senderPn", "chat.phone", "sender.phone", "phone")
CONTACT_NAME_FIELDS = ("pushName", "senderName", "sender.pushName", "sender.name", "notifyName", "chat.name")
GROUP_NAME_FIELDS = ("groupMetadata.subject", "groupSubject", "subject", "chat.name")
TIMESTAMP_FIELDS = ("moment", "messageTimestamp", "timestamp", "t")

STATUS_ID_FIELDS = ("messageId", "message_id", "key.id", "id")
STATUS_ID_LIST_FIELDS = ("ids", "messageIds")

ACK_STATUSES = {
    -1: MessageStatus.FAILED,
    0: MessageStatus.FAILED,
    1: MessageStatus.SENT,
    2: MessageStatus.DELIVERED,
    3: MessageStatus.READ,
    4: MessageStatus.PLAYED,
}

STATUS_NAMES = {
    "pending": MessageStatus.PENDING,
    "sent": MessageStatus.SENT,
    "server.ack": MessageStatus.SENT,
    "delivery": MessageStatus.DELIVERED,
    "delivered": MessageStatus.DELIVERED,
    "delivery.ack": MessageStatus.DELIVERED,
    "read": MessageStatus.READ,
    "played": MessageStatus.PLAYED,
    "error": MessageStatus.FAILED,
    "failed": MessageStatus.FAILED,
}

DISCONNECTED_EVENTS = {"webhookdisconnected", "disconnected.callback"}


class IngestOutcome(str, Enum):
    STORED = "stored"
    DUPLICATE = "duplicate"
    RECONCILED = "reconciled"
    STATUS_UPDATED = "status_updated"
    CONNECTION_NOTED = "connection_noted"
    IGNORED = "ignored"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class IngestResult:
    event: EventKind
    outcome: IngestOutcome
    message_id: Optional[str] = None
    media_url: Optional[str] = None
    detail: Optional[str] = None
    error: Optional[str] = None

    def to_ack(self) -> Dict[str, Any]:
        """Acknowledgment body returned to the gateway."""
        return {
            "received": True,
            "event": self.event.value,
            "outcome": self.outcome.value,
            "message_id": self.message_id,
            "media_url": self.media_url,
            "detail": self.detail,
            "error": self.error,
        }


@dataclass
class MessageEnvelope:
    """Routing and content fields pulled out of a message event."""
    instance_id: Optional[str]
    provider_id: Optional[str]
    inbound: bool
    raw_chat_id: Optional[str]
    is_group: bool
    phone: Optional[str]
    display_name: Optional[str]
    timestamp: datetime
    content_type: ContentType
    text: Optional[str]
    reference: Optional[MediaReference]
    media_key: Optional[str]
    declared_mime: Optional[str]

    @property
    def remote_id(self) -> Optional[str]:
        if not self.raw_chat_id:
            return None
        return normalize_remote_id(self.raw_chat_id, self.is_group)

    @property
    def has_content(self) -> bool:
        return self.reference is not None or bool(self.text)

    @property
    def has_media(self) -> bool:
        return self.content_type.is_media and self.reference is not None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Epoch seconds, epoch milliseconds or ISO-8601, as naive UTC."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        if not value.replace(".", "", 1).isdigit():
            try:
                parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                return None
            if parsed.tzinfo is not None:
                parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
            return parsed
        value = float(value)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e12 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            return None
    return None


def parse_envelope(payload: Dict[str, Any], inbound: bool) -> MessageEnvelope:
    envelope = fields.envelope_layers(payload)
    all_layers = fields.layers(payload)

    fallback = INBOUND_CHAT_FALLBACK_FIELDS if inbound else OUTBOUND_CHAT_FALLBACK_FIELDS
    raw_chat_id = fields.first_string(envelope, CHAT_ID_FIELDS + fallback)

    is_group = is_group_identifier(raw_chat_id, fields.first_bool(envelope, GROUP_FLAG_FIELDS))

    phone = None
    if not is_group:
        # Anonymized (@lid) chat ids carry no phone; fall back to the sender's phone fields
        phone = phone_from_remote_id(raw_chat_id) or normalize_phone(fields.first_string(envelope, PHONE_FIELDS))

    if is_group:
        display_name = fields.first_string(envelope, GROUP_NAME_FIELDS)
    elif inbound:
        display_name = fields.first_string(envelope, CONTACT_NAME_FIELDS)
    else:
        display_name = None

    timestamp = parse_timestamp(fields.first_value(envelope, TIMESTAMP_FIELDS)) or utcnow()

    provider_id = fields.provider_message_id(payload)
    content_type = detect_content_type(payload)
    text = extract_text(payload, content_type)
    reference = locate_media(payload, content_type, provider_id)

    return MessageEnvelope(
        instance_id=fields.instance_id(payload),
        provider_id=provider_id,
        inbound=inbound,
        raw_chat_id=raw_chat_id,
        is_group=is_group,
        phone=phone,
        display_name=display_name,
        timestamp=timestamp,
        content_type=content_type,
        text=text,
        reference=reference,
        media_key=locate_media_key(payload, content_type) if content_type.is_media else None,
        declared_mime=declared_mime(payload, content_type) if content_type.is_media else None,
    )


def parse_status(payload: Dict[str, Any]) -> Optional[MessageStatus]:
    envelope = fields.envelope_layers(payload)
    ack = fields.first_value(envelope, ("ack",))
    if ack is not None and not isinstance(ack, bool):
        try:
            return ACK_STATUSES.get(int(ack))
        except (TypeError, ValueError):
            pass
    name = fields.first_string(envelope, ("status", "ack"))
    if name:
        return STATUS_NAMES.get(name.strip().lower().replace("_", "."))
    return None


class IngestionOrchestrator:
    """Sequences classification, resolution, deduplication and media caching."""

    def __init__(
        self,
        session_factory,
        media_cache: MediaCache,
        pool: MediaWorkerPool,
        diagnostics: DiagnosticBuffer,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.media_cache = media_cache
        self.pool = pool
        self.diagnostics = diagnostics
        self.settings = settings

    def ingest(self, payload: Any) -> IngestResult:
        """Process one webhook payload. Never raises for malformed input."""
        if not isinstance(payload, dict):
            logger.warning("Webhook payload is not a JSON object", extra={"extra_data": {"type": type(payload).__name__}})
            self.diagnostics.record(None, EventKind.UNKNOWN.value, payload, IngestOutcome.SKIPPED.value)
            record_webhook_event(EventKind.UNKNOWN.value, IngestOutcome.SKIPPED.value)
            return IngestResult(EventKind.UNKNOWN, IngestOutcome.SKIPPED, detail="payload is not an object")

        kind = classify_event(payload)
        instance_id = fields.instance_id(payload)
        entry = self.diagnostics.record(instance_id, kind.value, payload)

        try:
            if kind in (EventKind.MESSAGE_RECEIVED, EventKind.MESSAGE_SENT):
                result = self._handle_message(payload, kind)
            elif kind is EventKind.STATUS_UPDATE:
                result = self._handle_status(payload)
            elif kind is EventKind.CONNECTION_UPDATE:
                result = self._handle_connection(payload)
            else:
                logger.info("Unrecognized webhook event", extra={"extra_data": {
                    "instance_id": instance_id,
                    "keys": list(payload.keys())[:15],
                }})
                result = IngestResult(kind, IngestOutcome.IGNORED, detail="unrecognized event")
        except Exception:
            self.diagnostics.note_outcome(entry, IngestOutcome.ERROR.value)
            record_webhook_event(kind.value, IngestOutcome.ERROR.value)
            raise

        self.diagnostics.note_outcome(entry, result.outcome.value)
        record_webhook_event(kind.value, result.outcome.value)
        return result

    # Message events

    def _skip(self, kind: EventKind, reason: str, **context) -> IngestResult:
        logger.info(f"Webhook event skipped: {reason}", extra={"extra_data": context})
        return IngestResult(kind, IngestOutcome.SKIPPED, detail=reason)

    def _handle_message(self, payload: Dict[str, Any], kind: EventKind) -> IngestResult:
        inbound = kind is EventKind.MESSAGE_RECEIVED
        envelope = parse_envelope(payload, inbound)

        if not envelope.instance_id:
            return self._skip(kind, "missing instance id")
        if not envelope.raw_chat_id:
            return self._skip(kind, "missing chat id", instance_id=envelope.instance_id)
        if is_broadcast(envelope.raw_chat_id):
            return self._skip(kind, "broadcast chat", instance_id=envelope.instance_id)
        if not envelope.has_content:
            return self._skip(kind, "empty content", instance_id=envelope.instance_id,
                              message_id=envelope.provider_id)

        provider_id = envelope.provider_id
        if not provider_id:
            if not inbound:
                return self._skip(kind, "outbound event without message id", instance_id=envelope.instance_id)
            provider_id = f"{GENERATED_ID_PREFIX}{uuid.uuid4().hex}"

        with session_scope(self.session_factory) as db:
            store = IngestStore(db)
            connection = store.find_connection(envelope.instance_id)
            if connection is None:
                return self._skip(kind, "unknown instance", instance_id=envelope.instance_id)
            if envelope.is_group and not connection.accept_groups:
                return self._skip(kind, "group chats disabled", instance_id=envelope.instance_id)

            existing = store.find_message(connection.id, provider_id)
            if existing is not None:
                return self._duplicate(kind, connection, existing, envelope)

            resolver = ConversationResolver(store)
            conversation = resolver.find_or_create(
                connection,
                envelope.remote_id,
                phone=envelope.phone,
                is_group=envelope.is_group,
                display_name=envelope.display_name,
            )

            message = None
            outcome = IngestOutcome.STORED
            try:
                if not inbound:
                    placeholder = store.find_pending_placeholder(
                        conversation.id, self.settings.placeholder_window_seconds
                    )
                    if placeholder is not None and store.reconcile_placeholder(placeholder, provider_id):
                        message = placeholder
                        outcome = IngestOutcome.RECONCILED
                        logger.info("Placeholder reconciled", extra={"extra_data": {
                            "message_id": provider_id,
                            "conversation_id": conversation.id,
                        }})

                if message is None:
                    message = store.insert_message(
                        connection_id=connection.id,
                        conversation_id=conversation.id,
                        provider_id=provider_id,
                        direction=(Direction.INBOUND if inbound else Direction.OUTBOUND).value,
                        content_type=envelope.content_type.value,
                        content=envelope.text,
                        status=(MessageStatus.RECEIVED if inbound else MessageStatus.SENT).value,
                        timestamp=envelope.timestamp,
                    )
            except IntegrityError:
                logger.info("Duplicate message detected via constraint", extra={"extra_data": {
                    "message_id": provider_id,
                }})
                return IngestResult(kind, IngestOutcome.DUPLICATE, message_id=provider_id)

            # Only the delivery that wrote the row counts as activity
            resolver.record_activity(
                conversation,
                at=envelope.timestamp,
                inbound=inbound,
                display_name=envelope.display_name,
                phone=envelope.phone,
                is_group=envelope.is_group,
            )

            if outcome is IngestOutcome.STORED:
                logger.info("Message ingested", extra={"extra_data": {
                    "message_id": provider_id,
                    "conversation_id": conversation.id,
                    "direction": message.direction,
                    "content_type": message.content_type,
                }})

            media_url = None
            if envelope.has_media and not message.media_ref:
                media_url = self._cache_media(store, message, self._media_request(connection, provider_id, envelope))

        return IngestResult(kind, outcome, message_id=provider_id, media_url=media_url)

    def _duplicate(self, kind: EventKind, connection: Connection, existing: Message,
                   envelope: MessageEnvelope) -> IngestResult:
        logger.info("Duplicate message received", extra={"extra_data": {"message_id": existing.provider_id}})
        if envelope.has_media and not existing.media_ref:
            request = self._media_request(connection, existing.provider_id, envelope)
            self.pool.submit(self._background_media, existing.id, request, None, task="background-media")
        return IngestResult(kind, IngestOutcome.DUPLICATE, message_id=existing.provider_id,
                            media_url=existing.media_ref)

    # Media

    def _media_request(self, connection: Connection, provider_id: str, envelope: MessageEnvelope) -> MediaRequest:
        return MediaRequest(
            provider_message_id=provider_id,
            reference=envelope.reference,
            content_type=envelope.content_type.value,
            declared_mime=envelope.declared_mime,
            instance_id=connection.instance_id,
            token=connection.token,
            media_key=envelope.media_key,
        )

    def _attempt_media(self, request: MediaRequest, stage: str) -> Optional[CachedMedia]:
        try:
            cached = self.media_cache.cache(request)
        except MediaCacheError as e:
            record_media_outcome(stage, type(e).__name__)
            logger.warning("Media caching failed", extra={"extra_data": {
                "stage": stage,
                "message_id": request.provider_message_id,
                "reference_kind": request.reference.kind.value,
                "error": str(e),
                "error_type": type(e).__name__,
            }})
            return None
        record_media_outcome(stage, "cached")
        return cached

    def _cache_media(self, store: IngestStore, message: Message, request: MediaRequest) -> Optional[str]:
        """Eager bounded attempt, then hand off to the background pass."""
        eager = self.pool.submit(self._attempt_media, request, "eager", task="eager-media")
        cached = None
        try:
            cached = eager.result(timeout=self.settings.eager_media_timeout_seconds)
        except FutureTimeout:
            record_media_outcome("eager", "timeout")
            logger.info("Eager media caching timed out", extra={"extra_data": {
                "message_id": request.provider_message_id,
                "timeout": self.settings.eager_media_timeout_seconds,
            }})

        if cached is not None:
            store.update_message_media(message.id, cached.reference, cached.mime)

        self.pool.submit(self._background_media, message.id, request, eager, task="background-media")
        return cached.reference if cached else None

    def _background_media(self, message_id: str, request: MediaRequest,
                          eager: Optional[Future] = None) -> Optional[CachedMedia]:
        cached = eager.result() if eager is not None else None
        if cached is None:
            cached = self._attempt_media(request, "background")
        if cached is None:
            return None

        with session_scope(self.session_factory) as db:
            updated = IngestStore(db).update_message_media(message_id, cached.reference, cached.mime)
        if updated:
            logger.info("Media reference stored", extra={"extra_data": {
                "message_id": request.provider_message_id,
                "media_url": cached.reference,
            }})
        return cached

    # Status and connection events

    def _handle_status(self, payload: Dict[str, Any]) -> IngestResult:
        kind = EventKind.STATUS_UPDATE
        instance_id = fields.instance_id(payload)
        status = parse_status(payload)
        envelope = fields.envelope_layers(payload)

        ids = []
        listed = fields.first_value(envelope, STATUS_ID_LIST_FIELDS)
        if isinstance(listed, list):
            ids = [str(item) for item in listed if isinstance(item, (str, int)) and str(item).strip()]
        if not ids:
            single = fields.first_string(envelope, STATUS_ID_FIELDS)
            ids = [single] if single else []

        if not instance_id:
            return self._skip(kind, "missing instance id")
        if status is None or not ids:
            return self._skip(kind, "status without message id or recognizable state", instance_id=instance_id)

        applied = 0
        with session_scope(self.session_factory) as db:
            store = IngestStore(db)
            connection = store.find_connection(instance_id)
            if connection is None:
                return self._skip(kind, "unknown instance", instance_id=instance_id)

            for provider_id in ids:
                message = store.find_message(connection.id, provider_id)
                if message is None:
                    logger.info("Status for unknown message ignored", extra={"extra_data": {
                        "message_id": provider_id,
                        "status": status.value,
                    }})
                    continue
                if not can_transition(message.status, status):
                    logger.info("Status regression ignored", extra={"extra_data": {
                        "message_id": provider_id,
                        "current": message.status,
                        "status": status.value,
                    }})
                    continue
                if store.update_message_status(message, status):
                    applied += 1

        if not applied:
            return IngestResult(kind, IngestOutcome.IGNORED, message_id=ids[0], detail=status.value)
        logger.info("Message status updated", extra={"extra_data": {"message_ids": ids, "status": status.value}})
        return IngestResult(kind, IngestOutcome.STATUS_UPDATED, message_id=ids[0], detail=status.value)

    def _handle_connection(self, payload: Dict[str, Any]) -> IngestResult:
        kind = EventKind.CONNECTION_UPDATE
        instance_id = fields.instance_id(payload)
        if not instance_id:
            return self._skip(kind, "missing instance id")

        envelope = fields.envelope_layers(payload)
        if event_name(payload) in DISCONNECTED_EVENTS:
            connected = False
        else:
            state = (fields.first_string(envelope, ("state", "status")) or "").lower()
            connected = fields.first_bool(envelope, ("connected",)) is True or state in ("connected", "open")

        phone = normalize_phone(fields.first_string(envelope, ("phoneNumber", "phone")))
        if phone is None:
            wid = fields.first_string(envelope, ("wid",))
            phone = normalize_phone(wid.split("@", 1)[0]) if wid else None

        self.diagnostics.note_connection(instance_id, connected, phone)
        logger.info("Connection state changed", extra={"extra_data": {
            "instance_id": instance_id,
            "connected": connected,
        }})
        return IngestResult(kind, IngestOutcome.CONNECTION_NOTED, detail="connected" if connected else "disconnected")
