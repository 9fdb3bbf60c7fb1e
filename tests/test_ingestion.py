"""
End-to-end tests for the ingestion orchestrator.
"""
import base64
import threading
from datetime import timedelta

import httpx
import pytest

from tests.factories import INSTANCE_ID, JPEG_BYTES, MEDIA_KEY, PHONE, PNG_BYTES, image_event, text_event
from wapi_ingest.core.database import utcnow
from wapi_ingest.models.connection import Connection
from wapi_ingest.models.conversation import Conversation
from wapi_ingest.models.message import Message, MessageStatus
from wapi_ingest.services.classifier import EventKind
from wapi_ingest.services.ingestion import IngestOutcome, parse_status, parse_timestamp
from wapi_ingest.services.media_crypto import encrypt_media

INDIVIDUAL_ID = f"{PHONE}@s.whatsapp.net"


def messages(session_factory):
    with session_factory() as session:
        return session.query(Message).all()


def conversations(session_factory):
    with session_factory() as session:
        return session.query(Conversation).all()


def add_placeholder(session_factory, connection, provider_id="temp_1736935200000", age_seconds=0):
    with session_factory() as session:
        conversation = Conversation(connection_id=connection.id, remote_id=INDIVIDUAL_ID, contact_phone=PHONE,
                                    is_group=False, unread_count=0)
        session.add(conversation)
        session.flush()
        session.add(Message(
            connection_id=connection.id,
            conversation_id=conversation.id,
            provider_id=provider_id,
            direction="outbound",
            content_type="text",
            content="On my way",
            status="pending",
            created_at=utcnow() - timedelta(seconds=age_seconds),
        ))
        session.commit()


class TestMessageIngestion:
    """Message events through classification, resolution and storage."""

    def test_empty_content_creates_nothing(self, orchestrator, connection, session_factory):
        event = text_event("empty-1")
        event["msgContent"] = {"conversation": "   "}

        result = orchestrator.ingest(event)
        assert result.outcome is IngestOutcome.SKIPPED
        assert result.detail == "empty content"
        assert conversations(session_factory) == []
        assert messages(session_factory) == []

    def test_media_event_without_any_hint_creates_nothing(self, orchestrator, connection, session_factory):
        event = {"event": "webhookReceived", "instanceId": INSTANCE_ID, "chatId": PHONE,
                 "msgContent": {"imageMessage": {}}}
        result = orchestrator.ingest(event)
        assert result.outcome is IngestOutcome.SKIPPED
        assert conversations(session_factory) == []

    def test_captioned_media_without_reference_keeps_caption(self, orchestrator, connection, network,
                                                             session_factory):
        """A caption alone is content; the message is stored without media."""
        event = {"event": "webhookReceived", "instanceId": INSTANCE_ID, "chatId": PHONE,
                 "msgContent": {"imageMessage": {"caption": "look at this"}}}

        result = orchestrator.ingest(event)
        assert result.outcome is IngestOutcome.STORED
        assert result.message_id.startswith("wapi_")
        assert result.media_url is None
        assert orchestrator.pool.wait_idle(timeout=10)

        message = messages(session_factory)[0]
        assert message.content_type == "image"
        assert message.content == "look at this"
        assert message.media_ref is None
        assert network.requests == []

    def test_redelivery_stores_one_message(self, orchestrator, connection, session_factory):
        first = orchestrator.ingest(text_event("m1"))
        second = orchestrator.ingest(text_event("m1"))

        assert first.outcome is IngestOutcome.STORED
        assert second.outcome is IngestOutcome.DUPLICATE
        stored = messages(session_factory)
        assert len(stored) == 1
        assert stored[0].provider_id == "m1"
        assert conversations(session_factory)[0].unread_count == 1

    def test_rapid_fire_duplicates(self, orchestrator, connection, session_factory):
        """Concurrent identical deliveries end with exactly one message."""
        barrier = threading.Barrier(2)
        outcomes = []

        def deliver():
            barrier.wait()
            outcomes.append(orchestrator.ingest(text_event("m1")).outcome)

        threads = [threading.Thread(target=deliver) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert sorted(outcomes) == sorted([IngestOutcome.STORED, IngestOutcome.DUPLICATE])
        assert [m.provider_id for m in messages(session_factory)] == ["m1"]
        assert len(conversations(session_factory)) == 1
        assert conversations(session_factory)[0].unread_count == 1

    def test_racing_redeliveries_count_unread_once(self, orchestrator, connection, session_factory):
        """Each pair of simultaneous copies adds one message and one unread."""
        for n in range(10):
            barrier = threading.Barrier(2)
            event = text_event(f"race-{n}")

            def deliver():
                barrier.wait()
                orchestrator.ingest(dict(event))

            threads = [threading.Thread(target=deliver) for _ in range(2)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=30)

        assert len(messages(session_factory)) == 10
        assert conversations(session_factory)[0].unread_count == 10

    def test_missing_provider_id_gets_generated_id(self, orchestrator, connection, session_factory):
        result = orchestrator.ingest(text_event(message_id=None))
        assert result.outcome is IngestOutcome.STORED
        assert result.message_id.startswith("wapi_")

    def test_outbound_from_phone(self, orchestrator, connection, session_factory):
        result = orchestrator.ingest(text_event("out-1", text="typed on the phone", from_me=True))
        assert result.event is EventKind.MESSAGE_SENT
        message = messages(session_factory)[0]
        assert message.direction == "outbound"
        assert message.status == "sent"
        assert conversations(session_factory)[0].unread_count == 0

    def test_broadcast_and_groups_are_skipped(self, orchestrator, connection, session_factory):
        assert orchestrator.ingest(text_event("b1", chat_id="status@broadcast")).detail == "broadcast chat"
        assert orchestrator.ingest(text_event("g1", chat_id="120363025246125486@g.us")).detail == \
            "group chats disabled"
        assert conversations(session_factory) == []

    def test_groups_accepted_when_enabled(self, orchestrator, connection, session_factory):
        with session_factory() as session:
            session.get(Connection, connection.id).accept_groups = True
            session.commit()

        event = text_event("g1", chat_id="120363025246125486@g.us")
        event["groupMetadata"] = {"subject": "Family"}
        assert orchestrator.ingest(event).outcome is IngestOutcome.STORED

        conversation = conversations(session_factory)[0]
        assert conversation.is_group
        assert conversation.display_name == "Family"
        assert conversation.contact_phone is None

    def test_identifier_drift_through_webhook(self, orchestrator, connection, session_factory):
        lid_event = text_event("d1", chat_id="987654321098765@lid")
        lid_event["senderPn"] = f"{PHONE}@s.whatsapp.net"
        orchestrator.ingest(lid_event)
        orchestrator.ingest(text_event("d2"))

        stored = conversations(session_factory)
        assert len(stored) == 1
        assert stored[0].remote_id == INDIVIDUAL_ID
        assert len({m.conversation_id for m in messages(session_factory)}) == 1

    def test_unknown_instance_writes_nothing(self, orchestrator, session_factory):
        event = text_event("u1")
        event["instanceId"] = "not-registered"
        result = orchestrator.ingest(event)
        assert result.detail == "unknown instance"
        assert conversations(session_factory) == []


class TestPlaceholderReconciliation:
    """Optimistic outbound placeholders become the confirmed message."""

    def confirmed(self, message_id="3EB0CONFIRMED"):
        return {
            "event": "webhookDelivery",
            "instanceId": INSTANCE_ID,
            "messageId": message_id,
            "chat": {"id": INDIVIDUAL_ID},
            "fromMe": True,
            "msgContent": {"conversation": "On my way"},
        }

    def test_placeholder_is_reconciled(self, orchestrator, connection, session_factory):
        add_placeholder(session_factory, connection)

        result = orchestrator.ingest(self.confirmed())
        assert result.outcome is IngestOutcome.RECONCILED

        stored = messages(session_factory)
        assert len(stored) == 1
        assert stored[0].provider_id == "3EB0CONFIRMED"
        assert stored[0].status == "sent"

    def test_redelivered_confirmation_stays_single(self, orchestrator, connection, session_factory):
        add_placeholder(session_factory, connection)
        orchestrator.ingest(self.confirmed())
        assert orchestrator.ingest(self.confirmed()).outcome is IngestOutcome.DUPLICATE
        assert len(messages(session_factory)) == 1

    def test_placeholder_outside_window_is_left_alone(self, orchestrator, connection, session_factory):
        add_placeholder(session_factory, connection, age_seconds=3600)

        result = orchestrator.ingest(self.confirmed())
        assert result.outcome is IngestOutcome.STORED
        assert sorted(m.status for m in messages(session_factory)) == ["pending", "sent"]


class TestMediaIngestion:
    """Eager and background media caching."""

    def test_encrypted_image_scenario(self, orchestrator, connection, network, session_factory):
        network.add("GET", "https://cdn.example/x.enc", httpx.Response(
            200, content=encrypt_media(JPEG_BYTES, MEDIA_KEY, "image"),
            headers={"content-type": "application/encrypted"},
        ))

        result = orchestrator.ingest(image_event())
        assert result.outcome is IngestOutcome.STORED
        assert orchestrator.pool.wait_idle(timeout=10)

        message = messages(session_factory)[0]
        assert message.direction == "inbound"
        assert message.content_type == "image"
        assert message.media_ref is not None
        assert message.media_ref.endswith(".jpg")
        assert message.media_mime == "image/jpeg"
        assert result.media_url == message.media_ref
        stored = orchestrator.media_cache.storage.path_for(message.media_ref)
        assert stored.read_bytes() == JPEG_BYTES

    def test_mac_failure_keeps_message_without_media(self, orchestrator, connection, network, session_factory):
        blob = bytearray(encrypt_media(JPEG_BYTES, MEDIA_KEY, "image"))
        blob[3] ^= 0x01
        network.add("GET", "https://cdn.example/x.enc", httpx.Response(200, content=bytes(blob)))

        result = orchestrator.ingest(image_event())
        assert result.outcome is IngestOutcome.STORED
        assert result.media_url is None
        assert orchestrator.pool.wait_idle(timeout=10)

        message = messages(session_factory)[0]
        assert message.media_ref is None

    def test_slow_eager_attempt_is_completed_in_background(self, orchestrator, connection, network,
                                                           session_factory):
        release = threading.Event()

        def slow(request):
            release.wait(timeout=10)
            return httpx.Response(200, content=PNG_BYTES, headers={"content-type": "image/png"})

        network.add("GET", "https://files.example/slow.png", slow)
        orchestrator.settings.eager_media_timeout_seconds = 0.05
        event = {
            "event": "webhookReceived",
            "instanceId": INSTANCE_ID,
            "messageId": "slow-1",
            "chatId": PHONE,
            "msgContent": {"imageMessage": {"url": "https://files.example/slow.png", "caption": "later"}},
        }

        result = orchestrator.ingest(event)
        assert result.media_url is None
        assert messages(session_factory)[0].media_ref is None

        release.set()
        assert orchestrator.pool.wait_idle(timeout=10)
        message = messages(session_factory)[0]
        assert message.content == "later"
        assert message.media_ref.endswith(".png")
        # One download: the background pass reuses the eager attempt's result
        assert len([r for r in network.requests if r.url.path == "/slow.png"]) == 1

    def test_duplicate_retries_missing_media(self, orchestrator, connection, network, session_factory):
        orchestrator.ingest(image_event())
        assert orchestrator.pool.wait_idle(timeout=10)
        assert messages(session_factory)[0].media_ref is None

        network.add("GET", "https://cdn.example/x.enc", httpx.Response(
            200, content=encrypt_media(JPEG_BYTES, MEDIA_KEY, "image")
        ))
        assert orchestrator.ingest(image_event()).outcome is IngestOutcome.DUPLICATE
        assert orchestrator.pool.wait_idle(timeout=10)
        assert messages(session_factory)[0].media_ref.endswith(".jpg")

    def test_inline_base64_audio(self, orchestrator, connection, session_factory):
        event = {
            "event": "webhookReceived",
            "instanceId": INSTANCE_ID,
            "messageId": "voice-1",
            "chatId": PHONE,
            "msgContent": {"audioMessage": {
                "base64": base64.b64encode(b"OggS\x00\x02" + b"\x00" * 100).decode("ascii"),
                "mimetype": "audio/ogg; codecs=opus",
            }},
        }
        result = orchestrator.ingest(event)
        assert result.media_url.endswith(".ogg")
        assert orchestrator.pool.wait_idle(timeout=10)
        assert messages(session_factory)[0].media_mime == "audio/ogg"


class TestStatusUpdates:
    """Delivery acknowledgments move forward only."""

    def test_status_progression_never_regresses(self, orchestrator, connection, session_factory):
        orchestrator.ingest(text_event("s1", from_me=True))

        read = orchestrator.ingest({"event": "webhookStatus", "instanceId": INSTANCE_ID,
                                    "messageId": "s1", "status": "READ"})
        assert read.outcome is IngestOutcome.STATUS_UPDATED

        late = orchestrator.ingest({"instanceId": INSTANCE_ID, "messageId": "s1", "ack": 2})
        assert late.outcome is IngestOutcome.IGNORED
        assert messages(session_factory)[0].status == "read"

    def test_status_for_unknown_message_is_ignored(self, orchestrator, connection, session_factory):
        result = orchestrator.ingest({"instanceId": INSTANCE_ID, "messageId": "nope", "ack": 3})
        assert result.event is EventKind.STATUS_UPDATE
        assert result.outcome is IngestOutcome.IGNORED

    def test_status_for_several_ids(self, orchestrator, connection, session_factory):
        orchestrator.ingest(text_event("s1", from_me=True))
        orchestrator.ingest(text_event("s2", from_me=True))
        result = orchestrator.ingest({"event": "webhookStatus", "instanceId": INSTANCE_ID,
                                      "ids": ["s1", "s2"], "status": "DELIVERY"})
        assert result.outcome is IngestOutcome.STATUS_UPDATED
        assert {m.status for m in messages(session_factory)} == {"delivered"}

    @pytest.mark.parametrize("payload,expected", [
        ({"ack": -1}, MessageStatus.FAILED),
        ({"ack": 0}, MessageStatus.FAILED),
        ({"ack": 1}, MessageStatus.SENT),
        ({"ack": "2"}, MessageStatus.DELIVERED),
        ({"ack": 4}, MessageStatus.PLAYED),
        ({"status": "SERVER_ACK"}, MessageStatus.SENT),
        ({"status": "ERROR"}, MessageStatus.FAILED),
        ({"status": "whatever"}, None),
    ])
    def test_parse_status(self, payload, expected):
        assert parse_status(payload) is expected


class TestConnectionAndUnknownEvents:
    def test_connection_update_is_recorded(self, orchestrator, connection, session_factory):
        result = orchestrator.ingest({"event": "webhookConnected", "instanceId": INSTANCE_ID,
                                      "connected": True, "wid": f"{PHONE}@s.whatsapp.net"})
        assert result.outcome is IngestOutcome.CONNECTION_NOTED
        state = orchestrator.diagnostics.connection_state(INSTANCE_ID)
        assert state["connected"] is True
        assert state["phone"] == PHONE

    def test_disconnected_event(self, orchestrator):
        orchestrator.ingest({"event": "webhookDisconnected", "instanceId": INSTANCE_ID})
        assert orchestrator.diagnostics.connection_state(INSTANCE_ID)["connected"] is False

    def test_unknown_event_only_reaches_diagnostics(self, orchestrator, session_factory):
        result = orchestrator.ingest({"instanceId": INSTANCE_ID, "foo": "bar"})
        assert result.outcome is IngestOutcome.IGNORED
        assert orchestrator.diagnostics.recent(INSTANCE_ID)[0]["event"] == "unknown"


class TestTimestamps:
    def test_epoch_seconds_and_millis(self):
        assert parse_timestamp(1736935200) == parse_timestamp(1736935200000)
        assert parse_timestamp("1736935200").year == 2025

    def test_iso_and_garbage(self):
        assert parse_timestamp("2025-01-15T10:00:00Z").hour == 10
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp(None) is None
