"""
Persistence operations used by the ingestion pipeline.

Creation methods commit immediately and let ``IntegrityError`` escape so that
callers can treat a unique-constraint violation as "already exists" and
re-query. The session is rolled back before the error is re-raised.
"""
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from wapi_ingest.core.database import utcnow
from wapi_ingest.models.connection import Connection
from wapi_ingest.models.conversation import Conversation
from wapi_ingest.models.message import (
    PLACEHOLDER_PREFIX,
    Direction,
    Message,
    MessageStatus,
)


class IngestStore:
    """Query and mutation helpers bound to one session."""

    def __init__(self, db: Session):
        self.db = db

    def _commit(self) -> None:
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise

    # Connections

    def find_connection(self, instance_id: str) -> Optional[Connection]:
        return self.db.query(Connection).filter(Connection.instance_id == instance_id).first()

    # Conversations

    def find_conversation(self, connection_id: str, remote_id: str) -> Optional[Conversation]:
        return self.db.query(Conversation).filter(
            Conversation.connection_id == connection_id,
            Conversation.remote_id == remote_id,
        ).first()

    def find_conversation_by_phone(self, connection_id: str, phone: str) -> Optional[Conversation]:
        """Most recently active individual conversation for a phone number."""
        return (
            self.db.query(Conversation)
            .filter(
                Conversation.connection_id == connection_id,
                Conversation.contact_phone == phone,
                Conversation.is_group.is_(False),
            )
            .order_by(Conversation.last_message_at.desc())
            .first()
        )

    def create_conversation(self, connection_id: str, remote_id: str, *, phone: Optional[str],
                            is_group: bool, display_name: Optional[str]) -> Conversation:
        conversation = Conversation(
            connection_id=connection_id,
            remote_id=remote_id,
            contact_phone=None if is_group else phone,
            is_group=is_group,
            display_name=display_name,
            unread_count=0,
        )
        self.db.add(conversation)
        self._commit()
        return conversation

    def rekey_conversation(self, conversation: Conversation, remote_id: str) -> None:
        conversation.remote_id = remote_id
        self._commit()

    def touch_conversation(self, conversation: Conversation, *, at: datetime, inbound: bool,
                           display_name: Optional[str] = None, phone: Optional[str] = None) -> None:
        """Activity upsert: timestamp, unread counter, backfill of unset name/phone."""
        values = {"updated_at": utcnow()}
        if conversation.last_message_at is None or at > conversation.last_message_at:
            values["last_message_at"] = at
        if inbound:
            values["unread_count"] = Conversation.unread_count + 1
        if display_name and not conversation.display_name:
            values["display_name"] = display_name
        if phone and not conversation.contact_phone and not conversation.is_group:
            values["contact_phone"] = phone

        self.db.execute(
            update(Conversation).where(Conversation.id == conversation.id).values(**values)
        )
        self._commit()
        self.db.refresh(conversation)

    # Messages

    def find_message(self, connection_id: str, provider_id: str) -> Optional[Message]:
        return self.db.query(Message).filter(
            Message.connection_id == connection_id,
            Message.provider_id == provider_id,
        ).first()

    def find_pending_placeholder(self, conversation_id: str, window_seconds: int) -> Optional[Message]:
        """Newest optimistic outbound placeholder created within the trailing window."""
        cutoff = utcnow() - timedelta(seconds=window_seconds)
        return (
            self.db.query(Message)
            .filter(
                Message.conversation_id == conversation_id,
                Message.direction == Direction.OUTBOUND.value,
                Message.status == MessageStatus.PENDING.value,
                Message.provider_id.startswith(PLACEHOLDER_PREFIX, autoescape=True),
                Message.created_at >= cutoff,
            )
            .order_by(Message.created_at.desc())
            .first()
        )

    def insert_message(self, **values) -> Message:
        message = Message(**values)
        self.db.add(message)
        self._commit()
        return message

    def reconcile_placeholder(self, placeholder: Message, provider_id: str) -> bool:
        """pending -> sent with the confirmed provider id; False if another worker got there first."""
        result = self.db.execute(
            update(Message)
            .where(
                Message.id == placeholder.id,
                Message.status == MessageStatus.PENDING.value,
            )
            .values(provider_id=provider_id, status=MessageStatus.SENT.value)
        )
        self._commit()
        if result.rowcount:
            self.db.refresh(placeholder)
        return bool(result.rowcount)

    def update_message_media(self, message_id: str, media_ref: str, media_mime: Optional[str]) -> bool:
        """Set the media reference unless one is already stored."""
        result = self.db.execute(
            update(Message)
            .where(
                Message.id == message_id,
                or_(Message.media_ref.is_(None), Message.media_ref == ""),
            )
            .values(media_ref=media_ref, media_mime=media_mime)
        )
        self._commit()
        return bool(result.rowcount)

    def update_message_status(self, message: Message, status: MessageStatus) -> bool:
        """Compare-and-set on the status the caller observed."""
        result = self.db.execute(
            update(Message)
            .where(Message.id == message.id, Message.status == message.status)
            .values(status=status.value)
        )
        self._commit()
        if result.rowcount:
            self.db.refresh(message)
        return bool(result.rowcount)
