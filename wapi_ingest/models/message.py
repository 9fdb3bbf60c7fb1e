"""
Message database model and delivery status state machine.
"""
import uuid
from enum import Enum
from typing import Optional

from sqlalchemy import Column, DateTime, ForeignKey, Index, String, Text, UniqueConstraint

from wapi_ingest.core.database import Base, utcnow


PLACEHOLDER_PREFIX = "temp_"


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class ContentType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    DOCUMENT = "document"
    STICKER = "sticker"

    @property
    def is_media(self) -> bool:
        return self is not ContentType.TEXT


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    PLAYED = "played"
    FAILED = "failed"
    RECEIVED = "received"


# Forward-only progression for outbound delivery acknowledgments
_DELIVERY_ORDER = [
    MessageStatus.PENDING,
    MessageStatus.SENT,
    MessageStatus.DELIVERED,
    MessageStatus.READ,
    MessageStatus.PLAYED,
]

TRANSITIONS = {
    None: {MessageStatus.RECEIVED, MessageStatus.SENT, MessageStatus.PENDING},
    MessageStatus.PENDING: {MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.READ,
                            MessageStatus.PLAYED, MessageStatus.FAILED},
    MessageStatus.SENT: {MessageStatus.DELIVERED, MessageStatus.READ, MessageStatus.PLAYED,
                         MessageStatus.FAILED},
    MessageStatus.DELIVERED: {MessageStatus.READ, MessageStatus.PLAYED},
    MessageStatus.READ: {MessageStatus.PLAYED},
    MessageStatus.PLAYED: set(),
    MessageStatus.FAILED: set(),
    MessageStatus.RECEIVED: set(),
}


def can_transition(current: Optional[MessageStatus], new: MessageStatus) -> bool:
    """Whether a message in ``current`` may move to ``new``.

    Status webhooks arrive unordered, so a late "delivered" after "read"
    is rejected rather than applied.
    """
    if current is not None:
        current = MessageStatus(current)
    return MessageStatus(new) in TRANSITIONS[current]


class Message(Base):
    """One delivered content unit within a conversation."""

    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    connection_id = Column(String(36), ForeignKey("connections.id", ondelete="CASCADE"), nullable=False)
    conversation_id = Column(String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False,
                             index=True)

    # Provider-assigned id; "temp_..." while an optimistic placeholder
    provider_id = Column(String(128), nullable=False)

    direction = Column(String(16), nullable=False)
    content_type = Column(String(16), nullable=False, default=ContentType.TEXT.value)
    content = Column(Text, nullable=True)

    # Populated once media caching completes; readers must tolerate null
    media_ref = Column(Text, nullable=True)
    media_mime = Column(String(128), nullable=True)

    status = Column(String(16), nullable=False)
    timestamp = Column(DateTime, nullable=False, default=utcnow)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("connection_id", "provider_id", name="uq_messages_connection_provider"),
        Index("ix_messages_conversation_status", "conversation_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Message(id={self.id}, provider_id={self.provider_id}, status={self.status})>"
