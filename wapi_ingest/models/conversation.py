"""
Conversation database model.
"""
import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint

from wapi_ingest.core.database import Base, utcnow


class Conversation(Base):
    """One chat thread per (connection, remote identifier)."""

    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    connection_id = Column(String(36), ForeignKey("connections.id", ondelete="CASCADE"), nullable=False)

    # 5511999999999@s.whatsapp.net, 1203...@g.us or an anonymized ...@lid
    remote_id = Column(String(128), nullable=False)

    # Normalized digits; secondary key when the remote identifier drifts
    contact_phone = Column(String(32), nullable=True)

    display_name = Column(String(255), nullable=True)
    is_group = Column(Boolean, nullable=False, default=False)
    unread_count = Column(Integer, nullable=False, default=0)
    last_message_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("connection_id", "remote_id", name="uq_conversations_connection_remote"),
        Index("ix_conversations_connection_phone", "connection_id", "contact_phone"),
    )

    def __repr__(self) -> str:
        return f"<Conversation(id={self.id}, remote_id={self.remote_id})>"
