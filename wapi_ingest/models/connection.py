"""
Connection database model.
"""
import uuid

from sqlalchemy import Boolean, Column, DateTime, String, Text

from wapi_ingest.core.database import Base, utcnow


class Connection(Base):
    """A linked WhatsApp account on the W-API gateway. Read-only to ingestion."""

    __tablename__ = "connections"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String(36), nullable=True, index=True)
    name = Column(String(255), nullable=True)

    # Provider instance identifier sent in every webhook payload
    instance_id = Column(String(255), nullable=False, unique=True)

    # Bearer token for provider calls (download by message id)
    token = Column(Text, nullable=True)

    accept_groups = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Connection(id={self.id}, instance_id={self.instance_id})>"
