"""
Pydantic schemas for webhook, diagnostics and health responses.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class WebhookAck(BaseModel):
    """Acknowledgment for POST /webhook. Always returned with HTTP 200."""
    received: bool = Field(default=True)
    event: Optional[str] = Field(default=None, description="Classified event kind")
    outcome: Optional[str] = Field(default=None, description="What the pipeline did with the event")
    message_id: Optional[str] = Field(default=None, description="Provider message id, when one applies")
    media_url: Optional[str] = Field(default=None, description="Cached media reference, if the eager pass produced one")
    detail: Optional[str] = None
    error: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "example": {
                "received": True,
                "event": "message_received",
                "outcome": "stored",
                "message_id": "3EB0C767D26A1D8E",
                "media_url": "http://localhost:8000/uploads/1736935200000-9f2c4e1a7b3d5f60.jpg",
                "detail": None,
                "error": None,
            }
        }
    }


class WebhookPing(BaseModel):
    """Response for GET /webhook."""
    status: str = Field(default="ok")
    message: str = Field(default="Webhook endpoint is reachable")


class DiagnosticEvent(BaseModel):
    at: str
    instance_id: Optional[str] = None
    event: str
    outcome: Optional[str] = None
    preview: str


class DiagnosticEventsResponse(BaseModel):
    """Response schema for GET /webhook/events."""
    data: List[DiagnosticEvent]
    total: int
    limit: int
    last_seen: Dict[str, Dict[str, Any]]


class ClearEventsResponse(BaseModel):
    """Response schema for DELETE /webhook/events."""
    cleared: int


class HealthResponse(BaseModel):
    """Response schema for health endpoints."""
    status: str
    checks: Optional[dict] = None
