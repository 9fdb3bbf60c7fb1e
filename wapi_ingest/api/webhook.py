"""
Webhook endpoint for ingesting W-API gateway events.
"""
import json
from typing import Annotated, Optional

import httpx
from fastapi import APIRouter, Depends, Query, Request
from starlette.concurrency import run_in_threadpool

from wapi_ingest.core.config import Settings, get_settings
from wapi_ingest.core.database import get_session_factory
from wapi_ingest.core.logging import get_logger
from wapi_ingest.schemas.webhook import (
    ClearEventsResponse,
    DiagnosticEventsResponse,
    WebhookAck,
    WebhookPing,
)
from wapi_ingest.services.diagnostics import DiagnosticBuffer
from wapi_ingest.services.ingestion import IngestionOrchestrator
from wapi_ingest.services.media_cache import MediaCache
from wapi_ingest.services.provider import ProviderClient
from wapi_ingest.services.storage import LocalObjectStorage
from wapi_ingest.services.workers import MediaWorkerPool

logger = get_logger(__name__)

router = APIRouter(tags=["Webhook"])

_orchestrator: Optional[IngestionOrchestrator] = None


def build_http_client(settings: Settings, transport: Optional[httpx.BaseTransport] = None) -> httpx.Client:
    """Shared client for provider calls and media downloads."""
    return httpx.Client(
        follow_redirects=True,
        max_redirects=settings.max_redirects,
        timeout=httpx.Timeout(settings.download_timeout_seconds, connect=settings.provider_timeout_seconds),
        transport=transport,
    )


def build_orchestrator(
    settings: Settings,
    session_factory=None,
    http: Optional[httpx.Client] = None,
) -> IngestionOrchestrator:
    """Wire the ingestion pipeline from settings."""
    http = http or build_http_client(settings)
    storage = LocalObjectStorage(settings.media_path, settings.public_base_url)
    storage.ensure_dirs()
    provider = ProviderClient(settings.provider_base_url, http)
    media_cache = MediaCache(storage, provider, http, max_bytes=settings.max_media_bytes)
    return IngestionOrchestrator(
        session_factory=session_factory or get_session_factory(),
        media_cache=media_cache,
        pool=MediaWorkerPool(max_workers=settings.media_workers),
        diagnostics=DiagnosticBuffer(
            max_events=settings.diagnostics_buffer_size,
            preview_chars=settings.diagnostics_preview_chars,
        ),
        settings=settings,
    )


def get_orchestrator() -> IngestionOrchestrator:
    """Dependency returning the process-wide orchestrator."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator(get_settings())
    return _orchestrator


def shutdown_orchestrator() -> None:
    """Stop accepting media work and release the HTTP client."""
    global _orchestrator
    if _orchestrator is None:
        return
    _orchestrator.pool.shutdown(wait=True)
    _orchestrator.media_cache.http.close()
    _orchestrator = None


@router.post(
    "/webhook",
    response_model=WebhookAck,
    summary="Receive gateway event",
    description="Accepts any JSON payload from the W-API gateway. Always answers 200 so the gateway does not retry."
)
async def receive_event(
    request: Request,
    orchestrator: Annotated[IngestionOrchestrator, Depends(get_orchestrator)],
) -> WebhookAck:
    """
    Ingest one gateway event.

    - Classifies the event (message, status, connection, unknown)
    - Stores messages idempotently per provider message id
    - Caches attached media, eagerly within a short deadline and then in the background
    """
    body = await request.body()
    try:
        payload = json.loads(body) if body else None
    except (ValueError, RecursionError) as e:
        # Deep nesting surfaces as RecursionError rather than JSONDecodeError
        logger.warning(f"Invalid JSON in webhook request: {e}")
        return WebhookAck(outcome="skipped", detail="invalid JSON")

    try:
        result = await run_in_threadpool(orchestrator.ingest, payload)
    except Exception as e:
        logger.error(
            "Webhook processing failed",
            exc_info=True,
            extra={"extra_data": {"error": str(e)}}
        )
        return WebhookAck(outcome="error", error=str(e))

    return WebhookAck(**result.to_ack())


@router.get(
    "/webhook",
    response_model=WebhookPing,
    summary="Webhook reachability check",
    description="Lets the gateway panel verify the webhook URL."
)
async def ping() -> WebhookPing:
    return WebhookPing()


@router.get(
    "/webhook/events",
    response_model=DiagnosticEventsResponse,
    summary="Recent webhook events",
    description="Newest-first view of the in-memory diagnostic buffer."
)
async def recent_events(
    orchestrator: Annotated[IngestionOrchestrator, Depends(get_orchestrator)],
    instance_id: Annotated[Optional[str], Query(description="Filter by provider instance id")] = None,
    limit: Annotated[int, Query(description="Number of events to return (clamped to 1-200)")] = 50,
) -> DiagnosticEventsResponse:
    limit = max(1, min(limit, 200))
    events = orchestrator.diagnostics.recent(instance_id, limit)
    return DiagnosticEventsResponse(
        data=events,
        total=len(events),
        limit=limit,
        last_seen=orchestrator.diagnostics.last_seen(instance_id),
    )


@router.delete(
    "/webhook/events",
    response_model=ClearEventsResponse,
    summary="Clear diagnostic buffer",
)
async def clear_events(
    orchestrator: Annotated[IngestionOrchestrator, Depends(get_orchestrator)],
    instance_id: Annotated[Optional[str], Query(description="Only clear this instance's events")] = None,
) -> ClearEventsResponse:
    cleared = orchestrator.diagnostics.clear(instance_id)
    logger.info("Diagnostic buffer cleared", extra={"extra_data": {"instance_id": instance_id, "cleared": cleared}})
    return ClearEventsResponse(cleared=cleared)
