"""
Health check endpoints for liveness and readiness probes.
"""
from typing import Annotated

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from wapi_ingest.api.webhook import get_orchestrator
from wapi_ingest.core.database import check_db_connection, get_db
from wapi_ingest.core.logging import get_logger
from wapi_ingest.schemas.webhook import HealthResponse
from wapi_ingest.services.ingestion import IngestionOrchestrator

logger = get_logger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])


@router.get(
    "/live",
    response_model=HealthResponse,
    summary="Liveness probe",
    description="Always returns 200 to indicate the service is alive."
)
async def liveness() -> HealthResponse:
    """
    Liveness probe - always returns 200.

    Used by orchestrators to check if the service is running.
    """
    return HealthResponse(status="ok")


@router.get(
    "/ready",
    response_model=HealthResponse,
    summary="Readiness probe",
    description="Returns 200 if the service is ready to handle traffic."
)
async def readiness(
    response: Response,
    db: Annotated[Session, Depends(get_db)],
    orchestrator: Annotated[IngestionOrchestrator, Depends(get_orchestrator)],
) -> HealthResponse:
    """
    Readiness probe - checks if the service can handle traffic.

    Checks:
    - Database is reachable
    - Media directory is writable
    """
    checks = {}
    is_ready = True

    db_ok = check_db_connection(db)
    checks["database"] = "ok" if db_ok else "failed"
    if not db_ok:
        is_ready = False
        logger.warning("Readiness check failed: database not reachable")

    media_ok = orchestrator.media_cache.storage.is_writable()
    checks["media_storage"] = "ok" if media_ok else "not writable"
    if not media_ok:
        is_ready = False
        logger.warning("Readiness check failed: media directory not writable")

    if is_ready:
        return HealthResponse(status="ok", checks=checks)
    else:
        response.status_code = 503
        return HealthResponse(status="not ready", checks=checks)
