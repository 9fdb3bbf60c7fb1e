"""
FastAPI application factory and configuration.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from wapi_ingest.core.config import get_settings
from wapi_ingest.core.database import init_db
from wapi_ingest.core.logging import setup_logging, get_logger
from wapi_ingest.api import webhook, health, metrics
from wapi_ingest.api.metrics import MetricsMiddleware, set_startup_time


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger = get_logger(__name__)
    logger.info("Starting application...")

    # Initialize database
    init_db()
    logger.info("Database initialized")

    # Record startup time for metrics
    set_startup_time()

    yield

    # Shutdown: let in-flight media work finish
    logger.info("Shutting down application...")
    webhook.shutdown_orchestrator()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    # Setup logging
    setup_logging()
    logger = get_logger(__name__)

    # Create FastAPI app
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Inbound webhook ingestion for W-API WhatsApp connections",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Add metrics middleware
    app.add_middleware(MetricsMiddleware)

    # Include routers
    app.include_router(webhook.router)
    app.include_router(health.router)
    app.include_router(metrics.router)

    # Cached media objects
    settings.media_path.mkdir(parents=True, exist_ok=True)
    app.mount("/uploads", StaticFiles(directory=settings.media_path), name="uploads")

    logger.info(
        "Application created",
        extra={
            "extra_data": {
                "app_name": settings.app_name,
                "version": settings.app_version,
                "debug": settings.debug,
                "media_dir": str(settings.media_path),
            }
        }
    )

    return app


# Create the application instance
app = create_app()
