"""Victims database API - known-vulnerable artifact fingerprint service."""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from victims.config import Settings, get_settings
from victims.routers import advisories, health, sync
from victims.services.victims.errors import StorageError
from victims.services.victims.store import FingerprintStore

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.api_log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(app_settings: Settings | None = None) -> FastAPI:
    """Build the API around a fingerprint store.

    Args:
        app_settings: Settings to use instead of the environment's

    Returns:
        Configured FastAPI application
    """
    app_settings = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        logger.info("Starting victims database API...")
        store = FingerprintStore(app_settings.database_url, echo=app_settings.database_echo)
        await store.ensure_schema()
        app.state.store = store
        app.state.write_lock = asyncio.Lock()
        yield
        logger.info("Shutting down victims database API...")
        await store.close()

    app = FastAPI(
        title="Victims",
        description="Known-vulnerable artifact fingerprint database",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = app_settings

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        logger.error(f"Storage failure on {request.url.path}: {exc}")
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    # Include routers
    app.include_router(health.router, tags=["Health"])
    app.include_router(advisories.router, prefix="/api/advisories", tags=["Advisories"])
    app.include_router(sync.router, prefix="/api/sync", tags=["Sync"])

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "Victims",
            "version": "0.1.0",
            "description": "Known-vulnerable artifact fingerprint database",
        }

    return app


app = create_app()
