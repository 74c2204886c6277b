"""Health check router."""

from fastapi import APIRouter, Depends

from victims.database import get_store
from victims.services.victims.errors import StorageError
from victims.services.victims.store import FingerprintStore

router = APIRouter()


@router.get("/health")
async def health_check(store: FingerprintStore = Depends(get_store)):
    """Check API and database health."""
    try:
        await store.count()
        db_status = "healthy"
    except StorageError as e:
        db_status = f"unhealthy: {str(e)}"

    return {
        "status": "healthy" if db_status == "healthy" else "degraded",
        "database": db_status,
        "version": "0.1.0",
    }


@router.get("/ready")
async def readiness_check():
    """Check if the API is ready to receive traffic."""
    return {"ready": True}
