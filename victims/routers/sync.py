"""Synchronization router."""

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException

from victims.config import Settings
from victims.database import get_app_settings, get_store, get_write_lock
from victims.models.schemas import SyncReport, SyncStatusResponse
from victims.services.victims.errors import SyncError
from victims.services.victims.sources.victims_client import VictimsClient
from victims.services.victims.store import FingerprintStore
from victims.services.victims.synchronizer import Synchronizer

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/status", response_model=SyncStatusResponse)
async def get_sync_status(
    store: FingerprintStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
):
    """Get the local watermark and advisory count."""
    return SyncStatusResponse(
        watermark=await store.latest_watermark(),
        advisories=await store.count(),
        offline=settings.offline,
    )


@router.post("", response_model=SyncReport)
async def synchronize(
    store: FingerprintStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
    write_lock: asyncio.Lock = Depends(get_write_lock),
):
    """Pull the update and remove feeds into the local database."""
    if settings.offline:
        raise HTTPException(status_code=409, detail="Updates are disabled (offline mode)")

    synchronizer = Synchronizer(
        VictimsClient(settings.victims_url, timeout=settings.sync_timeout_seconds),
        duplicate_policy=settings.duplicate_policy,
    )
    try:
        async with write_lock:
            return await synchronizer.synchronize(store)
    except SyncError as e:
        logger.error(f"Synchronization failed: {e}")
        raise HTTPException(status_code=502, detail=str(e)) from e
