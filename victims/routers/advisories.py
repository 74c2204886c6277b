"""Advisories router: read and administer the local victims database."""

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from victims.config import Settings
from victims.database import get_app_settings, get_store, get_write_lock
from victims.models.schemas import AdvisoryListResponse, AdvisoryRecord, PartialMatchRequest
from victims.services.victims.store import FingerprintStore

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("", response_model=AdvisoryListResponse)
async def list_advisories(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    store: FingerprintStore = Depends(get_store),
):
    """List stored advisories with pagination."""
    total = await store.count()
    records = await store.list(offset=(page - 1) * page_size, limit=page_size)

    return AdvisoryListResponse(
        items=records,
        total=total,
        page=page,
        page_size=page_size,
        pages=(total + page_size - 1) // page_size,
    )


@router.post("", response_model=AdvisoryRecord, status_code=201)
async def create_advisory(
    record: AdvisoryRecord,
    store: FingerprintStore = Depends(get_store),
    write_lock: asyncio.Lock = Depends(get_write_lock),
):
    """Insert an advisory by hand. Any supplied id is ignored."""
    async with write_lock:
        advisory_id = await store.insert(record)
    logger.info(f"Administrative insert of advisory {advisory_id}")
    return await store.get(advisory_id)

@router.get("/lookup", response_model=AdvisoryRecord)
async def lookup_advisory(
    file_hash: str | None = None,
    artifact_hash: str | None = None,
    vendor: str | None = None,
    name: str | None = None,
    version: str | None = None,
    store: FingerprintStore = Depends(get_store),
):
    """Exact lookup by file digest, artifact digest, or coordinates."""
    coordinates = (vendor, name, version)
    has_coordinates = any(value is not None for value in coordinates)
    given = sum([file_hash is not None, artifact_hash is not None, has_coordinates])

    if given != 1:
        raise HTTPException(
            status_code=422,
            detail="Give exactly one of file_hash, artifact_hash or vendor/name/version",
        )

    if file_hash is not None:
        record = await store.find_by_file_hash(file_hash)
    elif artifact_hash is not None:
        record = await store.find_by_artifact_hash(artifact_hash)
    else:
        if any(value is None for value in coordinates):
            raise HTTPException(
                status_code=422,
                detail="vendor, name and version are all required",
            )
        record = await store.find_by_coordinates(vendor, name, version)

    if record is None:
        raise HTTPException(status_code=404, detail="No matching advisory")
    return record


@router.post("/match", response_model=list[AdvisoryRecord])
async def match_advisories(
    request: PartialMatchRequest,
    store: FingerprintStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
):
    """Find advisories sharing a share of the given file digests."""
    tolerance = request.tolerance if request.tolerance is not None else settings.tolerance
    mode = request.mode or settings.fuzzy_match_mode
    return await store.find_by_partial_hash_set(request.hashes, tolerance, mode)


@router.get("/{advisory_id}", response_model=AdvisoryRecord)
async def get_advisory(advisory_id: int, store: FingerprintStore = Depends(get_store)):
    """Get an advisory by id."""
    record = await store.get(advisory_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Advisory not found")
    return record


@router.delete("/{advisory_id}")
async def delete_advisory(
    advisory_id: int,
    store: FingerprintStore = Depends(get_store),
    write_lock: asyncio.Lock = Depends(get_write_lock),
):
    """Remove an advisory. Removing an unknown id succeeds."""
    async with write_lock:
        removed = await store.remove(advisory_id)
    return {"message": "Advisory deleted successfully", "removed": removed}
