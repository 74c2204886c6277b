"""Pydantic schemas for advisory records, feed payloads and API responses."""

from datetime import datetime, timezone
from enum import Enum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from victims.config import MatchMode


# ============================================================================
# Advisory Record Schemas
# ============================================================================


class AdvisoryStatus(str, Enum):
    """Lifecycle of an advisory upstream."""
    SUBMITTED = "submitted"
    RELEASED = "released"
    RETIRED = "retired"


class HashRecord(BaseModel):
    """Digests of one artifact under a single algorithm."""

    combined: str
    files: dict[str, str]

    @field_validator("files")
    @classmethod
    def _files_not_empty(cls, value: dict[str, str]) -> dict[str, str]:
        if not value:
            raise ValueError("hash record must list at least one file digest")
        return value


class AdvisoryRecord(BaseModel):
    """One known-vulnerable artifact signature.

    ``id`` is assigned by the store on insert and is ``None`` for records
    that have not been stored yet. ``created`` is always a naive UTC
    datetime; the remote service calls the field ``date``.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: int | None = None
    cves: list[str] = []
    vendor: str
    name: str
    version: str
    created: datetime = Field(validation_alias=AliasChoices("created", "date"))
    submitter: str = ""
    format: str = ""
    status: AdvisoryStatus = AdvisoryStatus.RELEASED
    hashes: dict[str, HashRecord] = {}
    meta: dict[str, dict[str, str]] = {}

    @field_validator("created")
    @classmethod
    def _as_naive_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    @field_validator("status", mode="before")
    @classmethod
    def _lower_status(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("cves", mode="before")
    @classmethod
    def _none_cves(cls, value):
        return [] if value is None else value


# ============================================================================
# Sync Schemas
# ============================================================================


class SyncReport(BaseModel):
    """Outcome of one synchronization run."""

    added: int = 0
    removed: int = 0
    since: datetime
    watermark: datetime | None = None


class SyncStatusResponse(BaseModel):
    """Local database state as seen by the sync endpoint."""

    watermark: datetime | None = None
    advisories: int = 0
    offline: bool = False


# ============================================================================
# API Schemas
# ============================================================================


class PartialMatchRequest(BaseModel):
    """Body of a fuzzy fingerprint match request."""

    hashes: list[str]
    tolerance: float | None = Field(default=None, ge=0.0, le=1.0)
    mode: MatchMode | None = None


class AdvisoryListResponse(BaseModel):
    """Paginated list of advisories."""

    items: list[AdvisoryRecord]
    total: int
    page: int
    page_size: int
    pages: int
