"""Victims service client for the update and remove feeds.

Both feeds are JSON arrays. Each element is an object whose only field wraps
the advisory payload, e.g. ``[{"fields": {"vendor": ..., "hashes": ...}}]``;
the field name carries no meaning and is discarded.
"""

import logging
from datetime import datetime, timezone
from typing import Any

import httpx
from pydantic import TypeAdapter, ValidationError

from victims.models.schemas import AdvisoryRecord
from victims.services.victims.errors import SyncError

logger = logging.getLogger(__name__)

VICTIMS_API_URL = "https://victims-websec.rhcloud.com/service/v1"

# Timestamps in feed URLs, always UTC
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"

UPDATE_FEED = "update"
REMOVE_FEED = "remove"

_records = TypeAdapter(list[AdvisoryRecord])

# Fields that mark an object as an advisory payload rather than a wrapper
_PAYLOAD_KEYS = {"id", "hashes", "vendor", "cves"}


def format_timestamp(value: datetime) -> str:
    """Render a watermark the way the feed URLs expect it."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(TIMESTAMP_FORMAT)


class VictimsClient:
    """Client for the remote victims database."""

    def __init__(self, base_url: str = VICTIMS_API_URL, timeout: int = 30):
        """Initialize victims client.

        Args:
            base_url: Service root, without the feed path
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def feed_url(self, feed: str, since: datetime) -> str:
        return f"{self.base_url}/{feed}/{format_timestamp(since)}/"

    async def fetch_updates(self, since: datetime) -> list[AdvisoryRecord]:
        """Get advisories created or changed after a watermark.

        Args:
            since: Local watermark; the service returns strictly newer entries

        Returns:
            Decoded advisories, possibly empty

        Raises:
            SyncError: If the request fails or the response cannot be decoded
        """
        url = self.feed_url(UPDATE_FEED, since)
        entries = await self._fetch(UPDATE_FEED, url, since)
        try:
            return _records.validate_python([_unwrap(entry) for entry in entries])
        except (ValidationError, TypeError) as e:
            raise SyncError(UPDATE_FEED, since, url, f"malformed advisory: {e}") from e

    async def fetch_removals(self, since: datetime) -> list[int]:
        """Get identifiers of advisories retracted after a watermark.

        Entries may be advisory payloads, ``{"id": n}`` objects or bare
        integers.

        Raises:
            SyncError: If the request fails or an entry carries no identifier
        """
        url = self.feed_url(REMOVE_FEED, since)
        entries = await self._fetch(REMOVE_FEED, url, since)
        ids = []
        for entry in entries:
            advisory_id = _removal_id(_unwrap(entry))
            if advisory_id is None:
                raise SyncError(REMOVE_FEED, since, url, f"entry without identifier: {entry!r}")
            ids.append(advisory_id)
        return ids

    async def _fetch(self, feed: str, url: str, since: datetime) -> list[Any]:
        logger.debug(f"Fetching {feed} feed: {url}")
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url)
                response.raise_for_status()
                data = response.json()

        except httpx.TimeoutException as e:
            raise SyncError(feed, since, url, f"timeout: {e}") from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise SyncError(feed, since, url, str(e)) from e
        except ValueError as e:
            raise SyncError(feed, since, url, f"invalid JSON: {e}") from e

        if data is None:
            return []
        if not isinstance(data, list):
            raise SyncError(feed, since, url, f"expected a JSON array, got {type(data).__name__}")
        return data


def _unwrap(entry: Any) -> Any:
    """Strip the single-field wrapper around a feed entry, if present."""
    if isinstance(entry, dict) and entry and not (_PAYLOAD_KEYS & entry.keys()):
        return next(iter(entry.values()))
    return entry


def _removal_id(payload: Any) -> int | None:
    if isinstance(payload, bool):
        return None
    if isinstance(payload, int):
        return payload
    if isinstance(payload, str) and payload.isdigit():
        return int(payload)
    if isinstance(payload, dict):
        value = payload.get("id", payload.get("pk"))
        if isinstance(value, (int, str)):
            return _removal_id(value)
    return None
