"""Synchronizes the local fingerprint store with the remote victims service.

One run reads the local watermark, applies the update feed and then the
remove feed for everything newer than it. Runs are not atomic: when the
remove feed fails, the updates already applied stay in the store. Applying
an update always stores a new advisory under the ``append`` policy, so a
replayed window duplicates records; the ``replace`` policy swaps out
advisories with the same coordinates instead.
"""

import logging
from datetime import datetime

from victims.config import DuplicatePolicy
from victims.models.schemas import SyncReport
from victims.services.victims.errors import StorageError
from victims.services.victims.sources.victims_client import REMOVE_FEED, UPDATE_FEED, VictimsClient
from victims.services.victims.store import FingerprintStore

logger = logging.getLogger(__name__)

# Watermark of an empty store: everything upstream is newer
EPOCH = datetime(1970, 1, 1)


class Synchronizer:
    """Pulls update and remove feeds into a fingerprint store."""

    def __init__(
        self,
        client: VictimsClient,
        duplicate_policy: DuplicatePolicy = DuplicatePolicy.APPEND,
    ):
        """Initialize synchronizer.

        Args:
            client: Client for the remote feeds
            duplicate_policy: How updates treat advisories with the same coordinates
        """
        self.client = client
        self.duplicate_policy = duplicate_policy

    async def synchronize(self, store: FingerprintStore) -> SyncReport:
        """Bring the store up to date with the remote service.

        Args:
            store: Store to update

        Returns:
            Counts of applied entries and the watermark before and after

        Raises:
            SyncError: If either feed cannot be fetched or decoded
            StorageError: If the store rejects a change
        """
        since = await store.latest_watermark() or EPOCH
        logger.info(f"Victims database last updated {since.isoformat()}")
        logger.info(f"Synchronizing with {self.client.base_url}")

        records = await self.client.fetch_updates(since)
        apply = store.replace if self.duplicate_policy == DuplicatePolicy.REPLACE else store.insert
        try:
            for record in records:
                await apply(record)
        except StorageError as e:
            logger.error(f"Applying {UPDATE_FEED} feed (since {since.isoformat()}) failed: {e}")
            raise
        logger.info(f"Items added to the victims database: {len(records)}")

        ids = await self.client.fetch_removals(since)
        try:
            for advisory_id in ids:
                await store.remove(advisory_id)
        except StorageError as e:
            logger.error(f"Applying {REMOVE_FEED} feed (since {since.isoformat()}) failed: {e}")
            raise
        logger.info(f"Items removed from the victims database: {len(ids)}")

        watermark = await store.latest_watermark()
        if watermark is not None:
            logger.info(f"Victims database last updated {watermark.isoformat()}")

        return SyncReport(added=len(records), removed=len(ids), since=since, watermark=watermark)
