#!/usr/bin/env python3
"""Synchronize the local victims database with the remote service.

Creates any missing tables, optionally rebuilds the database from scratch,
then pulls the update and remove feeds.

Usage:
    python scripts/sync_victims.py              # Incremental sync
    python scripts/sync_victims.py --rebuild    # Drop all tables and pull everything
    python scripts/sync_victims.py --status     # Show the local watermark only
"""

import argparse
import asyncio
import logging
import sys

# Allow running from project root
sys.path.insert(0, ".")

from victims.config import get_settings
from victims.services.victims.errors import VictimsError
from victims.services.victims.sources.victims_client import VictimsClient
from victims.services.victims.store import FingerprintStore
from victims.services.victims.synchronizer import Synchronizer

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

settings = get_settings()


async def run(rebuild: bool, status_only: bool) -> int:
    """Main sync routine."""
    async with FingerprintStore(settings.database_url, echo=settings.database_echo) as store:
        if rebuild:
            await store.drop_schema()
        await store.ensure_schema()

        if status_only:
            watermark = await store.latest_watermark()
            logger.info(f"  Advisories:   {await store.count()}")
            logger.info(f"  Last updated: {watermark.isoformat() if watermark else 'never'}")
            return 0

        if settings.offline:
            logger.warning("Updates are disabled (updates=offline), nothing to do")
            return 0

        synchronizer = Synchronizer(
            VictimsClient(settings.victims_url, timeout=settings.sync_timeout_seconds),
            duplicate_policy=settings.duplicate_policy,
        )
        try:
            report = await synchronizer.synchronize(store)
        except VictimsError as e:
            logger.error(f"Synchronization failed: {e}")
            return 1

    logger.info("=== Sync summary ===")
    logger.info(f"  Added:     {report.added}")
    logger.info(f"  Removed:   {report.removed}")
    logger.info(f"  Watermark: {report.watermark.isoformat() if report.watermark else 'none'}")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Synchronize the victims database")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--rebuild", action="store_true", help="Drop tables and pull everything")
    group.add_argument("--status", action="store_true", help="Show local state only")
    args = parser.parse_args()

    sys.exit(asyncio.run(run(rebuild=args.rebuild, status_only=args.status)))


if __name__ == "__main__":
    main()
