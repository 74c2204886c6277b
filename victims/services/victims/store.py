"""Local fingerprint store for known-vulnerable artifacts.

Advisories are kept in three tables (advisories, fingerprints, metadata) and
can be looked up by a single file digest, by the combined artifact digest, by
coordinates, by metadata properties, or approximately by the share of an
artifact's file digests that a stored advisory also lists.

The store owns one engine handle, created on first use. Every operation runs
in its own session; writes are committed as one transaction or not at all.
"""

import logging
import math
from collections import Counter
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime

from sqlalchemy import and_, delete, func, inspect, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from victims.config import MatchMode
from victims.database import create_engine, create_session_factory
from victims.models.database import Advisory, Base, Fingerprint, MetadataProperty
from victims.models.schemas import AdvisoryRecord
from victims.services.victims.errors import StorageError

logger = logging.getLogger(__name__)

# Creation order; dropped in reverse
TABLES = ("advisories", "fingerprints", "metadata")

# Digests bound per IN clause, SQLite limits parameters per statement
HASH_CHUNK_SIZE = 500

POM_PROPERTIES = "pom.properties"
MANIFEST = "MANIFEST.MF"


def match_threshold(tolerance: float, candidates: int) -> int:
    """Number of matching digests a fuzzy match requires.

    Args:
        tolerance: Fraction of the candidate digests, between 0 and 1
        candidates: Size of the candidate digest set

    Returns:
        ``tolerance * candidates`` rounded half up

    Raises:
        ValueError: If tolerance is outside [0, 1]
    """
    if not 0.0 <= tolerance <= 1.0:
        raise ValueError(f"tolerance must be between 0 and 1, got {tolerance}")
    return math.floor(tolerance * candidates + 0.5)


class FingerprintStore:
    """Persistent store of advisory records.

    Usage:
        async with FingerprintStore("sqlite+aiosqlite:///.victims.db") as store:
            await store.ensure_schema()
            record = await store.find_by_artifact_hash(digest)

    Writes must be serialized by the caller; the store does no locking.
    """

    def __init__(
        self,
        database_url: str | None = None,
        engine: AsyncEngine | None = None,
        echo: bool = False,
    ):
        """Initialize store.

        Args:
            database_url: SQLAlchemy async URL, used to create the engine lazily
            engine: Existing engine to use instead of creating one
            echo: Echo SQL statements when creating the engine
        """
        if database_url is None and engine is None:
            raise ValueError("FingerprintStore needs a database_url or an engine")
        self.database_url = database_url
        self.echo = echo
        self._engine = engine
        self._sessions: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        """Engine handle, created on first use."""
        if self._engine is None:
            try:
                self._engine = create_engine(self.database_url, echo=self.echo)
            except SQLAlchemyError as e:
                raise StorageError("connect", str(e)) from e
        return self._engine

    async def close(self) -> None:
        """Release pooled connections. The store reconnects on next use."""
        if self._engine is not None:
            await self._engine.dispose()

    async def __aenter__(self) -> "FingerprintStore":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @asynccontextmanager
    async def _session(self, operation: str, write: bool = False) -> AsyncIterator[AsyncSession]:
        """Scoped session for one logical operation.

        Writes run inside a transaction that commits on success and rolls
        back on any failure.
        """
        if self._sessions is None:
            self._sessions = create_session_factory(self.engine)
        try:
            async with self._sessions() as session:
                if write:
                    async with session.begin():
                        yield session
                else:
                    yield session
        except SQLAlchemyError as e:
            raise StorageError(operation, str(e)) from e

    @asynccontextmanager
    async def _connection(self, operation: str) -> AsyncIterator[AsyncConnection]:
        """Transactional connection for schema changes."""
        try:
            async with self.engine.begin() as conn:
                yield conn
        except SQLAlchemyError as e:
            raise StorageError(operation, str(e)) from e

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    async def ensure_schema(self) -> list[str]:
        """Create whichever of the three tables do not exist yet.

        Returns:
            Names of the tables that were created
        """
        async with self._connection("ensure_schema") as conn:
            created = await conn.run_sync(_create_missing_tables)
        if created:
            logger.info(f"Created victims tables: {', '.join(created)}")
        return created

    async def drop_schema(self) -> list[str]:
        """Drop whichever of the three tables exist, dependents first.

        Returns:
            Names of the tables that were dropped
        """
        async with self._connection("drop_schema") as conn:
            dropped = await conn.run_sync(_drop_existing_tables)
        if dropped:
            logger.info(f"Dropped victims tables: {', '.join(dropped)}")
        return dropped

    async def table_exists(self, name: str) -> bool:
        async with self._connection("table_exists") as conn:
            return await conn.run_sync(lambda sync_conn: inspect(sync_conn).has_table(name))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def insert(self, record: AdvisoryRecord) -> int:
        """Store an advisory with all its fingerprints and metadata.

        The record's own ``id`` is ignored; a new one is always assigned.

        Args:
            record: Advisory to store

        Returns:
            Identifier assigned to the stored advisory

        Raises:
            StorageError: If any part of the advisory could not be written
        """
        async with self._session("insert", write=True) as session:
            advisory_id = await self._add(session, record)
        logger.debug(f"Inserted advisory {advisory_id} ({record.vendor}:{record.name}:{record.version})")
        return advisory_id

    async def replace(self, record: AdvisoryRecord) -> int:
        """Store an advisory in place of any with the same coordinates.

        Args:
            record: Advisory to store

        Returns:
            Identifier assigned to the stored advisory
        """
        async with self._session("replace", write=True) as session:
            result = await session.scalars(
                select(Advisory.id).where(
                    Advisory.vendor == record.vendor,
                    Advisory.name == record.name,
                    Advisory.version == record.version,
                )
            )
            stale = list(result)
            if stale:
                await _delete_advisories(session, stale)
            advisory_id = await self._add(session, record)
        if stale:
            logger.debug(f"Replaced advisories {stale} with {advisory_id}")
        return advisory_id

    async def remove(self, advisory_id: int) -> bool:
        """Delete an advisory with its fingerprints and metadata.

        Removing an identifier that is not stored does nothing.

        Returns:
            True if an advisory was deleted
        """
        async with self._session("remove", write=True) as session:
            deleted = await _delete_advisories(session, [advisory_id])
        if deleted:
            logger.debug(f"Removed advisory {advisory_id}")
        return deleted > 0

    @staticmethod
    async def _add(session: AsyncSession, record: AdvisoryRecord) -> int:
        advisory = Advisory(
            vendor=record.vendor,
            name=record.name,
            version=record.version,
            cves=list(record.cves),
            created=record.created,
            submitter=record.submitter,
            format=record.format,
            status=record.status.value,
            fingerprints=[
                Fingerprint(
                    algorithm=algorithm,
                    combined=hash_record.combined,
                    filename=filename,
                    hash=digest,
                )
                for algorithm, hash_record in record.hashes.items()
                for filename, digest in hash_record.files.items()
            ],
            properties=[
                MetadataProperty(source=source, property=prop, value=value)
                for source, properties in record.meta.items()
                for prop, value in properties.items()
            ],
        )
        session.add(advisory)
        await session.flush()
        return advisory.id

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, advisory_id: int) -> AdvisoryRecord | None:
        """Get a full advisory by identifier, or None if it is not stored."""
        async with self._session("get") as session:
            return await _load(session, advisory_id)

    async def count(self) -> int:
        async with self._session("count") as session:
            return await session.scalar(select(func.count()).select_from(Advisory)) or 0

    async def latest_watermark(self) -> datetime | None:
        """Most recent ``created`` timestamp stored, or None when empty."""
        async with self._session("latest_watermark") as session:
            return await session.scalar(select(func.max(Advisory.created)))

    async def find_by_file_hash(self, digest: str) -> AdvisoryRecord | None:
        """Find the advisory listing a file with this digest, under any algorithm.

        When several advisories list the digest, the lowest identifier wins.
        """
        return await self._first(
            "find_by_file_hash",
            select(Fingerprint.advisory_id)
            .where(Fingerprint.hash == digest)
            .order_by(Fingerprint.advisory_id),
        )

    async def find_by_artifact_hash(self, digest: str) -> AdvisoryRecord | None:
        """Find the advisory whose combined digest matches, lowest identifier first."""
        return await self._first(
            "find_by_artifact_hash",
            select(Fingerprint.advisory_id)
            .where(Fingerprint.combined == digest)
            .order_by(Fingerprint.advisory_id),
        )

    async def find_by_coordinates(
        self, vendor: str, name: str, version: str
    ) -> AdvisoryRecord | None:
        """Find the advisory with exactly these coordinates, lowest identifier first."""
        return await self._first(
            "find_by_coordinates",
            select(Advisory.id)
            .where(Advisory.vendor == vendor, Advisory.name == name, Advisory.version == version)
            .order_by(Advisory.id),
        )

    async def find_by_metadata(
        self, source: str, properties: dict[str, str]
    ) -> AdvisoryRecord | None:
        """Find the advisory whose metadata has all of these property values.

        Args:
            source: Metadata source, e.g. ``MANIFEST.MF``
            properties: Property name to required value

        Returns:
            Lowest-identifier advisory carrying every property, or None
        """
        if not properties:
            raise ValueError("find_by_metadata needs at least one property")

        conditions = [
            and_(MetadataProperty.property == prop, MetadataProperty.value == value)
            for prop, value in properties.items()
        ]
        return await self._first(
            "find_by_metadata",
            select(MetadataProperty.advisory_id)
            .where(MetadataProperty.source == source, or_(*conditions))
            .group_by(MetadataProperty.advisory_id)
            .having(func.count(MetadataProperty.property.distinct()) == len(properties))
            .order_by(MetadataProperty.advisory_id),
        )

    async def find_by_pom_properties(
        self, group_id: str, artifact_id: str, version: str
    ) -> AdvisoryRecord | None:
        """Find an advisory by the Maven coordinates in its pom.properties."""
        return await self.find_by_metadata(
            POM_PROPERTIES,
            {"groupId": group_id, "artifactId": artifact_id, "version": version},
        )

    async def find_by_implementation(
        self, vendor: str, title: str, version: str
    ) -> AdvisoryRecord | None:
        """Find an advisory by the Implementation-* entries of its manifest."""
        return await self.find_by_metadata(
            MANIFEST,
            {
                "Implementation-Vendor": vendor,
                "Implementation-Title": title,
                "Implementation-Version": version,
            },
        )

    async def find_by_partial_hash_set(
        self,
        candidate_hashes: Iterable[str],
        tolerance: float,
        mode: MatchMode = MatchMode.EXACT,
    ) -> list[AdvisoryRecord]:
        """Find advisories sharing a given share of an artifact's file digests.

        The threshold is ``tolerance * n`` rounded half up, where ``n`` is the
        number of distinct candidate digests. For each advisory, the
        fingerprint rows (all files, all algorithms) whose digest is a
        candidate are counted. In ``EXACT`` mode an advisory matches only
        when that count equals the threshold, so advisories with more hits
        are not returned. ``MINIMUM`` mode accepts any count at or above it.

        Args:
            candidate_hashes: File digests of the artifact being checked
            tolerance: Fraction between 0 and 1
            mode: Comparison between hit count and threshold

        Returns:
            Matching advisories, each at most once, ordered by identifier

        Raises:
            ValueError: If tolerance is outside [0, 1]
        """
        candidates = sorted(set(candidate_hashes))
        threshold = match_threshold(tolerance, len(candidates))
        if not candidates:
            return []

        async with self._session("find_by_partial_hash_set") as session:
            hits: Counter[int] = Counter()
            for start in range(0, len(candidates), HASH_CHUNK_SIZE):
                chunk = candidates[start:start + HASH_CHUNK_SIZE]
                rows = await session.execute(
                    select(Fingerprint.advisory_id, func.count())
                    .where(Fingerprint.hash.in_(chunk))
                    .group_by(Fingerprint.advisory_id)
                )
                for advisory_id, count in rows:
                    hits[advisory_id] += count

            if mode == MatchMode.EXACT:
                matched = [aid for aid, count in hits.items() if count == threshold]
            else:
                matched = [aid for aid, count in hits.items() if count >= threshold]

            logger.debug(
                f"Fuzzy match: {len(candidates)} candidates, threshold {threshold} "
                f"({mode.value}), {len(hits)} advisories hit, {len(matched)} matched"
            )

            records = []
            for advisory_id in sorted(matched):
                record = await _load(session, advisory_id)
                if record is not None:
                    records.append(record)
            return records

    async def _first(self, operation: str, statement) -> AdvisoryRecord | None:
        async with self._session(operation) as session:
            advisory_id = await session.scalar(statement.limit(1))
            if advisory_id is None:
                return None
            return await _load(session, advisory_id)

    # Defined last: the name shadows the builtin in the class body.
    async def list(self, offset: int = 0, limit: int | None = None) -> list[AdvisoryRecord]:
        """Get stored advisories, ordered by identifier.

        Args:
            offset: Number of advisories to skip
            limit: Maximum number of advisories to return, all when None
        """
        async with self._session("list") as session:
            result = await session.scalars(
                select(Advisory.id).order_by(Advisory.id).offset(offset).limit(limit)
            )
            records = []
            for advisory_id in result.all():
                record = await _load(session, advisory_id)
                if record is not None:
                    records.append(record)
            return records


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------


async def _load(session: AsyncSession, advisory_id: int) -> AdvisoryRecord | None:
    advisory = await session.get(
        Advisory,
        advisory_id,
        options=[selectinload(Advisory.fingerprints), selectinload(Advisory.properties)],
    )
    if advisory is None:
        return None
    return _to_record(advisory)


def _to_record(advisory: Advisory) -> AdvisoryRecord:
    hashes: dict[str, dict] = {}
    for fp in advisory.fingerprints:
        entry = hashes.setdefault(fp.algorithm, {"combined": fp.combined, "files": {}})
        entry["files"][fp.filename] = fp.hash

    meta: dict[str, dict[str, str]] = {}
    for prop in advisory.properties:
        meta.setdefault(prop.source, {})[prop.property] = prop.value

    return AdvisoryRecord(
        id=advisory.id,
        cves=advisory.cves or [],
        vendor=advisory.vendor,
        name=advisory.name,
        version=advisory.version,
        created=advisory.created,
        submitter=advisory.submitter,
        format=advisory.format,
        status=advisory.status,
        hashes=hashes,
        meta=meta,
    )


async def _delete_advisories(session: AsyncSession, advisory_ids: list[int]) -> int:
    """Delete advisories and their dependent rows, returning advisories deleted."""
    await session.execute(
        delete(Fingerprint).where(Fingerprint.advisory_id.in_(advisory_ids))
    )
    await session.execute(
        delete(MetadataProperty).where(MetadataProperty.advisory_id.in_(advisory_ids))
    )
    result = await session.execute(delete(Advisory).where(Advisory.id.in_(advisory_ids)))
    return result.rowcount or 0


def _create_missing_tables(connection) -> list[str]:
    existing = set(inspect(connection).get_table_names())
    created = []
    for name in TABLES:
        if name not in existing:
            Base.metadata.tables[name].create(connection)
            created.append(name)
    return created


def _drop_existing_tables(connection) -> list[str]:
    existing = set(inspect(connection).get_table_names())
    dropped = []
    for name in reversed(TABLES):
        if name in existing:
            Base.metadata.tables[name].drop(connection)
            dropped.append(name)
    return dropped
