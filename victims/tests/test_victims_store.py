"""Tests for the victims fingerprint store."""

from datetime import datetime

import pytest
from sqlalchemy import select, text

from victims.models.database import Fingerprint, MetadataProperty
from victims.models.schemas import AdvisoryRecord
from victims.services.victims import store as store_module
from victims.services.victims.errors import StorageError
from victims.services.victims.store import FingerprintStore


def _make_record(**overrides) -> AdvisoryRecord:
    """Create an AdvisoryRecord with sensible defaults, overridable by kwargs."""
    defaults = dict(
        cves=["CVE-2011-2730", "CVE-2011-2894"],
        vendor="org.springframework",
        name="spring-core",
        version="3.0.5",
        created=datetime(2012, 1, 1),
        submitter="gmurphy",
        format="Jar",
        status="released",
        hashes={
            "sha1": {
                "combined": "combined-sha1",
                "files": {"Foo.class": "foo-sha1", "Bar.class": "bar-sha1"},
            },
            "sha512": {
                "combined": "combined-sha512",
                "files": {"Foo.class": "foo-sha512"},
            },
        },
        meta={
            "pom.properties": {
                "groupId": "org.springframework",
                "artifactId": "spring-core",
                "version": "3.0.5",
            },
            "MANIFEST.MF": {
                "Implementation-Vendor": "SpringSource",
                "Implementation-Title": "spring-core",
                "Implementation-Version": "3.0.5.RELEASE",
            },
        },
    )
    defaults.update(overrides)
    return AdvisoryRecord(**defaults)


class TestStoreRoundTrip:
    @pytest.mark.asyncio
    async def test_insert_then_get_returns_equal_record(self, store):
        record = _make_record()
        advisory_id = await store.insert(record)

        fetched = await store.get(advisory_id)
        assert fetched is not None
        assert fetched.id == advisory_id
        assert fetched.model_dump(exclude={"id"}) == record.model_dump(exclude={"id"})

    @pytest.mark.asyncio
    async def test_round_trip_with_empty_cves(self, store):
        record = _make_record(cves=[])
        fetched = await store.get(await store.insert(record))
        assert fetched.cves == []

    @pytest.mark.asyncio
    async def test_insert_ignores_supplied_id(self, store):
        first = await store.insert(_make_record())
        second = await store.insert(_make_record(id=first))
        assert second != first

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, store):
        assert await store.get(999) is None

    @pytest.mark.asyncio
    async def test_list_returns_every_record(self, store):
        ids = [
            await store.insert(_make_record(version=version))
            for version in ("1.0", "2.0", "3.0")
        ]
        records = await store.list()
        assert [r.id for r in records] == ids
        assert [r.version for r in records] == ["1.0", "2.0", "3.0"]
        assert await store.count() == 3

    @pytest.mark.asyncio
    async def test_list_page_loads_only_that_page(self, store, monkeypatch):
        ids = [await store.insert(_make_record(version=str(i))) for i in range(6)]
        loaded = []
        load = store_module._load

        async def _counting_load(session, advisory_id):
            loaded.append(advisory_id)
            return await load(session, advisory_id)

        monkeypatch.setattr(store_module, "_load", _counting_load)
        records = await store.list(offset=2, limit=2)

        assert [r.id for r in records] == ids[2:4]
        assert loaded == ids[2:4]

    @pytest.mark.asyncio
    async def test_list_offset_past_end(self, store):
        await store.insert(_make_record())
        assert await store.list(offset=5, limit=10) == []
        assert len(await store.list(offset=0)) == 1

    @pytest.mark.asyncio
    async def test_list_empty_store(self, store):
        assert await store.list() == []
        assert await store.count() == 0


class TestStoreIdentifiers:
    @pytest.mark.asyncio
    async def test_ids_increase(self, store):
        first = await store.insert(_make_record())
        second = await store.insert(_make_record())
        assert second > first

    @pytest.mark.asyncio
    async def test_ids_never_reused_after_removal(self, store):
        first = await store.insert(_make_record())
        second = await store.insert(_make_record())
        await store.remove(second)
        third = await store.insert(_make_record())
        assert third > second > first


class TestStoreRemove:
    @pytest.mark.asyncio
    async def test_remove_deletes_record(self, store):
        advisory_id = await store.insert(_make_record())
        assert await store.remove(advisory_id) is True
        assert await store.get(advisory_id) is None

    @pytest.mark.asyncio
    async def test_remove_twice_is_harmless(self, store):
        advisory_id = await store.insert(_make_record())
        await store.remove(advisory_id)
        assert await store.remove(advisory_id) is False
        assert await store.get(advisory_id) is None

    @pytest.mark.asyncio
    async def test_remove_missing_id_is_noop(self, store):
        kept = await store.insert(_make_record())
        assert await store.remove(kept + 100) is False
        assert await store.get(kept) is not None

    @pytest.mark.asyncio
    async def test_remove_deletes_dependent_rows(self, store):
        advisory_id = await store.insert(_make_record())
        await store.remove(advisory_id)

        async with store.engine.connect() as conn:
            fingerprints = (
                await conn.execute(select(Fingerprint).where(Fingerprint.advisory_id == advisory_id))
            ).all()
            properties = (
                await conn.execute(
                    select(MetadataProperty).where(MetadataProperty.advisory_id == advisory_id)
                )
            ).all()
        assert fingerprints == []
        assert properties == []
        assert await store.find_by_file_hash("foo-sha1") is None


class TestStoreWatermark:
    @pytest.mark.asyncio
    async def test_empty_store_has_no_watermark(self, store):
        assert await store.latest_watermark() is None

    @pytest.mark.asyncio
    async def test_watermark_is_max_created(self, store):
        dates = [datetime(2012, 1, 1), datetime(2012, 6, 1, 8, 30), datetime(2013, 2, 3, 4, 5, 6)]
        for created in dates:
            await store.insert(_make_record(created=created))
        assert await store.latest_watermark() == max(dates)

    @pytest.mark.asyncio
    async def test_watermark_ignores_insert_order(self, store):
        await store.insert(_make_record(created=datetime(2013, 1, 1)))
        await store.insert(_make_record(created=datetime(2012, 1, 1)))
        assert await store.latest_watermark() == datetime(2013, 1, 1)


class TestStoreExactLookups:
    @pytest.mark.asyncio
    async def test_find_by_file_hash_any_algorithm(self, store):
        advisory_id = await store.insert(_make_record())
        assert (await store.find_by_file_hash("bar-sha1")).id == advisory_id
        assert (await store.find_by_file_hash("foo-sha512")).id == advisory_id

    @pytest.mark.asyncio
    async def test_find_by_file_hash_missing(self, store):
        await store.insert(_make_record())
        assert await store.find_by_file_hash("nope") is None

    @pytest.mark.asyncio
    async def test_find_by_file_hash_shared_digest_returns_lowest_id(self, store):
        first = await store.insert(_make_record(version="1.0"))
        await store.insert(_make_record(version="2.0"))
        record = await store.find_by_file_hash("foo-sha1")
        assert record.id == first

    @pytest.mark.asyncio
    async def test_find_by_file_hash_does_not_match_combined(self, store):
        await store.insert(_make_record())
        assert await store.find_by_file_hash("combined-sha1") is None

    @pytest.mark.asyncio
    async def test_find_by_artifact_hash(self, store):
        advisory_id = await store.insert(_make_record())
        assert (await store.find_by_artifact_hash("combined-sha512")).id == advisory_id
        assert await store.find_by_artifact_hash("foo-sha1") is None

    @pytest.mark.asyncio
    async def test_find_by_coordinates(self, store):
        await store.insert(_make_record(version="1.0"))
        wanted = await store.insert(_make_record(version="2.0"))
        record = await store.find_by_coordinates("org.springframework", "spring-core", "2.0")
        assert record.id == wanted
        assert await store.find_by_coordinates("org.springframework", "spring-core", "9.9") is None

    @pytest.mark.asyncio
    async def test_find_by_pom_properties(self, store):
        advisory_id = await store.insert(_make_record())
        record = await store.find_by_pom_properties("org.springframework", "spring-core", "3.0.5")
        assert record.id == advisory_id
        assert await store.find_by_pom_properties("org.springframework", "spring-core", "3.0.6") is None

    @pytest.mark.asyncio
    async def test_find_by_implementation(self, store):
        advisory_id = await store.insert(_make_record())
        record = await store.find_by_implementation("SpringSource", "spring-core", "3.0.5.RELEASE")
        assert record.id == advisory_id

    @pytest.mark.asyncio
    async def test_find_by_metadata_requires_every_property(self, store):
        await store.insert(_make_record())
        record = await store.find_by_metadata(
            "pom.properties", {"groupId": "org.springframework", "artifactId": "spring-beans"}
        )
        assert record is None

    @pytest.mark.asyncio
    async def test_find_by_metadata_scoped_to_source(self, store):
        await store.insert(_make_record())
        assert await store.find_by_metadata("MANIFEST.MF", {"groupId": "org.springframework"}) is None

    @pytest.mark.asyncio
    async def test_find_by_metadata_without_properties(self, store):
        with pytest.raises(ValueError):
            await store.find_by_metadata("pom.properties", {})


class TestStoreReplace:
    @pytest.mark.asyncio
    async def test_replace_swaps_same_coordinates(self, store):
        old = await store.insert(_make_record(cves=["CVE-2011-0001"]))
        other = await store.insert(_make_record(version="9.9"))

        new = await store.replace(_make_record(cves=["CVE-2011-0001", "CVE-2012-0002"]))

        assert await store.get(old) is None
        assert await store.get(other) is not None
        assert (await store.get(new)).cves == ["CVE-2011-0001", "CVE-2012-0002"]
        assert await store.count() == 2

    @pytest.mark.asyncio
    async def test_replace_without_existing_inserts(self, store):
        advisory_id = await store.replace(_make_record())
        assert await store.get(advisory_id) is not None


class TestStoreTransactions:
    @pytest.mark.asyncio
    async def test_failed_insert_leaves_no_partial_record(self, store):
        async with store.engine.begin() as conn:
            await conn.execute(text("DROP TABLE fingerprints"))

        with pytest.raises(StorageError) as exc_info:
            await store.insert(_make_record())

        assert exc_info.value.operation == "insert"
        assert exc_info.value.__cause__ is not None
        assert await store.count() == 0


class TestStoreSchema:
    @pytest.mark.asyncio
    async def test_ensure_schema_twice(self, store):
        assert await store.ensure_schema() == []
        for table in ("advisories", "fingerprints", "metadata"):
            assert await store.table_exists(table)

    @pytest.mark.asyncio
    async def test_ensure_schema_creates_missing_table_only(self, store):
        advisory_id = await store.insert(_make_record())
        async with store.engine.begin() as conn:
            await conn.execute(text("DROP TABLE metadata"))

        assert await store.ensure_schema() == ["metadata"]
        assert (await store.get(advisory_id)).meta == {}

    @pytest.mark.asyncio
    async def test_drop_schema(self, store):
        assert await store.drop_schema() == ["metadata", "fingerprints", "advisories"]
        assert not await store.table_exists("advisories")
        assert await store.drop_schema() == []

    @pytest.mark.asyncio
    async def test_fresh_database(self, database_url):
        async with FingerprintStore(database_url) as fresh:
            assert await fresh.ensure_schema() == ["advisories", "fingerprints", "metadata"]
            assert await fresh.latest_watermark() is None

    @pytest.mark.asyncio
    async def test_query_without_schema_raises_storage_error(self, database_url):
        async with FingerprintStore(database_url) as fresh:
            with pytest.raises(StorageError):
                await fresh.get(1)

    def test_needs_url_or_engine(self):
        with pytest.raises(ValueError):
            FingerprintStore()
