"""
tests/test_repository.py

Tests for storage/repository.py + storage/database.py using in-memory
SQLite (":memory:").
"""

from __future__ import annotations

import pytest
import pytest_asyncio

from tempomix.config import Settings
from tempomix.mixing import TemporalMixingQueue
from tempomix.models import StorageError
from tempomix.storage import MemoryPacketStore, build_store
from tempomix.storage.database import Database
from tempomix.storage.repository import SqlitePacketStore


def pkt(key, data, origin=None) -> dict:
    p = {"identifier": {"value": key}, "data": data}
    if origin is not None:
        p["origin"] = origin
    return p


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def db():
    """In-memory SQLite database, initialised fresh for each test."""
    d = Database(":memory:")
    d.init_schema()
    return d


@pytest_asyncio.fixture
async def store(db):
    s = SqlitePacketStore(db, "identifier.value", "origin")
    yield s
    await s.close()


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class TestDatabase:

    def test_schema_created(self, db):
        tables = {
            r[0] for r in db.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        }
        assert {"packets", "schema_version"} <= tables

    def test_init_schema_idempotent(self, db):
        db.init_schema()
        versions = db.execute("SELECT version FROM schema_version").fetchall()
        assert [r[0] for r in versions] == [1]

    def test_file_database_creates_directory(self, tmp_path):
        path = tmp_path / "nested" / "packets.db"
        d = Database(str(path))
        d.init_schema()
        d.close()
        assert path.exists()

    def test_discard_orphans(self, db):
        db.execute(
            "INSERT INTO packets (grouping_key, origin, body, inserted_at) VALUES (?, ?, ?, ?)",
            ("1", "null", "{}", 0.0),
        )
        db.commit()
        assert db.discard_orphans() == 1
        assert db.discard_orphans() == 0


# ---------------------------------------------------------------------------
# PacketStore contract
# ---------------------------------------------------------------------------

class TestSqliteStore:

    @pytest.mark.asyncio
    async def test_insert_and_find(self, store):
        await store.insert(pkt(1, "a", origin=10))
        await store.insert(pkt(1, "b", origin=20))
        await store.insert(pkt(2, "c", origin=10))
        found = await store.find_by_key(1)
        assert sorted(found, key=lambda p: p["data"]) == [
            pkt(1, "a", origin=10),
            pkt(1, "b", origin=20),
        ]

    @pytest.mark.asyncio
    async def test_storage_id_never_returned(self, store):
        await store.insert(pkt("k", "a"))
        found = await store.find_by_key("k")
        assert "_id" not in found[0]
        assert "id" not in found[0]

    @pytest.mark.asyncio
    async def test_keys_compare_by_json_value(self, store):
        await store.insert(pkt("1", "string key"))
        await store.insert(pkt(1, "int key"))
        assert [p["data"] for p in await store.find_by_key(1)] == ["int key"]
        assert [p["data"] for p in await store.find_by_key("1")] == ["string key"]

    @pytest.mark.asyncio
    async def test_integral_float_key_is_the_int_key(self, store):
        await store.insert(pkt(1, "a", origin=7))
        await store.insert(pkt(1.0, "b", origin=7.0))
        assert sorted(p["data"] for p in await store.find_by_key(1)) == ["a", "b"]
        assert await store.count_by_key_and_origin(1.0, 7) == 2
        assert await store.delete_by_key(1.0) == 2
        assert await store.count_all() == 0

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await store.insert(pkt(1, "a"))
        await store.insert(pkt(1, "b"))
        await store.insert(pkt(2, "c"))
        assert await store.delete_by_key(1) == 2
        assert await store.find_by_key(1) == []
        assert await store.count_all() == 1

    @pytest.mark.asyncio
    async def test_delete_missing_is_noop(self, store):
        assert await store.delete_by_key("missing") == 0

    @pytest.mark.asyncio
    async def test_count_by_key_and_origin(self, store):
        await store.insert(pkt(1, "a", origin=10))
        await store.insert(pkt(1, "b", origin=10))
        await store.insert(pkt(1, "c", origin=20))
        assert await store.count_by_key_and_origin(1, 10) == 2
        assert await store.count_by_key_and_origin(1, 20) == 1
        assert await store.count_by_key_and_origin(1, 99) == 0

    @pytest.mark.asyncio
    async def test_dict_origin_compares_by_content(self, store):
        await store.insert(pkt(1, "a", origin={"b": 2, "a": 1}))
        assert await store.count_by_key_and_origin(1, {"a": 1, "b": 2}) == 1

    @pytest.mark.asyncio
    async def test_non_serializable_packet_raises_storage_error(self, store):
        bad = pkt(1, object())
        with pytest.raises(StorageError):
            await store.insert(bad)
        assert await store.count_all() == 0

    @pytest.mark.asyncio
    async def test_sqlite_failure_wrapped(self, db):
        s = SqlitePacketStore(db, "identifier.value", "origin")
        db.execute("DROP TABLE packets")
        with pytest.raises(StorageError):
            await s.find_by_key(1)
        await s.close()


# ---------------------------------------------------------------------------
# Mixing queue over SQLite
# ---------------------------------------------------------------------------

class TestMixingOverSqlite:

    @pytest.mark.asyncio
    async def test_int_and_float_keys_flush_together(self, store):
        mq = TemporalMixingQueue({"allowDuplicates": True}, store=store)
        batches: list = []
        mq.subscribe(batches.append)
        await mq.ingest(pkt(1, "a"))
        await mq.ingest(pkt(1.0, "b"))
        assert mq.pending_keys() == [1]

        await mq._flush_head()
        assert len(batches) == 1
        assert sorted(p["data"] for p in batches[0]) == ["a", "b"]
        assert mq.pending_keys() == []
        assert await store.count_all() == 0

    @pytest.mark.asyncio
    async def test_float_origin_repeat_pushes_out(self, store):
        mq = TemporalMixingQueue({}, store=store)
        batches: list = []
        mq.subscribe(batches.append)
        await mq.ingest(pkt(1, "a", origin=10))
        await mq.ingest(pkt(1.0, "b", origin=10.0))
        assert [[p["data"] for p in b] for b in batches] == [["a"]]
        assert mq.stats["pushouts"] == 1
        assert [p["data"] for p in await store.find_by_key(1)] == ["b"]
        await mq.close(drain=False)


# ---------------------------------------------------------------------------
# build_store
# ---------------------------------------------------------------------------

class TestBuildStore:

    def test_memory_default(self):
        assert isinstance(build_store(Settings()), MemoryPacketStore)

    @pytest.mark.asyncio
    async def test_sqlite_backend(self, tmp_path):
        s = Settings(STORE_BACKEND="sqlite", DB_PATH=str(tmp_path / "p.db"))
        store = build_store(s)
        assert isinstance(store, SqlitePacketStore)
        await store.insert(pkt(1, "a"))
        assert await store.count_all() == 1
        await store.close()

    @pytest.mark.asyncio
    async def test_sqlite_restart_starts_empty(self, tmp_path):
        s = Settings(STORE_BACKEND="sqlite", DB_PATH=str(tmp_path / "p.db"))
        first = build_store(s)
        await first.insert(pkt(1, "left behind"))
        await first.close()

        second = build_store(s)
        assert await second.find_by_key(1) == []
        await second.close()
