"""
tests/test_memory_store.py

Tests for storage/memory.py - the in-process packet buffer.
"""

from __future__ import annotations

import pytest

from tempomix.models import MalformedPacketError
from tempomix.storage.base import STORAGE_ID_FIELD
from tempomix.storage.memory import MemoryPacketStore


def pkt(key, data, origin=None) -> dict:
    p = {"identifier": {"value": key}, "data": data}
    if origin is not None:
        p["origin"] = origin
    return p


@pytest.fixture
def store():
    return MemoryPacketStore("identifier.value", "origin")


class TestMemoryStoreInsertFind:

    @pytest.mark.asyncio
    async def test_find_returns_inserted_packets(self, store):
        await store.insert(pkt(1, "a"))
        await store.insert(pkt(1, "b"))
        await store.insert(pkt(2, "c"))
        found = await store.find_by_key(1)
        assert sorted(p["data"] for p in found) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_storage_id_stripped(self, store):
        await store.insert(pkt(1, "a"))
        found = await store.find_by_key(1)
        assert found == [pkt(1, "a")]
        assert STORAGE_ID_FIELD not in found[0]

    @pytest.mark.asyncio
    async def test_duplicates_accumulate(self, store):
        for _ in range(3):
            await store.insert(pkt(1, "same"))
        assert len(await store.find_by_key(1)) == 3

    @pytest.mark.asyncio
    async def test_unknown_key_is_empty(self, store):
        assert await store.find_by_key("nope") == []

    @pytest.mark.asyncio
    async def test_caller_mutation_does_not_leak(self, store):
        p = pkt(1, "a")
        await store.insert(p)
        p["data"] = "changed"
        found = await store.find_by_key(1)
        found[0]["data"] = "changed again"
        assert (await store.find_by_key(1))[0]["data"] == "a"

    @pytest.mark.asyncio
    async def test_malformed_rejected(self, store):
        with pytest.raises(MalformedPacketError):
            await store.insert({"data": "no key"})
        assert len(store) == 0


    @pytest.mark.asyncio
    async def test_integral_float_key_is_the_int_key(self, store):
        await store.insert(pkt(1, "a", origin=7))
        await store.insert(pkt(1.0, "b", origin=7.0))
        assert sorted(p["data"] for p in await store.find_by_key(1.0)) == ["a", "b"]
        assert await store.count_by_key_and_origin(1, 7) == 2
        assert store.keys() == [1]

    @pytest.mark.asyncio
    async def test_bool_key_is_not_an_int_key(self, store):
        await store.insert(pkt(1, "a"))
        await store.insert(pkt(True, "b"))
        assert [p["data"] for p in await store.find_by_key(1)] == ["a"]
        assert [p["data"] for p in await store.find_by_key(True)] == ["b"]


class TestMemoryStoreDelete:

    @pytest.mark.asyncio
    async def test_delete_removes_only_that_key(self, store):
        await store.insert(pkt(1, "a"))
        await store.insert(pkt(1, "b"))
        await store.insert(pkt(2, "c"))
        assert await store.delete_by_key(1) == 2
        assert await store.find_by_key(1) == []
        assert len(await store.find_by_key(2)) == 1
        assert store.keys() == [2]

    @pytest.mark.asyncio
    async def test_delete_missing_is_noop(self, store):
        assert await store.delete_by_key("missing") == 0


class TestMemoryStoreCount:

    @pytest.mark.asyncio
    async def test_count_by_key_and_origin(self, store):
        await store.insert(pkt(1, "a", origin=10))
        await store.insert(pkt(1, "b", origin=20))
        await store.insert(pkt(1, "c", origin=10))
        await store.insert(pkt(2, "d", origin=10))
        assert await store.count_by_key_and_origin(1, 10) == 2
        assert await store.count_by_key_and_origin(1, 20) == 1
        assert await store.count_by_key_and_origin(1, 30) == 0
        assert await store.count_by_key_and_origin(3, 10) == 0

    @pytest.mark.asyncio
    async def test_missing_origin_counts_as_none(self, store):
        await store.insert(pkt(1, "a"))
        assert await store.count_by_key_and_origin(1, None) == 1
