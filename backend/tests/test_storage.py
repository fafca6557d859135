"""Tests for the key-value stores and chunk caches."""
import os
from unittest.mock import patch

import pytest

from tempshare.config import StorageSettings
from tempshare.storage import (
    ChunkLookup,
    ChunkState,
    ChunkUnavailableError,
    DiskChunkStore,
    DuckDBKeyValueStore,
    MemoryChunkStore,
    MemoryKeyValueStore,
    build_stores,
)
from tempshare.storage.base import READ_BLOCK_SIZE

from conftest import FakeClock


async def _read_all(lookup: ChunkLookup) -> bytes:
    return b"".join([block async for block in lookup.handle.iter_bytes()])


# ---------------------------------------------------------------------------
# Key-value stores
# ---------------------------------------------------------------------------


@pytest.fixture(params=["memory", "duckdb"])
def kv_store(request, tmp_path):
    clock = FakeClock()
    if request.param == "memory":
        store = MemoryKeyValueStore("test", clock=clock)
    else:
        store = DuckDBKeyValueStore("test_kv", db_path=str(tmp_path / "kv.duckdb"), clock=clock)
    yield store, clock
    store.close()


class TestKeyValueStore:
    @pytest.mark.asyncio
    async def test_put_then_get(self, kv_store):
        store, clock = kv_store
        await store.put("a", "1", expires_at=clock() + 10)
        assert await store.get("a") == "1"

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, kv_store):
        store, _ = kv_store
        assert await store.get("nope") is None

    @pytest.mark.asyncio
    async def test_put_replaces_value_and_expiry(self, kv_store):
        store, clock = kv_store
        await store.put("a", "1", expires_at=clock() + 10)
        await store.put("a", "2", expires_at=clock() + 100)
        clock.advance(50)
        assert await store.get("a") == "2"

    @pytest.mark.asyncio
    async def test_expired_entry_not_returned(self, kv_store):
        store, clock = kv_store
        await store.put("a", "1", expires_at=clock() + 10)
        clock.advance(10)
        assert await store.get("a") is None

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, kv_store):
        store, clock = kv_store
        await store.put("a", "1", expires_at=clock() + 10)
        await store.delete("a")
        await store.delete("a")
        assert await store.get("a") is None

    @pytest.mark.asyncio
    async def test_sweep_counts_expired(self, kv_store):
        store, clock = kv_store
        await store.put("old", "1", expires_at=clock() + 5)
        await store.put("new", "2", expires_at=clock() + 500)
        clock.advance(10)
        assert await store.sweep() == 1
        assert await store.get("new") == "2"


class TestExpiryGrace:
    @pytest.mark.asyncio
    async def test_memory_store_keeps_entry_within_grace(self):
        clock = FakeClock()
        store = MemoryKeyValueStore(clock=clock, grace_seconds=60)
        await store.put("a", "1", expires_at=clock() + 10)
        clock.advance(30)
        assert await store.get("a") == "1"
        clock.advance(40)
        assert await store.get("a") is None

    @pytest.mark.asyncio
    async def test_duckdb_store_keeps_entry_within_grace(self):
        clock = FakeClock()
        store = DuckDBKeyValueStore("graced", clock=clock, grace_seconds=60)
        try:
            await store.put("a", "1", expires_at=clock() + 10)
            clock.advance(30)
            assert await store.get("a") == "1"
            assert await store.sweep() == 0
            clock.advance(40)
            assert await store.sweep() == 1
        finally:
            store.close()


class TestDuckDBKeyValueStore:
    def test_rejects_unsafe_table_name(self):
        with pytest.raises(ValueError, match="Invalid table name"):
            DuckDBKeyValueStore("x; DROP TABLE y")

    @pytest.mark.asyncio
    async def test_survives_reopen(self, tmp_path):
        db_path = str(tmp_path / "meta.duckdb")
        clock = FakeClock()
        store = DuckDBKeyValueStore("file_metadata", db_path=db_path, clock=clock)
        await store.put("id1", '{"a": 1}', expires_at=clock() + 100)
        store.close()

        reopened = DuckDBKeyValueStore("file_metadata", db_path=db_path, clock=clock)
        try:
            assert await reopened.get("id1") == '{"a": 1}'
        finally:
            reopened.close()


# ---------------------------------------------------------------------------
# Chunk stores
# ---------------------------------------------------------------------------


class TestMemoryChunkStore:
    @pytest.mark.asyncio
    async def test_open_present_streams_blocks(self):
        clock = FakeClock()
        store = MemoryChunkStore(clock=clock)
        data = b"x" * (READ_BLOCK_SIZE + 10)
        await store.put("k", data, expires_at=clock() + 60)

        lookup = await store.open("k")

        assert lookup.state is ChunkState.PRESENT
        assert lookup.handle.size == len(data)
        blocks = [block async for block in lookup.handle.iter_bytes()]
        assert [len(b) for b in blocks] == [READ_BLOCK_SIZE, 10]

    @pytest.mark.asyncio
    async def test_open_missing_is_absent(self):
        lookup = await MemoryChunkStore().open("missing")
        assert lookup.state is ChunkState.ABSENT
        assert not lookup.ok

    @pytest.mark.asyncio
    async def test_expired_chunk_is_absent(self):
        clock = FakeClock()
        store = MemoryChunkStore(clock=clock)
        await store.put("k", b"data", expires_at=clock() + 5)
        clock.advance(5)
        assert (await store.open("k")).state is ChunkState.ABSENT
        assert "k" not in store

    @pytest.mark.asyncio
    async def test_lru_eviction_under_budget(self):
        clock = FakeClock()
        store = MemoryChunkStore(max_bytes=10, clock=clock)
        await store.put("a", b"aaaa", expires_at=clock() + 60)
        await store.put("b", b"bbbb", expires_at=clock() + 60)
        # Touch "a" so "b" becomes least recently used.
        await store.open("a")
        await store.put("c", b"cccc", expires_at=clock() + 60)

        assert "a" in store
        assert "b" not in store
        assert "c" in store
        assert store.total_bytes == 8

    @pytest.mark.asyncio
    async def test_chunk_larger_than_budget_not_cached(self):
        store = MemoryChunkStore(max_bytes=4)
        await store.put("big", b"too large", expires_at=10**12)
        assert (await store.open("big")).state is ChunkState.ABSENT
        assert store.total_bytes == 0

    @pytest.mark.asyncio
    async def test_handle_survives_eviction_after_open(self):
        clock = FakeClock()
        store = MemoryChunkStore(clock=clock)
        await store.put("k", b"payload", expires_at=clock() + 60)
        lookup = await store.open("k")
        await store.delete("k")
        assert await _read_all(lookup) == b"payload"

    @pytest.mark.asyncio
    async def test_sweep(self):
        clock = FakeClock()
        store = MemoryChunkStore(clock=clock)
        await store.put("a", b"1", expires_at=clock() + 5)
        await store.put("b", b"2", expires_at=clock() + 50)
        clock.advance(10)
        assert await store.sweep() == 1
        assert store.total_bytes == 1


class TestDiskChunkStore:
    @pytest.mark.asyncio
    async def test_put_open_read(self, tmp_path):
        clock = FakeClock()
        store = DiskChunkStore(str(tmp_path / "chunks"), clock=clock)
        await store.put("chunks/f/t/0", b"hello", expires_at=clock() + 60)

        lookup = await store.open("chunks/f/t/0")

        assert lookup.ok
        assert lookup.handle.size == 5
        assert await _read_all(lookup) == b"hello"

    @pytest.mark.asyncio
    async def test_file_names_do_not_leak_keys(self, tmp_path):
        clock = FakeClock()
        store = DiskChunkStore(str(tmp_path), clock=clock)
        await store.put("chunks/secret/0", b"x", expires_at=clock() + 60)
        names = os.listdir(tmp_path)
        assert len(names) == 1
        assert "secret" not in names[0]
        assert names[0].endswith(".chunk")

    @pytest.mark.asyncio
    async def test_expired_chunk_removed_on_open(self, tmp_path):
        clock = FakeClock()
        store = DiskChunkStore(str(tmp_path), clock=clock)
        await store.put("k", b"x", expires_at=clock() + 5)
        clock.advance(6)
        assert (await store.open("k")).state is ChunkState.ABSENT
        assert os.listdir(tmp_path) == []

    @pytest.mark.asyncio
    async def test_vanished_file_raises_on_read(self, tmp_path):
        clock = FakeClock()
        store = DiskChunkStore(str(tmp_path), clock=clock)
        await store.put("k", b"x", expires_at=clock() + 60)
        lookup = await store.open("k")
        await store.delete("k")

        with pytest.raises(ChunkUnavailableError):
            await _read_all(lookup)

    @pytest.mark.asyncio
    async def test_budget_evicts_soonest_expiring(self, tmp_path):
        clock = FakeClock()
        store = DiskChunkStore(str(tmp_path), max_bytes=8, clock=clock)
        await store.put("soon", b"1234", expires_at=clock() + 10)
        await store.put("late", b"5678", expires_at=clock() + 1000)
        await store.put("new", b"9abc", expires_at=clock() + 500)

        assert (await store.open("soon")).state is ChunkState.ABSENT
        assert (await store.open("late")).ok
        assert (await store.open("new")).ok

    @pytest.mark.asyncio
    async def test_sweep(self, tmp_path):
        clock = FakeClock()
        store = DiskChunkStore(str(tmp_path), clock=clock)
        await store.put("a", b"1", expires_at=clock() + 5)
        await store.put("b", b"2", expires_at=clock() + 50)
        clock.advance(10)
        assert await store.sweep() == 1
        assert store.total_bytes == 1

    @pytest.mark.asyncio
    async def test_running_total_tracks_writes(self, tmp_path):
        clock = FakeClock()
        store = DiskChunkStore(str(tmp_path), clock=clock)
        await store.put("a", b"1234", expires_at=clock() + 60)
        await store.put("b", b"56", expires_at=clock() + 60)
        await store.put("a", b"7", expires_at=clock() + 60)
        assert store.total_bytes == 3

        await store.delete("b")
        await store.delete("b")
        assert store.total_bytes == 1

    @pytest.mark.asyncio
    async def test_put_under_budget_does_not_scan(self, tmp_path):
        clock = FakeClock()
        store = DiskChunkStore(str(tmp_path), max_bytes=100, clock=clock)

        with patch.object(store, "_scan", wraps=store._scan) as scan:
            for index in range(5):
                await store.put(f"k{index}", b"abcd", expires_at=clock() + 60)

        scan.assert_not_called()

    @pytest.mark.asyncio
    async def test_total_picks_up_existing_files(self, tmp_path):
        clock = FakeClock()
        first = DiskChunkStore(str(tmp_path), clock=clock)
        await first.put("a", b"12345", expires_at=clock() + 60)

        reopened = DiskChunkStore(str(tmp_path), clock=clock)
        assert reopened.total_bytes == 5


# ---------------------------------------------------------------------------
# build_stores
# ---------------------------------------------------------------------------


class TestBuildStores:
    def test_memory_defaults(self):
        stores = build_stores(StorageSettings())
        assert isinstance(stores.metadata, MemoryKeyValueStore)
        assert isinstance(stores.tokens, MemoryKeyValueStore)
        assert isinstance(stores.chunks, MemoryChunkStore)
        assert stores.connection is None

    @pytest.mark.asyncio
    async def test_duckdb_and_disk(self, tmp_path):
        settings = StorageSettings(
            metadata_backend="duckdb",
            metadata_db_path=str(tmp_path / "meta.duckdb"),
            chunk_backend="disk",
            chunk_dir=str(tmp_path / "chunks"),
        )
        stores = build_stores(settings, clock=FakeClock())
        try:
            assert isinstance(stores.metadata, DuckDBKeyValueStore)
            assert isinstance(stores.chunks, DiskChunkStore)
            assert stores.metadata.table != stores.tokens.table
            assert await stores.sweep() == {"metadata": 0, "tokens": 0, "chunks": 0}
        finally:
            stores.close()
        assert stores.connection is None
