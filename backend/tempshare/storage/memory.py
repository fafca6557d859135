"""In-memory stores with lazy TTL expiry.

Nothing here is written to disk; the stores live for the process lifetime
only. Expired entries are dropped when they are next read, or in bulk by
``sweep()``. There is no background task.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, Optional

from .base import (
    READ_BLOCK_SIZE,
    ChunkBlobStore,
    ChunkHandle,
    ChunkLookup,
    KeyValueStore,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass
class _StoredValue:
    value:      str
    expires_at: float   # absolute wall-clock deadline

    def is_expired(self, now: float, grace: float = 0.0) -> bool:
        return now >= self.expires_at + grace


class MemoryKeyValueStore(KeyValueStore):
    """asyncio-safe in-memory key-value store.

    Entries are kept for *grace_seconds* past their expiration, like a
    remote store whose expiry lags behind the deadline it was given.
    """

    def __init__(
        self,
        name: str = "kv",
        clock: Clock = time.time,
        grace_seconds: float = 0.0,
    ) -> None:
        self.name = name
        self._store: Dict[str, _StoredValue] = {}
        self._lock = asyncio.Lock()
        self._clock = clock
        self._grace = grace_seconds

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock(), self._grace):
                del self._store[key]
                logger.debug("[%s] entry %s expired", self.name, key)
                return None
            return entry.value

    async def put(self, key: str, value: str, expires_at: float) -> None:
        async with self._lock:
            self._store[key] = _StoredValue(value=value, expires_at=expires_at)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._store.pop(key, None)

    async def sweep(self) -> int:
        now = self._clock()
        async with self._lock:
            expired = [k for k, v in self._store.items() if v.is_expired(now, self._grace)]
            for k in expired:
                del self._store[k]
        if expired:
            logger.info("[%s] sweep evicted %d expired entries", self.name, len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._store)


# ---------------------------------------------------------------------------
# Chunk cache
# ---------------------------------------------------------------------------


@dataclass
class _StoredChunk:
    data:       bytes
    expires_at: float


class MemoryChunkHandle(ChunkHandle):
    """Handle over bytes held by the cache.

    The handle keeps its own reference to the body, so an eviction after
    ``open`` does not affect a read already in progress.
    """

    def __init__(self, key: str, data: bytes) -> None:
        super().__init__(key, len(data))
        self._data = data

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        view = memoryview(self._data)
        for offset in range(0, len(view), READ_BLOCK_SIZE):
            yield bytes(view[offset:offset + READ_BLOCK_SIZE])


class MemoryChunkStore(ChunkBlobStore):
    """LRU chunk cache bounded by total bytes.

    Inserting past ``max_bytes`` silently evicts least-recently-used
    chunks. A chunk larger than the whole budget is not cached at all.
    """

    def __init__(self, max_bytes: int = 512 * 1024 * 1024, clock: Clock = time.time) -> None:
        self.max_bytes = max_bytes
        self._chunks: "OrderedDict[str, _StoredChunk]" = OrderedDict()
        self._total_bytes = 0
        self._lock = asyncio.Lock()
        self._clock = clock

    @property
    def total_bytes(self) -> int:
        return self._total_bytes

    async def put(self, key: str, data: bytes, expires_at: float) -> None:
        size = len(data)
        async with self._lock:
            self._discard(key)
            if size > self.max_bytes:
                logger.warning(
                    "Chunk %s (%d bytes) exceeds cache budget (%d bytes); not cached",
                    key, size, self.max_bytes,
                )
                return
            while self._chunks and self._total_bytes + size > self.max_bytes:
                evicted_key, _ = next(iter(self._chunks.items()))
                self._discard(evicted_key)
                logger.info("Chunk cache evicted %s under memory pressure", evicted_key)
            self._chunks[key] = _StoredChunk(data=bytes(data), expires_at=expires_at)
            self._total_bytes += size

    async def open(self, key: str) -> ChunkLookup:
        async with self._lock:
            entry = self._chunks.get(key)
            if entry is None:
                return ChunkLookup.absent()
            if self._clock() >= entry.expires_at:
                self._discard(key)
                return ChunkLookup.absent()
            self._chunks.move_to_end(key)
            return ChunkLookup.present(MemoryChunkHandle(key, entry.data))

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._discard(key)

    async def sweep(self) -> int:
        now = self._clock()
        async with self._lock:
            expired = [k for k, v in self._chunks.items() if now >= v.expires_at]
            for k in expired:
                self._discard(k)
        if expired:
            logger.info("Chunk cache sweep evicted %d expired chunks", len(expired))
        return len(expired)

    def _discard(self, key: str) -> None:
        entry = self._chunks.pop(key, None)
        if entry is not None:
            self._total_bytes -= len(entry.data)

    def __contains__(self, key: str) -> bool:
        return key in self._chunks
