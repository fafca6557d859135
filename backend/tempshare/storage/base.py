"""Abstract store interfaces for session metadata, tokens and chunk blobs.

Three stores back every upload:

* a metadata store  - file id  -> serialized FileSession
* a token store     - token    -> file id
* a chunk store     - chunk key -> raw bytes

The first two are plain key-value stores with an absolute expiration per
entry. The chunk store is a best-effort cache: entries can disappear before
their expiration under eviction pressure, so a lookup returns a tri-state
``ChunkLookup`` instead of raising when a chunk is gone.

Usage:
    lookup = await chunk_store.open(key)
    if lookup.state is ChunkState.PRESENT:
        async for block in lookup.handle.iter_bytes():
            ...
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Optional

# Block size used when streaming chunk bodies out of a store.
READ_BLOCK_SIZE = 64 * 1024


class ChunkUnavailableError(Exception):
    """Raised when a chunk that was opened can no longer be read."""

    def __init__(self, key: str, message: str = "Chunk is no longer available") -> None:
        super().__init__(f"{message}: {key}")
        self.key = key


class ChunkState(str, Enum):
    """Outcome of a chunk lookup."""
    PRESENT = "present"
    ABSENT = "absent"
    ERROR = "error"


class ChunkHandle(ABC):
    """Lazily readable view of one stored chunk.

    Opening a handle does not read the chunk body; bytes are only pulled
    when ``iter_bytes`` is consumed.
    """

    def __init__(self, key: str, size: int) -> None:
        self.key = key
        self.size = size

    @abstractmethod
    def iter_bytes(self) -> AsyncIterator[bytes]:
        """Yield the chunk body in blocks.

        Raises:
            ChunkUnavailableError: If the chunk vanished after it was opened.
        """


@dataclass
class ChunkLookup:
    """Tri-state result of ``ChunkBlobStore.open``.

    Attributes:
        state: PRESENT, ABSENT or ERROR.
        handle: Readable handle when PRESENT.
        error: The underlying exception when ERROR.
    """
    state: ChunkState
    handle: Optional[ChunkHandle] = None
    error: Optional[BaseException] = None

    @classmethod
    def present(cls, handle: ChunkHandle) -> "ChunkLookup":
        return cls(state=ChunkState.PRESENT, handle=handle)

    @classmethod
    def absent(cls) -> "ChunkLookup":
        return cls(state=ChunkState.ABSENT)

    @classmethod
    def failed(cls, error: BaseException) -> "ChunkLookup":
        return cls(state=ChunkState.ERROR, error=error)

    @property
    def ok(self) -> bool:
        return self.state is ChunkState.PRESENT


class KeyValueStore(ABC):
    """String key-value store with an absolute expiration per entry.

    Expiration instants are Unix timestamps in seconds. An entry whose
    expiration has passed is never returned by ``get``.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the value for *key*, or None if absent or expired."""

    @abstractmethod
    async def put(self, key: str, value: str, expires_at: float) -> None:
        """Store or replace *key* until *expires_at*."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove *key* (no-op if absent)."""

    @abstractmethod
    async def sweep(self) -> int:
        """Drop every expired entry and return how many were removed."""

    def close(self) -> None:
        """Release any underlying resources."""


class ChunkBlobStore(ABC):
    """Best-effort blob cache for chunk bodies."""

    @abstractmethod
    async def put(self, key: str, data: bytes, expires_at: float) -> None:
        """Store *data* under *key* until *expires_at*.

        A successful put does not guarantee the chunk can be read back
        later; the store may evict it at any time.
        """

    @abstractmethod
    async def open(self, key: str) -> ChunkLookup:
        """Look up *key* without reading its body."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove *key* (no-op if absent)."""

    @abstractmethod
    async def sweep(self) -> int:
        """Drop every expired chunk and return how many were removed."""

    def close(self) -> None:
        """Release any underlying resources."""
