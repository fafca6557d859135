"""Storage tier for tempshare.

Exposes the store interfaces plus ``build_stores()``, which wires the
backends selected in ``StorageSettings``:

- metadata / token stores: in-memory or DuckDB
- chunk store: in-memory LRU cache or a directory on local disk
"""
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import duckdb

from ..config import StorageSettings
from .base import (
    ChunkBlobStore,
    ChunkHandle,
    ChunkLookup,
    ChunkState,
    ChunkUnavailableError,
    KeyValueStore,
)
from .disk import DiskChunkStore
from .duckdb_store import DuckDBKeyValueStore
from .memory import MemoryChunkStore, MemoryKeyValueStore

__all__ = [
    "ChunkBlobStore",
    "ChunkHandle",
    "ChunkLookup",
    "ChunkState",
    "ChunkUnavailableError",
    "DiskChunkStore",
    "DuckDBKeyValueStore",
    "KeyValueStore",
    "MemoryChunkStore",
    "MemoryKeyValueStore",
    "Stores",
    "build_stores",
]


@dataclass
class Stores:
    """The three stores behind every upload session."""
    metadata: KeyValueStore
    tokens:   KeyValueStore
    chunks:   ChunkBlobStore
    connection: Optional[duckdb.DuckDBPyConnection] = None   # shared by the DuckDB stores

    async def sweep(self) -> Dict[str, int]:
        """Drop expired entries from every store."""
        return {
            "metadata": await self.metadata.sweep(),
            "tokens": await self.tokens.sweep(),
            "chunks": await self.chunks.sweep(),
        }

    def close(self) -> None:
        self.chunks.close()
        self.tokens.close()
        self.metadata.close()
        if self.connection is not None:
            self.connection.close()
            self.connection = None


def build_stores(settings: StorageSettings, clock: Callable[[], float] = time.time) -> Stores:
    """Construct the stores configured in *settings*."""
    connection = None
    if settings.metadata_backend == "duckdb":
        connection = duckdb.connect(settings.metadata_db_path)
        metadata: KeyValueStore = DuckDBKeyValueStore(
            "file_metadata", db_path=settings.metadata_db_path, connection=connection,
            clock=clock, grace_seconds=settings.expiry_grace_seconds,
        )
        tokens: KeyValueStore = DuckDBKeyValueStore(
            "file_tokens", db_path=settings.metadata_db_path, connection=connection,
            clock=clock, grace_seconds=settings.expiry_grace_seconds,
        )
    else:
        metadata = MemoryKeyValueStore(
            "file_metadata", clock=clock, grace_seconds=settings.expiry_grace_seconds,
        )
        tokens = MemoryKeyValueStore(
            "file_tokens", clock=clock, grace_seconds=settings.expiry_grace_seconds,
        )

    if settings.chunk_backend == "disk":
        chunks: ChunkBlobStore = DiskChunkStore(
            settings.chunk_dir, max_bytes=settings.chunk_cache_max_bytes, clock=clock,
        )
    else:
        chunks = MemoryChunkStore(max_bytes=settings.chunk_cache_max_bytes, clock=clock)

    return Stores(metadata=metadata, tokens=tokens, chunks=chunks, connection=connection)


