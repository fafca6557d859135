"""Filesystem chunk cache.

Chunks are stored one file per key in a flat directory:
    {chunk_dir}/{sha256(key)}.chunk

A chunk's expiration is recorded as its file mtime, so the cache needs no
side index. When the directory grows past ``max_bytes`` the chunks that
expire soonest are deleted first.
"""
import hashlib
import logging
import os
import time
from pathlib import Path
from typing import AsyncIterator, Callable, List, Tuple

from .base import (
    READ_BLOCK_SIZE,
    ChunkBlobStore,
    ChunkHandle,
    ChunkLookup,
    ChunkUnavailableError,
)

logger = logging.getLogger(__name__)

_SUFFIX = ".chunk"


class DiskChunkHandle(ChunkHandle):
    """Handle over a chunk file; the file is opened only when read."""

    def __init__(self, key: str, path: Path, size: int) -> None:
        super().__init__(key, size)
        self._path = path

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        try:
            fh = self._path.open("rb")
        except FileNotFoundError:
            raise ChunkUnavailableError(self.key, "Chunk evicted before it was read")
        with fh:
            while True:
                block = fh.read(READ_BLOCK_SIZE)
                if not block:
                    break
                yield block


class DiskChunkStore(ChunkBlobStore):
    """Chunk cache that keeps one file per chunk on local disk.

    A running byte total is kept so a put only scans the directory when the
    cache has grown past ``max_bytes``.
    """

    def __init__(
        self,
        chunk_dir: str,
        max_bytes: int = 4 * 1024 * 1024 * 1024,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.chunk_dir = Path(chunk_dir)
        self.max_bytes = max_bytes
        self._clock = clock
        self._ensure_chunk_dir()
        self._total_bytes = sum(size for _, _, size in self._scan())

    def _ensure_chunk_dir(self) -> None:
        self.chunk_dir.mkdir(parents=True, exist_ok=True)

    @property
    def total_bytes(self) -> int:
        return self._total_bytes

    def _path_for(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self.chunk_dir / f"{digest}{_SUFFIX}"

    async def put(self, key: str, data: bytes, expires_at: float) -> None:
        path = self._path_for(key)
        previous = self._size_of(path)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(data)
        os.utime(tmp_path, (expires_at, expires_at))
        os.replace(tmp_path, path)
        self._total_bytes += len(data) - previous
        logger.debug("Stored chunk %s (%d bytes) at %s", key, len(data), path)
        if self._total_bytes > self.max_bytes:
            self._enforce_budget(keep=path)

    async def open(self, key: str) -> ChunkLookup:
        path = self._path_for(key)
        try:
            stat = path.stat()
        except FileNotFoundError:
            return ChunkLookup.absent()
        except OSError as exc:
            logger.warning("Failed to stat chunk %s: %s", key, exc)
            return ChunkLookup.failed(exc)

        if self._clock() >= stat.st_mtime:
            self._remove(path, stat.st_size)
            return ChunkLookup.absent()
        return ChunkLookup.present(DiskChunkHandle(key, path, stat.st_size))

    async def delete(self, key: str) -> None:
        path = self._path_for(key)
        self._remove(path, self._size_of(path))

    async def sweep(self) -> int:
        now = self._clock()
        removed = 0
        for path, mtime, size in self._scan():
            if now >= mtime:
                self._remove(path, size)
                removed += 1
        if removed:
            logger.info("Disk chunk sweep removed %d expired chunks", removed)
        return removed

    @staticmethod
    def _size_of(path: Path) -> int:
        try:
            return path.stat().st_size
        except FileNotFoundError:
            return 0

    def _remove(self, path: Path, size: int) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            return
        self._total_bytes = max(0, self._total_bytes - size)

    def _scan(self) -> List[Tuple[Path, float, int]]:
        entries = []
        for path in self.chunk_dir.glob(f"*{_SUFFIX}"):
            try:
                stat = path.stat()
            except FileNotFoundError:
                continue
            entries.append((path, stat.st_mtime, stat.st_size))
        return entries

    def _enforce_budget(self, keep: Path) -> None:
        entries = self._scan()
        # Resync with what is actually on disk.
        self._total_bytes = sum(size for _, _, size in entries)
        # Soonest-expiring first.
        for path, _, size in sorted(entries, key=lambda e: e[1]):
            if self._total_bytes <= self.max_bytes:
                break
            if path == keep:
                continue
            self._remove(path, size)
            logger.info("Disk chunk cache evicted %s under size pressure", path.name)
