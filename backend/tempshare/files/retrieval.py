"""Retrieval of finalized uploads.

``RetrievalService.fetch`` validates the token, loads the session, and
opens every chunk before anything is sent: if even one chunk is gone the
session is purged and the caller gets ``Gone`` with reason
``chunk_missing``. A partial body is never served.

On success the body is a ``ChunkStream``, a lazy single-pass async
iterator that reads chunks one at a time in index order. A consumer that
stops early simply stops pulling; nothing needs rolling back.
"""
import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional

from ..storage import ChunkBlobStore, ChunkHandle, ChunkUnavailableError, KeyValueStore
from .cleanup import CleanupRoutine
from .encoding import content_disposition, encode_rfc5987
from .errors import Conflict, Forbidden, Gone, GoneReason
from .repository import SessionRepository
from .schemas import DEFAULT_MIME_TYPE, FileSession, FileStatus

logger = logging.getLogger(__name__)


class ChunkIntegrityError(Exception):
    """A streamed chunk no longer matches the digest recorded at upload."""


class ChunkStream:
    """Single-pass concatenation of opened chunk handles.

    Each handle's bytes are hashed while they are forwarded and checked
    against the digest recorded when the chunk was appended. If a chunk
    vanishes mid-stream or fails its digest check, ``on_failure`` runs and
    the error propagates to the consumer, which ends the response short of
    its declared length.
    """

    def __init__(
        self,
        handles: List[ChunkHandle],
        digests: List[str],
        on_failure: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> None:
        self._handles = handles
        self._digests = digests
        self._on_failure = on_failure
        self._consumed = False

    def __aiter__(self) -> AsyncIterator[bytes]:
        if self._consumed:
            raise RuntimeError("ChunkStream can only be iterated once")
        self._consumed = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[bytes]:
        for index, handle in enumerate(self._handles):
            expected = self._digests[index] if index < len(self._digests) else None
            hasher = hashlib.sha256()
            try:
                async for block in handle.iter_bytes():
                    hasher.update(block)
                    yield block
                if expected is not None and hasher.hexdigest() != expected:
                    raise ChunkIntegrityError(f"Chunk {index} failed digest check")
            except (ChunkUnavailableError, ChunkIntegrityError) as exc:
                logger.error("Aborting stream at chunk %d (%s): %s", index, handle.key, exc)
                if self._on_failure is not None:
                    await self._on_failure()
                raise


@dataclass
class FetchResult:
    """A finalized file ready to be streamed.

    Attributes:
        session: The session record.
        remaining_ttl: Seconds until the file expires.
        body: Lazy ordered body stream.
        headers: Descriptive response headers.
    """
    session: FileSession
    remaining_ttl: int
    body: ChunkStream
    headers: Dict[str, str] = field(default_factory=dict)


class RetrievalService:
    """Validates access to a finalized upload and streams its content."""

    def __init__(
        self,
        metadata_store: KeyValueStore,
        token_store: KeyValueStore,
        chunk_store: ChunkBlobStore,
        cleanup: Optional[CleanupRoutine] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._sessions = SessionRepository(metadata_store)
        self._tokens = token_store
        self._chunks = chunk_store
        self._cleanup = cleanup or CleanupRoutine(metadata_store, token_store, chunk_store)
        self._clock = clock

    async def fetch(self, file_id: str, token: str) -> FetchResult:
        """Resolve *token* for *file_id* and open the assembled file.

        Raises:
            Forbidden: The token does not map to *file_id*.
            Gone: Metadata expired or deleted, or chunk data is missing.
            Conflict: The upload has not been finalized.
        """
        stored_file_id = await self._tokens.get(token)
        if stored_file_id is None or stored_file_id != file_id:
            raise Forbidden("Access denied: Invalid or expired token")

        session = await self._sessions.get(file_id)
        if session is None:
            raise Gone("File not found: Metadata has been deleted or expired", reason=GoneReason.EXPIRED)

        now = self._clock()
        if session.is_expired(now):
            await self._cleanup.purge(session)
            raise Gone("File has expired", reason=GoneReason.EXPIRED)

        if session.status is not FileStatus.UPLOADED:
            raise Conflict("File upload has not been finalized")

        if not session.chunk_keys:
            raise Gone("File data is unavailable", reason=GoneReason.CHUNK_MISSING, file_id=file_id)

        handles: List[ChunkHandle] = []
        for index, key in enumerate(session.chunk_keys):
            lookup = await self._chunks.open(key)
            if not lookup.ok:
                if lookup.error is not None:
                    logger.warning("Chunk %d of %s unreadable: %s", index, file_id, lookup.error)
                else:
                    logger.info("Chunk %d of %s missing from chunk store", index, file_id)
                await self._cleanup.purge(session)
                raise Gone("File data is unavailable", reason=GoneReason.CHUNK_MISSING, file_id=file_id)
            handles.append(lookup.handle)

        remaining = session.remaining_ttl(now)

        async def _purge() -> None:
            await self._cleanup.purge(session)

        return FetchResult(
            session=session,
            remaining_ttl=remaining,
            body=ChunkStream(handles, session.chunk_digests, on_failure=_purge),
            headers=build_download_headers(session, remaining),
        )


def build_download_headers(session: FileSession, remaining_ttl: int) -> Dict[str, str]:
    """Response headers describing a finalized file."""
    size = session.size or session.total_size
    return {
        "Content-Type": session.type or DEFAULT_MIME_TYPE,
        "Content-Length": str(size),
        "Cache-Control": f"public, max-age={remaining_ttl}",
        "Content-Disposition": content_disposition(session.name),
        "X-File-ID": session.id,
        "X-File-Name": encode_rfc5987(session.name),
        "X-Expiration": str(session.expires_at),
    }
