"""Upload session state machine.

A session moves through exactly one transition:

    initialize -> pending --(append 0..N-1)--> complete -> uploaded

Chunks are accepted strictly in order: the only index an append will take
is the session's current ``chunk_count``. Anything else is rejected with a
Conflict naming the expected index, and nothing is buffered or reordered.

Two deadlines guard a pending session:
    * ``expires_at``          absolute, fixed at initialization
    * ``pending_expires_at``  sliding inactivity window, refreshed per chunk

Both are checked on every call; when either has passed the session is
purged and the caller gets ``Gone``. There are no timers.

Concurrency:
    The metadata store offers no conditional write, so mutations of one
    session are serialized by an in-process ``asyncio.Lock`` per file id.
    Locks live in a WeakValueDictionary and vanish once no request holds
    them. Multiple worker processes are not coordinated.
"""
import asyncio
import logging
import secrets
import time
import weakref
from typing import Any, Callable, Optional

from ..config import UploadSettings
from ..storage import ChunkBlobStore, KeyValueStore
from .cleanup import CleanupRoutine
from .encoding import (
    chunk_digest,
    chunk_key,
    generate_id,
    generate_token,
    is_integer,
    is_number,
    require_non_negative_int,
    require_positive_int,
    share_link,
)
from .errors import Conflict, Forbidden, Gone, GoneReason, InvalidArgument, NotFound
from .repository import SessionRepository
from .schemas import (
    DEFAULT_MIME_TYPE,
    AppendResult,
    CompleteResult,
    FileSession,
    FileStatus,
    InitializeResult,
    UploadProgress,
)

logger = logging.getLogger(__name__)


class UploadSessionManager:
    """Creates upload sessions and applies append/complete operations."""

    def __init__(
        self,
        metadata_store: KeyValueStore,
        token_store: KeyValueStore,
        chunk_store: ChunkBlobStore,
        settings: Optional[UploadSettings] = None,
        cleanup: Optional[CleanupRoutine] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or UploadSettings()
        self._sessions = SessionRepository(metadata_store)
        self._tokens = token_store
        self._chunks = chunk_store
        self._cleanup = cleanup or CleanupRoutine(metadata_store, token_store, chunk_store)
        self._clock = clock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, file_id: str) -> asyncio.Lock:
        lock = self._locks.get(file_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[file_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Initialize
    # ------------------------------------------------------------------

    async def initialize(
        self,
        name: Any,
        total_chunks: Any,
        size: Any = None,
        mime_type: Any = None,
        ttl: Any = None,
        base_url: str = "",
    ) -> InitializeResult:
        """Open a new pending upload session.

        Args:
            name: Display name of the file.
            total_chunks: Number of chunks the client will send.
            size: Optional declared total size in bytes.
            mime_type: MIME type, defaults to application/octet-stream.
            ttl: Lifetime in seconds; the configured default when None.
            base_url: Base for the share link.

        Returns:
            InitializeResult with the new id, token and share link.

        Raises:
            InvalidArgument: On a missing name, non-positive chunk count,
                negative or non-finite size, or a ttl outside the allowed range.
        """
        if not isinstance(name, str) or not name:
            raise InvalidArgument("fileName is required")
        total = require_positive_int(total_chunks, "totalChunks")
        if mime_type is not None and not isinstance(mime_type, str):
            raise InvalidArgument("fileType must be a string")
        if size is not None and (not is_number(size) or size < 0):
            raise InvalidArgument("fileSize must be a non-negative number")
        ttl_seconds = self._resolve_ttl(ttl)

        now = self._clock()
        file_id = generate_id(self.settings.file_id_length)
        token = generate_token(self.settings.token_length)
        expires_at = int(now) + ttl_seconds

        session = FileSession(
            id=file_id,
            name=name,
            type=mime_type or DEFAULT_MIME_TYPE,
            token=token,
            status=FileStatus.PENDING,
            expected_size=size,
            total_chunks=total,
            created_at=now,
            expires_at=expires_at,
            pending_expires_at=now + self.settings.inactivity_window_seconds,
            last_activity=now,
        )
        await self._sessions.save(session)
        await self._tokens.put(token, file_id, expires_at=expires_at)

        logger.info(
            "Initialized upload %s for %s (%d chunks, ttl=%ds)",
            file_id, name, total, ttl_seconds,
        )
        return InitializeResult(
            file_id=file_id,
            token=token,
            download_url=share_link(base_url, file_id, token),
            expires_at=expires_at,
            ttl=ttl_seconds,
            status=session.status,
        )

    def _resolve_ttl(self, ttl: Any) -> int:
        lo, hi = self.settings.min_ttl, self.settings.max_ttl
        if ttl is None:
            return self.settings.default_ttl
        if isinstance(ttl, str):
            try:
                ttl = int(ttl.strip())
            except ValueError:
                raise InvalidArgument(f"TTL must be between {lo} seconds and {hi} seconds")
        if not is_integer(ttl) or not lo <= ttl <= hi:
            raise InvalidArgument(f"TTL must be between {lo} seconds and {hi} seconds")
        return int(ttl)

    # ------------------------------------------------------------------
    # Append
    # ------------------------------------------------------------------

    async def append(
        self,
        file_id: str,
        token: str,
        chunk_index: Any,
        total_chunks: Any,
        payload: bytes,
        checksum: Optional[str] = None,
    ) -> AppendResult:
        """Accept the next chunk of a pending upload.

        Raises:
            InvalidArgument: Bad parameters, chunk count mismatch, empty or
                oversized payload, checksum mismatch.
            NotFound: No such session.
            Forbidden: Token does not own the session.
            Gone: Session expired or timed out (it is purged first).
            Conflict: Session finalized, index out of order, or the chunk
                would overflow the declared size.
        """
        self._require_ids(file_id, token)
        index = require_non_negative_int(chunk_index, "chunkIndex")
        total = require_positive_int(total_chunks, "totalChunks")

        async with self._lock_for(file_id):
            now = self._clock()
            session = await self._load_live_session(file_id, token, now)
            self._require_pending(session)

            if session.total_chunks != total:
                raise InvalidArgument("totalChunks mismatch with initialized session")
            if index != session.chunk_count:
                logger.info(
                    "Rejected chunk %d of %s: expected %d", index, file_id, session.chunk_count,
                )
                raise Conflict(
                    "Chunks must be uploaded sequentially",
                    expected_index=session.chunk_count,
                )
            if index >= session.total_chunks:
                raise InvalidArgument("chunkIndex exceeds expected totalChunks")

            chunk_size = len(payload)
            if chunk_size == 0:
                raise InvalidArgument("Chunk payload is empty")
            if chunk_size > self.settings.max_chunk_size:
                raise InvalidArgument(
                    f"Chunk too large. Maximum allowed size is {self.settings.max_chunk_size}"
                )

            digest = chunk_digest(payload)
            if checksum is not None and checksum.strip().lower() != digest:
                raise InvalidArgument(f"Checksum mismatch for chunk {index}")

            projected_size = session.total_size + chunk_size
            if session.expected_size is not None and projected_size > session.expected_size:
                raise Conflict(
                    "Chunk exceeds expected file size",
                    expected_size=session.expected_size,
                    projected_size=projected_size,
                )

            key = chunk_key(session.id, session.token, index)
            await self._chunks.put(key, payload, expires_at=max(now + 1, session.expires_at))

            activity = self._clock()
            session.chunk_keys.append(key)
            session.chunk_digests.append(digest)
            session.chunk_count += 1
            session.total_size = projected_size
            session.last_activity = activity
            session.pending_expires_at = activity + self.settings.inactivity_window_seconds
            await self._sessions.save(session)

        logger.debug(
            "Stored chunk %d/%d of %s (%d bytes)",
            index + 1, session.total_chunks, file_id, chunk_size,
        )
        return AppendResult(
            chunk_index=index,
            chunk_count=session.chunk_count,
            remaining_chunks=session.total_chunks - session.chunk_count,
            checksum=digest,
        )

    # ------------------------------------------------------------------
    # Complete
    # ------------------------------------------------------------------

    async def complete(
        self,
        file_id: str,
        token: str,
        reported_total_size: Any = None,
        base_url: str = "",
    ) -> CompleteResult:
        """Finalize a pending upload once every chunk has arrived.

        Raises:
            InvalidArgument: Missing ids or a non-numeric reported size.
            NotFound, Forbidden, Gone: As for ``append``.
            Conflict: Already finalized, chunks missing, or a size mismatch.
        """
        self._require_ids(file_id, token)
        if reported_total_size is not None and not is_number(reported_total_size):
            raise InvalidArgument("totalSize must be a number")

        async with self._lock_for(file_id):
            now = self._clock()
            session = await self._load_live_session(file_id, token, now)
            self._require_pending(session)

            if session.chunk_count != session.total_chunks:
                raise Conflict(
                    "Uploaded chunk count does not match totalChunks",
                    expected=session.total_chunks,
                    received=session.chunk_count,
                )
            if session.expected_size is not None and session.total_size != session.expected_size:
                raise Conflict(
                    "Uploaded file size does not match expected size",
                    expected=session.expected_size,
                    received=session.total_size,
                )
            if reported_total_size is not None and reported_total_size != session.total_size:
                raise Conflict(
                    "Reported totalSize does not match accumulated size",
                    expected=session.total_size,
                    received=reported_total_size,
                )

            session.status = FileStatus.UPLOADED
            session.size = session.total_size
            session.completed_at = now
            session.last_activity = now
            session.pending_expires_at = None
            await self._sessions.save(session)

        logger.info("Completed upload %s (%d bytes, %d chunks)", file_id, session.size, session.chunk_count)
        return CompleteResult(
            file_id=session.id,
            download_url=share_link(base_url, session.id, session.token),
            total_size=session.size,
            status=session.status,
        )

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    async def status(self, file_id: str, token: str) -> UploadProgress:
        """Report progress of a session, e.g. after a lost append response."""
        self._require_ids(file_id, token)
        session = await self._load_live_session(file_id, token, self._clock())
        return UploadProgress(
            file_id=session.id,
            status=session.status,
            chunk_count=session.chunk_count,
            total_chunks=session.total_chunks,
            total_size=session.total_size,
            expected_index=session.chunk_count,
            expires_at=session.expires_at,
            pending_expires_at=session.pending_expires_at,
        )

    # ------------------------------------------------------------------
    # Shared checks
    # ------------------------------------------------------------------

    async def _load_live_session(self, file_id: str, token: str, now: float) -> FileSession:
        session = await self._sessions.get(file_id)
        if session is None:
            raise NotFound("Upload session not found")
        if not secrets.compare_digest(session.token.encode("utf-8"), token.encode("utf-8")):
            raise Forbidden("Invalid token for upload session")
        if session.is_expired(now):
            await self._cleanup.purge(session)
            raise Gone("Upload session has expired", reason=GoneReason.EXPIRED)
        if session.is_inactive(now):
            await self._cleanup.purge(session)
            raise Gone("Upload session timed out due to inactivity", reason=GoneReason.INACTIVE)
        return session

    @staticmethod
    def _require_ids(file_id: Any, token: Any) -> None:
        if not isinstance(file_id, str) or not isinstance(token, str) or not file_id or not token:
            raise InvalidArgument("fileId and token are required")

    @staticmethod
    def _require_pending(session: FileSession) -> None:
        if session.status is not FileStatus.PENDING:
            raise Conflict("Upload session already finalized")
