"""Cascading deletion of an upload session.

Called when a session is found expired, abandoned, or missing chunk data.
Deletes every chunk blob, then the token record and the session record.
Each deletion is independent; a failure is logged and the rest still run.
Purging a session that is already gone is a no-op.
"""
import asyncio
import logging

from ..storage import ChunkBlobStore, KeyValueStore
from .schemas import FileSession

logger = logging.getLogger(__name__)


class CleanupRoutine:
    """Best-effort purge of a session's metadata, token and chunks."""

    def __init__(
        self,
        metadata_store: KeyValueStore,
        token_store: KeyValueStore,
        chunk_store: ChunkBlobStore,
    ) -> None:
        self._metadata = metadata_store
        self._tokens = token_store
        self._chunks = chunk_store

    async def purge(self, session: FileSession) -> None:
        """Delete everything belonging to *session*. Never raises."""
        chunk_results = await asyncio.gather(
            *(self._chunks.delete(key) for key in session.chunk_keys),
            return_exceptions=True,
        )
        for key, result in zip(session.chunk_keys, chunk_results):
            if isinstance(result, Exception):
                logger.warning("Failed to delete chunk %s of %s: %s", key, session.id, result)

        record_results = await asyncio.gather(
            self._tokens.delete(session.token),
            self._metadata.delete(session.id),
            return_exceptions=True,
        )
        for what, result in zip(("token", "metadata"), record_results):
            if isinstance(result, Exception):
                logger.warning("Failed to delete %s record of %s: %s", what, session.id, result)

        logger.info("Purged session %s (%d chunks)", session.id, len(session.chunk_keys))
