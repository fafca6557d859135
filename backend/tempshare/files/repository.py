"""Typed access to FileSession records in the metadata store."""
import logging
from typing import Optional

from pydantic import ValidationError

from ..storage import KeyValueStore
from .schemas import FileSession

logger = logging.getLogger(__name__)


class SessionRepository:
    """Reads and writes FileSession records as JSON."""

    def __init__(self, metadata_store: KeyValueStore) -> None:
        self._store = metadata_store

    async def get(self, file_id: str) -> Optional[FileSession]:
        """Return the session for *file_id*, or None if absent or unreadable."""
        raw = await self._store.get(file_id)
        if raw is None:
            return None
        try:
            return FileSession.model_validate_json(raw)
        except ValidationError as exc:
            logger.error("Failed to parse metadata for file %s: %s", file_id, exc)
            return None

    async def save(self, session: FileSession) -> None:
        """Persist *session* until its current retention deadline."""
        await self._store.put(
            session.id,
            session.model_dump_json(),
            expires_at=session.retention_deadline(),
        )
