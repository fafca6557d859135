"""Wiring of stores and services for the file sharing endpoints."""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from ..config import AppConfig, get_config
from ..storage import Stores, build_stores
from .cleanup import CleanupRoutine
from .retrieval import RetrievalService
from .upload_service import UploadSessionManager

logger = logging.getLogger(__name__)


@dataclass
class FileShareServices:
    """Everything the router needs, sharing one set of stores."""
    stores:    Stores
    uploads:   UploadSessionManager
    retrieval: RetrievalService
    cleanup:   CleanupRoutine

    async def sweep(self) -> Dict[str, int]:
        """Drop expired entries from every store."""
        return await self.stores.sweep()

    def close(self) -> None:
        self.stores.close()


def build_services(
    config: AppConfig,
    stores: Optional[Stores] = None,
    clock: Callable[[], float] = time.time,
) -> FileShareServices:
    """Build the services from *config*, or around pre-built *stores*."""
    if stores is None:
        stores = build_stores(config.storage, clock=clock)
    cleanup = CleanupRoutine(stores.metadata, stores.tokens, stores.chunks)
    uploads = UploadSessionManager(
        stores.metadata,
        stores.tokens,
        stores.chunks,
        settings=config.upload,
        cleanup=cleanup,
        clock=clock,
    )
    retrieval = RetrievalService(
        stores.metadata,
        stores.tokens,
        stores.chunks,
        cleanup=cleanup,
        clock=clock,
    )
    return FileShareServices(stores=stores, uploads=uploads, retrieval=retrieval, cleanup=cleanup)


# ---------------------------------------------------------------------------
# Singleton management
# ---------------------------------------------------------------------------

_services: Optional[FileShareServices] = None


def get_services() -> FileShareServices:
    """Return the global services, building them from config on first use."""
    global _services
    if _services is None:
        _services = build_services(get_config())
        logger.info("File share services initialised from config")
    return _services


def set_services(services: Optional[FileShareServices]) -> None:
    """Set (or clear) the global services."""
    global _services
    _services = services
