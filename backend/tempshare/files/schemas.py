"""Pydantic schemas for chunked file sharing.

This module defines:
- FileStatus: upload session lifecycle (pending -> uploaded)
- FileSession: the record kept in the metadata store for one upload
- *Result models: what the upload/retrieval services return to the router

Result models serialize with camelCase aliases (``fileId``, ``chunkCount``)
to match the wire format used by upload clients.
"""
from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DEFAULT_MIME_TYPE = "application/octet-stream"


class FileStatus(str, Enum):
    """Upload session states.

    A deleted session has no record at all, so there is no DELETED state.
    """
    PENDING = "pending"
    UPLOADED = "uploaded"


class FileSession(BaseModel):
    """One upload, keyed by file id in the metadata store.

    Timestamps are Unix seconds. ``expires_at`` is fixed when the session
    is created; ``pending_expires_at`` slides forward on every accepted
    chunk and is cleared once the upload completes.
    """
    id: str = Field(..., description="Opaque file identifier")
    name: str = Field(..., description="Display name supplied by the uploader")
    type: str = Field(DEFAULT_MIME_TYPE, description="MIME type")
    token: str = Field(..., description="Bearer token granting read access")
    status: FileStatus = Field(FileStatus.PENDING)

    expected_size: Optional[Union[int, float]] = Field(None, description="Declared file size")
    total_chunks: int = Field(..., description="Declared number of chunks")
    chunk_count: int = Field(0, description="Chunks accepted so far")
    total_size: int = Field(0, description="Bytes accepted so far")
    chunk_keys: List[str] = Field(default_factory=list)
    chunk_digests: List[str] = Field(default_factory=list)
    size: int = Field(0, description="Final size, set on completion")

    created_at: float
    expires_at: int = Field(..., description="Absolute expiration")
    pending_expires_at: Optional[float] = Field(None, description="Inactivity deadline")
    last_activity: float
    completed_at: Optional[float] = None

    def retention_deadline(self) -> float:
        """When the stores may drop this record."""
        if self.status is FileStatus.PENDING and self.pending_expires_at is not None:
            return min(float(self.expires_at), self.pending_expires_at)
        return float(self.expires_at)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def is_inactive(self, now: float) -> bool:
        if self.pending_expires_at is None:
            return False
        return now > self.pending_expires_at

    def remaining_ttl(self, now: float) -> int:
        return max(0, int(self.expires_at - now))


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InitializeResult(_CamelModel):
    file_id: str
    token: str
    download_url: str
    expires_at: int
    ttl: int
    status: FileStatus


class AppendResult(_CamelModel):
    chunk_index: int
    chunk_count: int
    remaining_chunks: int
    checksum: str


class CompleteResult(_CamelModel):
    file_id: str
    download_url: str
    total_size: int
    status: FileStatus


class UploadProgress(_CamelModel):
    file_id: str
    status: FileStatus
    chunk_count: int
    total_chunks: int
    total_size: int
    expected_index: int
    expires_at: int
    pending_expires_at: Optional[float] = None
