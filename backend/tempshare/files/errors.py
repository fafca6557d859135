"""Error taxonomy for upload and retrieval operations.

Services raise these; the router turns them into HTTP responses using
``status_code`` and ``to_dict()``. Anything that is not a
``FileShareError`` is an internal failure and is answered with a generic
500.

    InvalidArgument  400  malformed or out-of-range input
    Forbidden        403  token does not grant access to the file
    NotFound         404  no upload session under that id
    Conflict         409  state-machine violation (out-of-order chunk,
                          re-finalization, size mismatch)
    Gone             410  expired, abandoned, or chunk data lost
"""
from enum import Enum
from typing import Any, Dict

from pydantic.alias_generators import to_camel


class GoneReason(str, Enum):
    """Why a session or its data is no longer available."""
    EXPIRED = "expired"
    INACTIVE = "inactive"
    CHUNK_MISSING = "chunk_missing"
    CACHE_MISS = "cache_miss"


# Reasons that point at the best-effort chunk tier rather than at expiry.
STORAGE_LOSS_REASONS = frozenset({GoneReason.CHUNK_MISSING, GoneReason.CACHE_MISS})


class FileShareError(Exception):
    """Base class for every expected service error.

    Extra keyword arguments are carried into the response body so clients
    can act on them. Keys are camelCased on the wire, so
    ``expected_index`` is sent as ``expectedIndex``.
    """

    status_code: int = 500

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "error": self.message}
        body.update({to_camel(key): value for key, value in self.extra.items()})
        return body


class InvalidArgument(FileShareError):
    status_code = 400


class Forbidden(FileShareError):
    status_code = 403


class NotFound(FileShareError):
    status_code = 404


class Conflict(FileShareError):
    status_code = 409


class Gone(FileShareError):
    """Session or data no longer available.

    Attributes:
        reason: Machine-readable cause, see ``GoneReason``.
    """

    status_code = 410

    def __init__(self, message: str, reason: GoneReason = GoneReason.EXPIRED, **extra: Any) -> None:
        super().__init__(message, **extra)
        self.reason = reason

    @property
    def is_storage_loss(self) -> bool:
        return self.reason in STORAGE_LOSS_REASONS

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["reason"] = self.reason.value
        return body
