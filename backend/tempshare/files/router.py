"""FastAPI router for chunked upload and token-gated download.

Endpoints:
    POST /api/upload?action=initialize   - open an upload session
    POST /api/upload?action=append       - send the next chunk (raw body)
    POST /api/upload?action=complete     - finalize the upload
    GET  /api/upload/status              - upload progress
    GET  /s/{file_id}/{token}            - share link (plain-text errors)
    GET  /api/files/{file_id}/download   - API download (JSON errors)
"""
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse

from ..config import get_config
from .encoding import parse_int_param
from .errors import FileShareError, Gone, InvalidArgument
from .retrieval import FetchResult
from .service import get_services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["files"])

CHECKSUM_HEADER = "X-Chunk-Checksum"
EDGE_UNAVAILABLE_MESSAGE = (
    "The file data is no longer available on edge storage. This can happen due to "
    "cache eviction policies or incomplete uploads."
)


def get_base_url(request: Request) -> str:
    """Base for share links: configured public URL, else the request's."""
    configured = get_config().server.public_base_url
    if configured:
        return configured.rstrip("/")
    return str(request.base_url).rstrip("/")


def _error_response(exc: FileShareError) -> JSONResponse:
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


def _internal_error(message: str = "Unexpected error") -> JSONResponse:
    return JSONResponse({"success": False, "error": message}, status_code=500)


async def _read_json(request: Request) -> Optional[Dict[str, Any]]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return body if isinstance(body, dict) else None


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------


@router.post("/api/upload")
async def upload(request: Request, action: str = "initialize") -> JSONResponse:
    """Dispatch an upload action.

    Args:
        action: ``initialize`` (default), ``append`` or ``complete``.

    Returns:
        JSON body with ``success`` plus the action's result fields.
    """
    action = action.lower()
    handlers = {
        "initialize": _handle_initialize,
        "append": _handle_append,
        "complete": _handle_complete,
    }
    handler = handlers.get(action)
    if handler is None:
        return JSONResponse({"success": False, "error": "Unsupported action"}, status_code=400)

    try:
        result = await handler(request)
    except FileShareError as exc:
        logger.info("[upload/%s] %d: %s", action, exc.status_code, exc.message)
        return _error_response(exc)
    except Exception as exc:
        logger.exception("[upload/%s] Upload error: %s", action, exc)
        return _internal_error()

    return JSONResponse({"success": True, **result})


async def _handle_initialize(request: Request) -> Dict[str, Any]:
    body = await _read_json(request)
    if body is None:
        raise InvalidArgument("Invalid JSON payload")

    result = await get_services().uploads.initialize(
        name=body.get("fileName"),
        total_chunks=body.get("totalChunks"),
        size=body.get("fileSize"),
        mime_type=body.get("fileType"),
        ttl=body.get("ttl"),
        base_url=get_base_url(request),
    )
    return result.model_dump(mode="json", by_alias=True)


async def _handle_append(request: Request) -> Dict[str, Any]:
    params = request.query_params
    payload = await request.body()
    result = await get_services().uploads.append(
        file_id=params.get("fileId", ""),
        token=params.get("token", ""),
        chunk_index=parse_int_param(params.get("chunkIndex")),
        total_chunks=parse_int_param(params.get("totalChunks")),
        payload=payload,
        checksum=request.headers.get(CHECKSUM_HEADER),
    )
    return result.model_dump(mode="json", by_alias=True)


async def _handle_complete(request: Request) -> Dict[str, Any]:
    body = await _read_json(request) or {}
    params = request.query_params
    reported_total_size = body.get("totalSize")
    if reported_total_size is None and "totalSize" in params:
        reported_total_size = parse_int_param(params["totalSize"])
        if reported_total_size is None:
            raise InvalidArgument("totalSize must be a number")
    result = await get_services().uploads.complete(
        file_id=body.get("fileId") or params.get("fileId", ""),
        token=body.get("token") or params.get("token", ""),
        reported_total_size=reported_total_size,
        base_url=get_base_url(request),
    )
    return result.model_dump(mode="json", by_alias=True)


@router.get("/api/upload/status")
async def upload_status(fileId: str = "", token: str = "") -> JSONResponse:
    """Report how far an upload has progressed.

    Lets a client recover the next expected chunk index after a lost
    append response.
    """
    try:
        progress = await get_services().uploads.status(fileId, token)
    except FileShareError as exc:
        return _error_response(exc)
    except Exception as exc:
        logger.exception("[upload/status] Unexpected error: %s", exc)
        return _internal_error()
    return JSONResponse({"success": True, **progress.model_dump(mode="json", by_alias=True)})


# ---------------------------------------------------------------------------
# Download
# ---------------------------------------------------------------------------


def _stream_response(result: FetchResult) -> StreamingResponse:
    headers = dict(result.headers)
    media_type = headers.pop("Content-Type")
    return StreamingResponse(result.body, media_type=media_type, headers=headers)


@router.get("/s/{file_id}/{token}")
async def share_link_download(file_id: str, token: str):
    """Download through a share link.

    Errors are plain text, meant for a browser.
    """
    try:
        result = await get_services().retrieval.fetch(file_id, token)
    except Gone as exc:
        if exc.is_storage_loss:
            return PlainTextResponse(
                f"File with ID {file_id} is no longer available on edge storage.",
                status_code=exc.status_code,
            )
        return PlainTextResponse(exc.message, status_code=exc.status_code)
    except FileShareError as exc:
        return PlainTextResponse(exc.message, status_code=exc.status_code)
    except Exception as exc:
        logger.exception("[share] Shared file service error: %s", exc)
        return PlainTextResponse("Internal Server Error during file retrieval", status_code=500)

    logger.info("[share] Serving %s (%s bytes)", file_id, result.headers["Content-Length"])
    return _stream_response(result)


@router.get("/api/files/{file_id}/download")
async def api_download(file_id: str, token: Optional[str] = None):
    """Download through the API; errors are JSON."""
    if not token:
        return JSONResponse({"error": "Missing token"}, status_code=400)

    try:
        result = await get_services().retrieval.fetch(file_id, token)
    except Gone as exc:
        if exc.is_storage_loss:
            return JSONResponse(
                {
                    "error": "File not available",
                    "message": EDGE_UNAVAILABLE_MESSAGE,
                    "fileId": file_id,
                    "reason": exc.reason.value,
                },
                status_code=exc.status_code,
            )
        return JSONResponse({"error": exc.message, "reason": exc.reason.value}, status_code=exc.status_code)
    except FileShareError as exc:
        return JSONResponse({"error": exc.message}, status_code=exc.status_code)
    except Exception as exc:
        logger.exception("[download] Shared file service error: %s", exc)
        return JSONResponse({"error": "Internal Server Error during file retrieval"}, status_code=500)

    return _stream_response(result)
