"""tempshare Backend Application.

Time-bounded, token-gated file sharing. Clients upload a file in
sequential chunks, receive a share link, and recipients download the
reassembled file until it expires.

Modules:
    - files: upload session state machine, retrieval and cleanup
    - storage: metadata/token key-value stores and the chunk cache
    - config: YAML-backed settings
"""
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tempshare.config import get_config
from tempshare.files.router import router as files_router
from tempshare.files.service import build_services, get_services, set_services

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# urllib3/httpx/httpcore log every connection, which drowns out upload logs.
for _noisy in (
    "urllib3",
    "httpx",
    "httpcore",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # `logging.level: "debug"` in tempshare.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    logger.info("Serving on http://%s:%s", config.server.host, config.server.port)
    services = build_services(config)
    set_services(services)
    logger.info(
        "Stores ready: metadata=%s chunks=%s",
        config.storage.metadata_backend,
        config.storage.chunk_backend,
    )

    yield  # Application runs here

    # Shutdown
    services.close()
    set_services(None)
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="tempshare API",
    description="Chunked, expiring, token-gated file sharing",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(files_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}


@app.get("/api/status")
async def service_status() -> dict:
    """Service status with the current server time (Unix milliseconds)."""
    return {
        "status": "File sharing service is running",
        "timestamp": int(time.time() * 1000),
    }


@app.post("/api/status")
async def service_maintenance(request: Request) -> JSONResponse:
    """Run a maintenance action.

    Only ``{"action": "cleanup"}`` is supported: it sweeps expired entries
    out of every store. Expiry is otherwise enforced lazily, when a session
    is next touched.
    """
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse({"error": "Invalid JSON payload"}, status_code=400)

    action = body.get("action") if isinstance(body, dict) else None
    if action != "cleanup":
        return JSONResponse({"error": "Invalid action"}, status_code=400)

    try:
        removed = await get_services().sweep()
    except Exception as exc:
        logger.exception("Status endpoint error: %s", exc)
        return JSONResponse({"error": "Cleanup failed"}, status_code=500)

    logger.info("Manual cleanup removed %s", removed)
    return JSONResponse({"success": True, "removed": removed})
