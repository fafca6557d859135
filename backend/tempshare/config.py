"""tempshare application configuration.

Loads settings from a YAML file (``tempshare.settings.yaml`` by default,
or the path in the ``TEMPSHARE_SETTINGS`` environment variable) into
pydantic models. Every section has working defaults, so a missing file
yields an in-memory deployment.

Relative filesystem paths in the ``storage`` section are resolved against
the directory that holds the settings file.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("tempshare.settings.yaml")
SETTINGS_ENV_VAR = "TEMPSHARE_SETTINGS"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _resolve_path(value: str, base_dir: Path) -> str:
    path = Path(value)
    if path.is_absolute() or value == ":memory:":
        return value
    return str(base_dir / path)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str           = "0.0.0.0"
    port:            int           = 8000
    public_base_url: Optional[str] = None   # overrides request base URL in share links


class LoggingSettings(BaseModel):
    level: str = "info"


class UploadSettings(BaseModel):
    """Limits applied to upload sessions."""
    min_ttl:                   int = 300           # 5 minutes
    max_ttl:                   int = 604800        # 7 days
    default_ttl:               int = 86400         # 24 hours
    inactivity_window_seconds: int = 900           # 15 minutes
    max_chunk_size:            int = 99 * 1024 * 1024
    file_id_length:            int = 16
    token_length:              int = 32

    @model_validator(mode="after")
    def _check_ttl_range(self) -> "UploadSettings":
        if self.min_ttl <= 0:
            raise ValueError("min_ttl must be positive")
        if self.min_ttl > self.max_ttl:
            raise ValueError("min_ttl must not exceed max_ttl")
        if not self.min_ttl <= self.default_ttl <= self.max_ttl:
            raise ValueError("default_ttl must lie within [min_ttl, max_ttl]")
        if self.inactivity_window_seconds <= 0:
            raise ValueError("inactivity_window_seconds must be positive")
        if self.max_chunk_size <= 0:
            raise ValueError("max_chunk_size must be positive")
        return self


class StorageSettings(BaseModel):
    """Backends for the metadata/token stores and the chunk cache."""
    metadata_backend:      Literal["memory", "duckdb"] = "memory"
    metadata_db_path:      str                         = "tempshare_metadata.duckdb"
    chunk_backend:         Literal["memory", "disk"]   = "memory"
    chunk_dir:             str                         = "chunk_cache"
    chunk_cache_max_bytes: int                         = 512 * 1024 * 1024
    # Stores keep records this long past their deadline; the services check
    # deadlines themselves, so an expired session is still seen (and purged).
    expiry_grace_seconds:  int                         = 60


class AppConfig(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    upload:  UploadSettings  = Field(default_factory=UploadSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(settings_path: Optional[Union[str, Path]] = None) -> AppConfig:
    """Load settings from YAML into an *AppConfig* object.

    Args:
        settings_path: Explicit settings file. Falls back to the
            ``TEMPSHARE_SETTINGS`` env var, then ``tempshare.settings.yaml``
            in the working directory.
    """
    if settings_path is None:
        settings_path = os.environ.get(SETTINGS_ENV_VAR) or SETTINGS_FILE
    path = Path(settings_path)

    data = _load_yaml(path)
    config = AppConfig(**data)

    base_dir = path.resolve().parent
    config.storage.metadata_db_path = _resolve_path(config.storage.metadata_db_path, base_dir)
    config.storage.chunk_dir = _resolve_path(config.storage.chunk_dir, base_dir)

    logger.info(
        "Settings loaded (metadata=%s, chunks=%s, ttl=[%d, %d])",
        config.storage.metadata_backend,
        config.storage.chunk_backend,
        config.upload.min_ttl,
        config.upload.max_ttl,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AppConfig]) -> None:
    """Replace (or clear) the process-wide config."""
    global _config
    _config = config
