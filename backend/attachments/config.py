"""Attachment upload service configuration.

Loads settings from two YAML files:
  * attachments.settings.yaml : non-secret configuration
  * attachments.secrets.yaml  : secrets (never committed)

Missing files are not fatal: every section has defaults, except that the
storage gateway refuses to start without ``storage.bucket``.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("attachments.settings.yaml")
SECRETS_FILE  = Path("attachments.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _resolve_relative(path_value: str, settings_path: Path) -> str:
    """Resolve a relative path from the settings file location.

    Settings kept in a ``config/`` directory resolve against the project
    root (the parent of ``config/``); any other layout resolves against the
    settings file's own directory.
    """
    path = Path(path_value)
    if path.is_absolute():
        return str(path)
    settings_dir = settings_path.resolve().parent
    base = settings_dir.parent if settings_dir.name == "config" else settings_dir
    return str(base / path)


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class AwsSecrets(BaseModel):
    access_key_id:     Optional[str] = None
    secret_access_key: Optional[str] = None
    session_token:     Optional[str] = None


class RedisSecrets(BaseModel):
    url: str = "redis://localhost:6379/0"


class Secrets(BaseModel):
    aws:   AwsSecrets   = Field(default_factory=AwsSecrets)
    redis: RedisSecrets = Field(default_factory=RedisSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000


class LoggingSettings(BaseModel):
    level:          str  = "info"
    events_enabled: bool = True
    events_path:    str  = "upload_events.duckdb"


class StorageSettings(BaseModel):
    """Object store the multipart uploads land in."""
    bucket:                 Optional[str] = None
    region:                 str           = "us-east-1"
    endpoint_url:           Optional[str] = None
    public_base_url:        Optional[str] = None
    key_prefix:             str           = "encrypted"
    part_url_ttl_seconds:   int           = Field(default=7200, gt=0)
    server_side_encryption: Optional[str] = "AES256"
    max_attempts:           int           = Field(default=4, ge=1)

    @field_validator("key_prefix")
    @classmethod
    def _strip_slashes(cls, value: str) -> str:
        return value.strip("/")


class UploadSettings(BaseModel):
    """Session lifetime and request limits."""
    session_ttl_seconds:     int                        = Field(default=7200, gt=0)
    max_file_size_mb:        int                        = Field(default=500, gt=0)
    max_parts:               int                        = Field(default=10000, ge=1, le=10000)
    registry_backend:        Literal["memory", "redis"] = "memory"
    reaper_interval_seconds: int                        = Field(default=60, gt=0)
    redis_key_prefix:        str                        = "uploads"

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024


class AppConfig(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    uploads: UploadSettings  = Field(default_factory=UploadSettings)
    secrets: Secrets         = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_path = Path(settings_path) if settings_path else SETTINGS_FILE
    secrets_path  = Path(secrets_path) if secrets_path else SECRETS_FILE

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)
    config.logging.events_path = _resolve_relative(config.logging.events_path, settings_path)

    logger.info(
        "Settings loaded (bucket=%s, region=%s, registry=%s, session_ttl=%ss)",
        config.storage.bucket,
        config.storage.region,
        config.uploads.registry_backend,
        config.uploads.session_ttl_seconds,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AppConfig]) -> None:
    """Replace (or clear) the process-wide configuration."""
    global _config
    _config = config
