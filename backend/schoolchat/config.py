"""SchoolChat application configuration.

Loads settings from two YAML files:
  * schoolchat.settings.yaml  - non-secret configuration
  * schoolchat.secrets.yaml   - secrets (never committed)

Both files are optional. A missing file logs a warning and the defaults
below apply, which is what the test-suite relies on.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path(os.environ.get("SCHOOLCHAT_SETTINGS", "schoolchat.settings.yaml"))
SECRETS_FILE  = Path(os.environ.get("SCHOOLCHAT_SECRETS", "schoolchat.secrets.yaml"))

DEFAULT_MAX_ATTACHMENT_BYTES = 5 * 1024 * 1024


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class GatewaySecrets(BaseModel):
    """Shared token the identity gateway attaches to forwarded requests.

    When unset, the ``X-User-Id`` header is trusted as-is.
    """
    shared_token: Optional[str] = None


class Secrets(BaseModel):
    gateway: GatewaySecrets = Field(default_factory=GatewaySecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str  = "0.0.0.0"
    port:            int  = 8000
    reload:          bool = False
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"


class StorageSettings(BaseModel):
    db_path: str = "schoolchat.duckdb"


class AttachmentSettings(BaseModel):
    max_size_bytes:                int       = DEFAULT_MAX_ATTACHMENT_BYTES
    allowed_type_prefixes:         List[str] = Field(default_factory=lambda: ["image/", "video/"])
    upload_dir:                    str       = "uploads"
    public_base_url:               str       = "http://localhost:8000"
    orphan_retention_seconds:      int       = 24 * 3600
    orphan_sweep_interval_seconds: int       = 3600

    @field_validator("max_size_bytes")
    @classmethod
    def _positive_size(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("max_size_bytes must be positive")
        return v

    @field_validator("allowed_type_prefixes")
    @classmethod
    def _normalise_prefixes(cls, v: List[str]) -> List[str]:
        out = []
        for prefix in v:
            prefix = prefix.strip().lower()
            if not prefix.endswith("/"):
                prefix += "/"
            out.append(prefix)
        return out

    @field_validator("public_base_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class SessionSettings(BaseModel):
    """Defaults for chat session controllers."""
    history_page_size:     int   = 50
    read_retry_attempts:   int   = 3
    read_retry_base_delay: float = 0.2


class AppSettings(BaseModel):
    server:      ServerSettings     = Field(default_factory=ServerSettings)
    logging:     LoggingSettings    = Field(default_factory=LoggingSettings)
    storage:     StorageSettings    = Field(default_factory=StorageSettings)
    attachments: AttachmentSettings = Field(default_factory=AttachmentSettings)
    session:     SessionSettings    = Field(default_factory=SessionSettings)
    secrets:     Secrets            = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(
    settings_file: Optional[Path] = None,
    secrets_file: Optional[Path] = None,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    settings_data = _load_yaml(settings_file or SETTINGS_FILE)
    secrets_data  = _load_yaml(secrets_file or SECRETS_FILE)

    # Secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, db=%s, upload_dir=%s)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.storage.db_path,
        app_settings.attachments.upload_dir,
    )
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_settings()
    return _config


def set_config(config: Optional[AppSettings]) -> None:
    """Replace (or with ``None`` reset) the cached settings."""
    global _config
    _config = config
