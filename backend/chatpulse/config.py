"""ChatPulse application configuration.

Loads settings from two YAML files:
  * chatpulse.settings.yaml: non-secret configuration
  * chatpulse.secrets.yaml: secrets (never committed)

Relative filesystem paths (database file, upload directory) are resolved
against the directory that holds the settings file, so the service behaves
the same regardless of the working directory it was launched from.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("chatpulse.settings.yaml")
SECRETS_FILE  = Path("chatpulse.secrets.yaml")

MEMORY_DB = ":memory:"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class JWTSecrets(BaseModel):
    secret_key: str = "change-me-in-production"
    algorithm:  str = "HS256"


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 5000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"


class DatabaseSettings(BaseModel):
    path:                  str   = "chatpulse.duckdb"
    query_timeout_seconds: float = 10.0

    @field_validator("query_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("query_timeout_seconds must be positive")
        return value


class PresenceSettings(BaseModel):
    """Presence broadcast timing.

    ``grace_seconds`` of 0 selects immediate removal on disconnect; any
    positive value keeps the registry entry for that long so a quick
    reconnect does not flap the user's presence.
    """
    snapshot_interval_seconds: float = 5.0
    grace_seconds:             float = 5.0

    @field_validator("snapshot_interval_seconds")
    @classmethod
    def _positive_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("snapshot_interval_seconds must be positive")
        return value

    @field_validator("grace_seconds")
    @classmethod
    def _non_negative_grace(cls, value: float) -> float:
        if value < 0:
            raise ValueError("grace_seconds cannot be negative")
        return value


class AuthSettings(BaseModel):
    token_expire_minutes: int = 60 * 24
    min_password_length:  int = 6


class UploadSettings(BaseModel):
    upload_dir:     str = "uploads"
    max_size_bytes: int = 20 * 1024 * 1024


class AppSettings(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    presence: PresenceSettings = Field(default_factory=PresenceSettings)
    auth:     AuthSettings     = Field(default_factory=AuthSettings)
    uploads:  UploadSettings   = Field(default_factory=UploadSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Path resolution
# ---------------------------------------------------------------------------


def _resolve_paths(settings: AppSettings, base_dir: Path) -> None:
    db_path = settings.database.path
    if db_path != MEMORY_DB and not Path(db_path).is_absolute():
        settings.database.path = str(base_dir / db_path)

    upload_dir = Path(settings.uploads.upload_dir)
    if not upload_dir.is_absolute():
        settings.uploads.upload_dir = str(base_dir / upload_dir)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


_config: Optional[AppSettings] = None


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    settings_path = Path(settings_path) if settings_path else SETTINGS_FILE
    if secrets_path is None:
        secrets_path = settings_path.parent / SECRETS_FILE.name
    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(Path(secrets_path))

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)
    _resolve_paths(app_settings, settings_path.resolve().parent)
    logger.info(
        "Settings loaded (server=%s:%s, database=%s, grace=%ss, snapshot every %ss)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.database.path,
        app_settings.presence.grace_seconds,
        app_settings.presence.snapshot_interval_seconds,
    )
    return app_settings


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(settings: Optional[AppSettings]) -> None:
    """Replace the process-wide settings (``None`` forces a reload)."""
    global _config
    _config = settings
