"""Murmur application configuration.

Loads settings from two YAML files:
  * murmur.settings.yaml: non-secret configuration
  * murmur.secrets.yaml: secrets (never committed)

``MURMUR_JWT_SECRET`` in the environment overrides the JWT secret from the
secrets file, so deployments can inject it without a file on disk.
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

SETTINGS_FILE = Path("murmur.settings.yaml")
SECRETS_FILE  = Path("murmur.secrets.yaml")

JWT_SECRET_ENV = "MURMUR_JWT_SECRET"


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


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str  = "0.0.0.0"
    port:            int  = 8000
    reload:          bool = False
    allowed_origins: List[str] = Field(default_factory=lambda: ["http://localhost:5173"])


class DatabaseSettings(BaseModel):
    path:                    str   = "murmur.duckdb"
    pool_size:               int   = 20
    acquire_timeout_seconds: float = 2.0

    @field_validator("pool_size")
    @classmethod
    def _positive_pool(cls, value: int) -> int:
        if value < 1:
            raise ValueError("pool_size must be at least 1")
        return value


class AuthSettings(BaseModel):
    algorithm:      str = "HS256"
    leeway_seconds: int = 0


class RealtimeSettings(BaseModel):
    """Transport keep-alive and frame limits for the WebSocket endpoint."""
    ping_interval:     float = 25.0
    ping_timeout:      float = 60.0
    max_message_bytes: int   = 1_000_000


class LoggingSettings(BaseModel):
    level: str = "info"


class AppSettings(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    auth:     AuthSettings     = Field(default_factory=AuthSettings)
    realtime: RealtimeSettings = Field(default_factory=RealtimeSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(
    settings_file: Path = SETTINGS_FILE,
    secrets_file: Path = SECRETS_FILE,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    settings_data = _load_yaml(settings_file)
    secrets_data  = _load_yaml(secrets_file)

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)

    env_secret = os.environ.get(JWT_SECRET_ENV)
    if env_secret:
        app_settings.secrets.jwt.secret_key = env_secret
        logger.info("JWT secret taken from %s", JWT_SECRET_ENV)

    logger.info(
        "Settings loaded (server=%s:%s, database=%s, pool_size=%d)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.database.path,
        app_settings.database.pool_size,
    )
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_settings()
    return _config


def reset_config() -> None:
    """Forget cached settings (used by tests)."""
    global _config
    _config = None
