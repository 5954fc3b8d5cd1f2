"""Chat room server configuration.

Loads settings from two YAML files:
  * chatroom.settings.yaml : non-secret configuration
  * chatroom.secrets.yaml  : the admin shared secret (never committed)

Both files are optional; missing files fall back to defaults.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("chatroom.settings.yaml")
SECRETS_FILE  = Path("chatroom.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class AdminSecrets(BaseModel):
    password: str = "change-me"


class Secrets(BaseModel):
    admin: AdminSecrets = Field(default_factory=AdminSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 8000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"


class RoomDefaults(BaseModel):
    """Admin settings a new room starts with before any snapshot is loaded."""
    welcome_message:     str       = ""
    allow_media_uploads: bool      = True
    allow_reactions:     bool      = True
    banned_words:        List[str] = Field(default_factory=list)
    max_message_history: int       = Field(default=100, ge=0)
    dedup_cache_size:    int       = Field(default=10000, ge=1)


class PersistenceSettings(BaseModel):
    enabled: bool = True
    db_path: str  = "chatroom_snapshots.duckdb"


class AppConfig(BaseModel):
    server:      ServerSettings      = Field(default_factory=ServerSettings)
    logging:     LoggingSettings     = Field(default_factory=LoggingSettings)
    room:        RoomDefaults        = Field(default_factory=RoomDefaults)
    persistence: PersistenceSettings = Field(default_factory=PersistenceSettings)
    secrets:     Secrets             = Field(default_factory=Secrets)

    @property
    def admin_password(self) -> str:
        return self.secrets.admin.password


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_path = Path(settings_path) if settings_path else SETTINGS_FILE
    secrets_path = Path(secrets_path) if secrets_path else settings_path.parent / SECRETS_FILE.name

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)

    # Relative snapshot paths resolve against the settings file's directory
    db_path = config.persistence.db_path
    if db_path != ":memory:" and not Path(db_path).is_absolute():
        config.persistence.db_path = str(settings_path.parent / db_path)

    logger.info(
        "Config loaded (server=%s:%s, persistence.enabled=%s, max_message_history=%d)",
        config.server.host,
        config.server.port,
        config.persistence.enabled,
        config.room.max_message_history,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: AppConfig) -> None:
    global _config
    _config = config


def reset_config() -> None:
    """Forget the cached configuration (for testing)."""
    global _config
    _config = None
