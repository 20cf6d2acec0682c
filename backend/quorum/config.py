"""Quorum application configuration.

Loads settings from two YAML files:
  * quorum.settings.yaml: non-secret configuration
  * quorum.secrets.yaml: secrets (never committed)

Either path can be overridden with QUORUM_SETTINGS_FILE / QUORUM_SECRETS_FILE.
"""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("quorum.settings.yaml")
SECRETS_FILE  = Path("quorum.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class MongoSecrets(BaseModel):
    url: Optional[str] = None


class Secrets(BaseModel):
    mongo: MongoSecrets = Field(default_factory=MongoSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 5000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"


class RealtimeSettings(BaseModel):
    """Per-connection outbound buffering."""
    outbound_queue_size:  int   = 256
    send_timeout_seconds: float = 5.0

    @field_validator("outbound_queue_size")
    @classmethod
    def _positive_queue(cls, v: int) -> int:
        if v < 1:
            raise ValueError("outbound_queue_size must be at least 1")
        return v


class HistorySettings(BaseModel):
    default_page_size: int = 50
    max_page_size:     int = 200

    @model_validator(mode="after")
    def _default_within_max(self) -> "HistorySettings":
        if self.default_page_size > self.max_page_size:
            raise ValueError("default_page_size cannot exceed max_page_size")
        return self


class StorageSettings(BaseModel):
    backend:                     Literal["memory", "mongo"] = "memory"
    database:                    str = "quorum"
    collection:                  str = "messages"
    counters_collection:         str = "message_counters"
    server_selection_timeout_ms: int = 5000


class MembershipSettings(BaseModel):
    """Static group membership.

    ``groups`` maps a group id to the identities allowed to join it. Groups
    not listed are open to everyone when ``open_groups`` is true.
    """
    open_groups:  bool                 = True
    allow_guests: bool                 = True
    groups:       Dict[str, List[str]] = Field(default_factory=dict)


class AppSettings(BaseModel):
    server:     ServerSettings     = Field(default_factory=ServerSettings)
    logging:    LoggingSettings    = Field(default_factory=LoggingSettings)
    realtime:   RealtimeSettings   = Field(default_factory=RealtimeSettings)
    history:    HistorySettings    = Field(default_factory=HistorySettings)
    storage:    StorageSettings    = Field(default_factory=StorageSettings)
    membership: MembershipSettings = Field(default_factory=MembershipSettings)
    secrets:    Secrets            = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(
    settings_file: Optional[Path] = None,
    secrets_file: Optional[Path] = None,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    settings_path = settings_file or Path(os.environ.get("QUORUM_SETTINGS_FILE", SETTINGS_FILE))
    secrets_path  = secrets_file or Path(os.environ.get("QUORUM_SECRETS_FILE", SECRETS_FILE))

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, storage=%s, open_groups=%s)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.storage.backend,
        app_settings.membership.open_groups,
    )
    return app_settings


@lru_cache(maxsize=1)
def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    return load_settings()


def reset_config() -> None:
    """Drop the cached settings so the next get_config() reloads them."""
    get_config.cache_clear()
