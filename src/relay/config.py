"""Relay configuration with Pydantic models.

Follows the same pattern everywhere:
- Load from YAML file
- Override with environment variables
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError


class ServerConfig(BaseModel):
    """HTTP/WebSocket server configuration."""
    host: str = Field("0.0.0.0", description="Server bind address")
    port: int = Field(3000, description="Server port")
    static_dir: Optional[str] = Field(
        default=None,
        description="Directory of frontend assets served at /; disabled when unset",
    )


class CorsConfig(BaseModel):
    """CORS configuration."""
    origins: list[str] = Field(
        default_factory=lambda: ["*"],
        description="Allowed origins for CORS",
    )
    allow_credentials: bool = Field(False, description="Allow credentials")


class StorageConfig(BaseModel):
    """Message history storage."""
    url: str = Field(
        "sqlite+aiosqlite:///relay.db",
        description="SQLAlchemy async URL; 'memory://' keeps history in-process",
    )
    echo_sql: bool = Field(False, description="Log every SQL statement")

    @property
    def in_memory(self) -> bool:
        return not self.url or self.url.startswith("memory://")


class ChatConfig(BaseModel):
    """Rooms and history retention."""
    rooms: List[str] = Field(
        default_factory=lambda: ["general", "random", "games"],
        description="Fixed room catalog, in display order",
    )
    batch_size: int = Field(50, gt=0, description="Messages per storage batch")
    history_limit: int = Field(100, gt=0, description="Messages retained per room")


class AppConfig(BaseModel):
    """Application configuration."""
    server: ServerConfig = Field(default_factory=ServerConfig)
    cors: CorsConfig = Field(default_factory=CorsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)


def _default_config_path() -> Path:
    return Path(__file__).resolve().parents[2] / "config.yaml"


def load_config(path: Optional[Path | str] = None) -> AppConfig:
    """Load configuration from YAML file and environment variables.

    If `path` is not provided, ``RELAY_CONFIG`` or `config.yaml` in the
    project root is used. A missing file yields defaults.

    Environment variables take precedence over YAML values:
    - HOST / PORT: listen address
    - DATABASE_URL: storage connection string
    - STATIC_DIR: frontend asset directory
    """
    if path is None and (env_path := os.environ.get("RELAY_CONFIG")):
        path = env_path
    config_path = Path(path) if path is not None else _default_config_path()

    if not config_path.is_file():
        config = AppConfig()
    else:
        with config_path.open("r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config at {config_path} must be a mapping.")
        try:
            config = AppConfig.model_validate(loaded)
        except ValidationError as exc:
            raise ValueError(f"Invalid configuration in {config_path}: {exc}") from exc

    if host := os.environ.get("HOST"):
        config.server.host = host
    if port := os.environ.get("PORT"):
        config.server.port = int(port)
    if url := os.environ.get("DATABASE_URL"):
        config.storage.url = url
    if static_dir := os.environ.get("STATIC_DIR"):
        config.server.static_dir = static_dir

    return config
