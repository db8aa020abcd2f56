# services/lootbox-bridge/app/config.py
from __future__ import annotations

import os
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from pydantic_settings import BaseSettings, SettingsConfigDict


def http_base_from_ws(url: str) -> str:
    """
    ws://host:3456/ws -> http://host:3456 (wss -> https). The /ws suffix is dropped.
    """
    parts = urlsplit(url)
    scheme = {"ws": "http", "wss": "https"}.get(parts.scheme, parts.scheme)
    path = parts.path.rstrip("/")
    if path.endswith("/ws"):
        path = path[: -len("/ws")]
    return urlunsplit((scheme, parts.netloc, path, "", "")).rstrip("/")


class Settings(BaseSettings):
    # Backend endpoint
    lootbox_url: str = os.getenv("LOOTBOX_URL", "ws://localhost:3456/ws")
    lootbox_health_path: str = os.getenv("LOOTBOX_HEALTH_PATH", "/health")
    lootbox_types_path: str = os.getenv("LOOTBOX_TYPES_PATH", "/types")
    lootbox_schema_marker: str = os.getenv("LOOTBOX_SCHEMA_MARKER", "RpcClient")
    lootbox_start_command: Optional[str] = os.getenv("LOOTBOX_START_COMMAND") or None

    # Timeouts
    health_timeout_seconds: float = float(os.getenv("HEALTH_TIMEOUT_SECONDS", "5"))
    connect_timeout_seconds: float = float(os.getenv("CONNECT_TIMEOUT_SECONDS", "10"))
    request_timeout_seconds: float = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "30"))
    progress_timeout_seconds: float = float(os.getenv("PROGRESS_TIMEOUT_SECONDS", "300"))

    # Front-end naming
    legacy_tool_prefix: str = os.getenv("LEGACY_TOOL_PREFIX", "mcp__lootbox__")

    # Identity
    service_name: str = os.getenv("SERVICE_NAME", "lootbox-bridge")
    service_version: str = "1.0.0"
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    @property
    def lootbox_http_url(self) -> str:
        return http_base_from_ws(self.lootbox_url)

    @property
    def start_command(self) -> str:
        if self.lootbox_start_command:
            return self.lootbox_start_command
        port = urlsplit(self.lootbox_url).port or 3456
        return f"lootbox server --port {port}"


settings = Settings()
