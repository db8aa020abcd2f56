# services/lootbox-bridge/app/bridge/__init__.py
from __future__ import annotations

# re-export for convenience
from .types import ConnectionState
from .errors import BridgeError, DiscoveryError
from .health import HealthProber
from .schema_parser import parse_procedures
from .discovery import SchemaExtractor
from .connection import ConnectionManager
from .adapter import LootboxToolAdapter, create_bridge_server

__all__ = [
    "ConnectionState",
    "BridgeError",
    "DiscoveryError",
    "HealthProber",
    "parse_procedures",
    "SchemaExtractor",
    "ConnectionManager",
    "LootboxToolAdapter",
    "create_bridge_server",
]
