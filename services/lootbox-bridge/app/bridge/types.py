# services/lootbox-bridge/app/bridge/types.py
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Literal, TypedDict


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class RpcRequest(TypedDict):
    method: str
    args: Dict[str, Any]
    id: str


class RpcResponse(TypedDict, total=False):
    id: str
    result: Any
    error: str


class RpcProgress(TypedDict):
    type: Literal["progress"]
    id: str
    message: str


# Injected into every request so tools can resolve paths against the caller's checkout.
CLIENT_CWD_FIELD = "_client_cwd"
