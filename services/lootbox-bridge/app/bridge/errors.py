# services/lootbox-bridge/app/bridge/errors.py
from __future__ import annotations

from typing import Optional


class BridgeError(RuntimeError):
    """
    Base for every failure the bridge reports. `kind` is a stable, greppable tag.
    """

    kind = "bridge-error"


# --------- Discovery --------------------------------------------------------- #

class DiscoveryError(BridgeError):
    kind = "discovery-failed"


class IncompatibleBackendError(DiscoveryError):
    kind = "incompatible-backend"


# --------- Connection -------------------------------------------------------- #

class ConnectRefusedError(BridgeError):
    kind = "connect-refused"

    def __init__(self, *, url: str, start_command: str, cause: str) -> None:
        super().__init__(
            f"Cannot connect to lootbox server at {url} ({cause}). "
            f"Start it with: {start_command}"
        )
        self.url = url
        self.start_command = start_command


class ConnectTimeoutError(BridgeError):
    kind = "connect-timeout"

    def __init__(self, *, url: str, timeout_sec: float) -> None:
        super().__init__(f"Timed out after {timeout_sec:g}s connecting to lootbox server at {url}")
        self.url = url
        self.timeout_sec = timeout_sec


class StaleConnectionError(BridgeError):
    kind = "stale-connection-on-send"

    def __init__(self, *, method: str) -> None:
        super().__init__(
            f"Connection to lootbox server closed before {method} could be sent; "
            "the next call will reconnect"
        )
        self.method = method


class ConnectionClosedError(BridgeError):
    kind = "connection-closed"

    def __init__(self, *, method: str, code: Optional[int], reason: str) -> None:
        super().__init__(
            f"Connection to lootbox server closed while waiting for {method} "
            f"(code={code}, reason={reason or 'n/a'})"
        )
        self.method = method
        self.code = code
        self.reason = reason


# --------- Calls ------------------------------------------------------------- #

class RequestTimeoutError(BridgeError):
    kind = "request-timeout"

    def __init__(self, *, method: str, timeout_sec: float) -> None:
        super().__init__(f"RPC call {method} timed out after {timeout_sec:g}s without a response")
        self.method = method
        self.timeout_sec = timeout_sec


class ProgressTimeoutError(RequestTimeoutError):
    kind = "progress-extended-timeout"

    def __init__(self, *, method: str, timeout_sec: float, progress_count: int) -> None:
        BridgeError.__init__(
            self,
            f"RPC call {method} timed out: no progress for {timeout_sec:g}s "
            f"after {progress_count} progress update(s)",
        )
        self.method = method
        self.timeout_sec = timeout_sec
        self.progress_count = progress_count


class UpstreamError(BridgeError):
    kind = "upstream-error"

    def __init__(self, *, method: str, error: str) -> None:
        super().__init__(error)
        self.method = method


class MalformedMessageError(BridgeError):
    kind = "malformed-message"


class InvalidToolNameError(BridgeError):
    kind = "invalid-tool-name"

    def __init__(self, *, name: str) -> None:
        super().__init__(
            f"Invalid tool name {name!r}: expected '<namespace>__<procedure>', "
            "e.g. basic_memory__write_memory"
        )
        self.name = name
