# services/lootbox-bridge/app/bridge/health.py
from __future__ import annotations

import logging
from typing import Optional, Tuple

import httpx

from app.clients.http_utils import get_http_client
from app.config import settings
from app.models.procedure_models import ServerHealth

logger = logging.getLogger("app.bridge.health")


class HealthProber:
    """
    Read-only probe of the lootbox server: liveness first, then the /types document.

    Exactly one attempt per endpoint per call. Retrying is the caller's business.
    """

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        health_path: Optional[str] = None,
        types_path: Optional[str] = None,
        marker: Optional[str] = None,
        timeout_sec: Optional[float] = None,
        start_command: Optional[str] = None,
    ) -> None:
        self.base_url = (base_url or settings.lootbox_http_url).rstrip("/")
        self._client = client
        self.health_path = health_path or settings.lootbox_health_path
        self.types_path = types_path or settings.lootbox_types_path
        self.marker = marker or settings.lootbox_schema_marker
        self.timeout_sec = timeout_sec if timeout_sec is not None else settings.health_timeout_seconds
        self.start_command = start_command or settings.start_command

    async def _http(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        return await get_http_client(self.base_url)

    async def check_health(self) -> ServerHealth:
        health, _ = await self.check_health_and_schema()
        return health

    async def check_health_and_schema(self) -> Tuple[ServerHealth, Optional[str]]:
        """
        check_health() plus the /types body it read. The body is None unless the
        document is compatible.
        """
        client = await self._http()
        health_url = f"{self.base_url}{self.health_path}"

        # 1) Liveness
        try:
            resp = await client.get(health_url, timeout=self.timeout_sec)
        except httpx.TimeoutException:
            return ServerHealth(
                healthy=False,
                error=(
                    f"Lootbox server at {self.base_url} did not answer {self.health_path} "
                    f"within {self.timeout_sec:g}s; it may be hung. Restart it with: {self.start_command}"
                ),
            ), None
        except httpx.TransportError as exc:
            return ServerHealth(
                healthy=False,
                error=(
                    f"Lootbox server is not running at {self.base_url} ({exc.__class__.__name__}: {exc}). "
                    f"Start it with: {self.start_command}"
                ),
            ), None

        if resp.status_code >= 400:
            return ServerHealth(
                healthy=False,
                error=(
                    f"Lootbox server at {self.base_url} answered {self.health_path} with HTTP "
                    f"{resp.status_code}. Restart it with: {self.start_command}"
                ),
            ), None
        version = _version_from(resp)

        # 2) Schema capability
        types_url = f"{self.base_url}{self.types_path}"
        try:
            types_resp = await client.get(types_url, timeout=self.timeout_sec)
        except httpx.HTTPError as exc:
            return ServerHealth(
                healthy=True,
                schema_compatible=False,
                version=version,
                error=(
                    f"Lootbox server is up but fetching {self.types_path} failed "
                    f"({exc.__class__.__name__}: {exc})"
                ),
            ), None

        if types_resp.status_code == 404:
            return ServerHealth(
                healthy=True,
                schema_compatible=False,
                version=version,
                error=(
                    f"Lootbox server is running but has no {self.types_path} endpoint (HTTP 404); "
                    f"it is probably a stale or incompatible build. Restart it with: {self.start_command}"
                ),
            ), None
        if types_resp.status_code >= 400:
            return ServerHealth(
                healthy=True,
                schema_compatible=False,
                version=version,
                error=(
                    f"Lootbox server answered {self.types_path} with HTTP {types_resp.status_code}; "
                    "tool discovery is unavailable"
                ),
            ), None

        # 3) Marker
        if self.marker not in types_resp.text:
            return ServerHealth(
                healthy=True,
                schema_compatible=False,
                version=version,
                error=(
                    f"{types_url} does not contain the '{self.marker}' marker; this is not a lootbox "
                    "type-definition document (another service may own this port)"
                ),
            ), None

        logger.debug("Lootbox server healthy at %s (version=%s)", self.base_url, version or "unknown")
        return ServerHealth(healthy=True, schema_compatible=True, version=version), types_resp.text


def _version_from(resp: httpx.Response) -> Optional[str]:
    try:
        data = resp.json()
    except ValueError:
        return None
    if isinstance(data, dict) and data.get("version") is not None:
        return str(data["version"])
    return None
