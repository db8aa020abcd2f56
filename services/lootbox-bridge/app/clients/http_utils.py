from __future__ import annotations

import asyncio
import logging

import httpx

from app.config import settings

logger = logging.getLogger("app.clients.http")


# One shared AsyncClient per base_url (connection pooling + timeouts)
_clients: dict[str, httpx.AsyncClient] = {}
_clients_lock = asyncio.Lock()


async def get_http_client(base_url: str) -> httpx.AsyncClient:
    async with _clients_lock:
        client = _clients.get(base_url)
        if client is None or client.is_closed:
            client = httpx.AsyncClient(
                base_url=base_url,
                timeout=settings.health_timeout_seconds,
                headers={"User-Agent": f"{settings.service_name}/{settings.service_version}"},
            )
            _clients[base_url] = client
            logger.info("HTTP client created for %s", base_url)
        return client


async def close_http_clients() -> None:
    async with _clients_lock:
        clients = list(_clients.items())
        _clients.clear()
    for base_url, client in clients:
        try:
            await client.aclose()
        except Exception:
            logger.debug("Error closing HTTP client for %s", base_url, exc_info=True)
