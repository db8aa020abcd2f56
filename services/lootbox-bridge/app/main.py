# services/lootbox-bridge/app/main.py
from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from typing import List, Optional, Sequence, Tuple

from mcp.server.stdio import stdio_server

from app.bridge import ConnectionManager, HealthProber, LootboxToolAdapter, SchemaExtractor, create_bridge_server
from app.clients.http_utils import close_http_clients
from app.config import Settings, settings
from app.infra.logging import setup_logging

logger = logging.getLogger("app.main")


def build_bridge(cfg: Settings) -> Tuple[LootboxToolAdapter, ConnectionManager]:
    prober = HealthProber(
        base_url=cfg.lootbox_http_url,
        health_path=cfg.lootbox_health_path,
        types_path=cfg.lootbox_types_path,
        marker=cfg.lootbox_schema_marker,
        timeout_sec=cfg.health_timeout_seconds,
        start_command=cfg.start_command,
    )
    connection = ConnectionManager(
        cfg.lootbox_url,
        connect_timeout=cfg.connect_timeout_seconds,
        request_timeout=cfg.request_timeout_seconds,
        progress_timeout=cfg.progress_timeout_seconds,
        start_command=cfg.start_command,
    )
    adapter = LootboxToolAdapter(SchemaExtractor(prober), connection, legacy_prefix=cfg.legacy_tool_prefix)
    return adapter, connection


def shutdown_on_signal(connection: ConnectionManager, main_task: Optional[asyncio.Task], signame: str) -> None:
    logger.info("Received %s; shutting down", signame)
    connection.close()
    if main_task is not None:
        main_task.cancel()


def install_signal_handlers(
    loop: asyncio.AbstractEventLoop,
    connection: ConnectionManager,
    main_task: Optional[asyncio.Task],
) -> List[signal.Signals]:
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, shutdown_on_signal, connection, main_task, sig.name)
            installed.append(sig)
    return installed


async def serve(cfg: Settings) -> None:
    """
    Bridge lifetime:
      - MCP over stdio until the front-end hangs up or a termination signal arrives
      - on exit: drain pending calls, close the socket and shared HTTP clients
    """
    adapter, connection = build_bridge(cfg)
    server = create_bridge_server(adapter, name=cfg.service_name)

    loop = asyncio.get_running_loop()
    installed = install_signal_handlers(loop, connection, asyncio.current_task())

    logger.info("%s starting; lootbox=%s", cfg.service_name, cfg.lootbox_url)
    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())
    except asyncio.CancelledError:
        pass
    finally:
        try:
            await connection.aclose()
        except Exception:
            logger.warning("Error closing lootbox connection", exc_info=True)
        try:
            await close_http_clients()
        except Exception:
            logger.warning("Error closing HTTP clients", exc_info=True)
        for sig in installed:
            loop.remove_signal_handler(sig)
        logger.info("%s shutdown complete", cfg.service_name)


async def check(cfg: Settings) -> int:
    prober = HealthProber(
        base_url=cfg.lootbox_http_url,
        health_path=cfg.lootbox_health_path,
        types_path=cfg.lootbox_types_path,
        marker=cfg.lootbox_schema_marker,
        timeout_sec=cfg.health_timeout_seconds,
        start_command=cfg.start_command,
    )
    try:
        health = await prober.check_health()
    finally:
        await close_http_clients()
    print(json.dumps(health.model_dump(), indent=2))
    return 0 if health.ok else 1


def run(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        prog="lootbox-bridge",
        description="MCP stdio bridge to the lootbox RPC server",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="probe the lootbox server once, print its health as JSON and exit",
    )
    args = parser.parse_args(argv)

    setup_logging(settings.service_name, settings.log_level)
    if args.check:
        sys.exit(asyncio.run(check(settings)))
    asyncio.run(serve(settings))


if __name__ == "__main__":
    run()
