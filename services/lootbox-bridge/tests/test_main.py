"""
Tests for bridge assembly, signal shutdown and the --check entry point.
"""

import asyncio
import contextlib
import os
import signal
import sys
from unittest.mock import AsyncMock, patch

import pytest

from app import main
from app.bridge import ConnectionState
from app.bridge.errors import ConnectionClosedError
from app.config import Settings
from app.models.procedure_models import ServerHealth

from conftest import wait_until


def _settings(**env):
    with patch.dict(os.environ, env, clear=True):
        return Settings()


def test_build_bridge_wires_settings():
    cfg = _settings(LOOTBOX_URL="ws://127.0.0.1:4567/ws", LEGACY_TOOL_PREFIX="old__")
    adapter, connection = main.build_bridge(cfg)

    assert connection.url == "ws://127.0.0.1:4567/ws"
    assert connection.state is ConnectionState.DISCONNECTED
    assert adapter.connection is connection
    assert adapter.legacy_prefix == "old__"
    assert adapter.extractor.prober.base_url == "http://127.0.0.1:4567"
    assert adapter.extractor.prober.start_command == "lootbox server --port 4567"


@pytest.mark.parametrize(
    "health, exit_code",
    [
        (ServerHealth(healthy=True, schema_compatible=True, version="1.2.0"), 0),
        (ServerHealth(healthy=True, schema_compatible=False, error="stale"), 1),
        (ServerHealth(healthy=False, error="not running"), 1),
    ],
)
async def test_check_exit_code(health, exit_code, capsys):
    with patch("app.main.HealthProber.check_health", AsyncMock(return_value=health)):
        assert await main.check(_settings()) == exit_code

    out = capsys.readouterr().out
    assert '"healthy"' in out


class _StubServer:
    def __init__(self, body):
        self._body = body

    def create_initialization_options(self):
        return None

    async def run(self, read_stream, write_stream, options):
        await self._body()


@contextlib.asynccontextmanager
async def _stub_stdio():
    yield object(), object()


class TestSignalShutdown:
    async def test_handler_drains_calls_and_cancels_main_task(self, make_manager, fake_connector):
        manager = make_manager(connector=fake_connector)
        call = asyncio.create_task(manager.call("ns", "proc", {}))
        await wait_until(lambda: manager.pending_count == 1)
        main_task = asyncio.create_task(asyncio.sleep(10))

        main.shutdown_on_signal(manager, main_task, "SIGTERM")

        assert manager.pending_count == 0
        with pytest.raises(ConnectionClosedError, match="bridge shutting down"):
            await call
        with pytest.raises(asyncio.CancelledError):
            await main_task

    @pytest.mark.skipif(sys.platform == "win32", reason="loop signal handlers are POSIX only")
    async def test_sigterm_stops_serve(self, make_manager, fake_connector):
        manager = make_manager(connector=fake_connector)
        calls = []

        async def session():
            calls.append(asyncio.create_task(manager.call("ns", "proc", {})))
            await wait_until(lambda: manager.pending_count == 1)
            os.kill(os.getpid(), signal.SIGTERM)
            await asyncio.sleep(10)

        with patch("app.main.build_bridge", return_value=(object(), manager)), \
                patch("app.main.create_bridge_server", return_value=_StubServer(session)), \
                patch("app.main.stdio_server", _stub_stdio):
            await asyncio.wait_for(asyncio.create_task(main.serve(_settings())), timeout=5.0)

        assert manager.pending_count == 0
        assert manager.state is ConnectionState.DISCONNECTED
        with pytest.raises(ConnectionClosedError, match="bridge shutting down"):
            await calls[0]
        # handlers are removed once serve returns
        assert not asyncio.get_running_loop().remove_signal_handler(signal.SIGTERM)
