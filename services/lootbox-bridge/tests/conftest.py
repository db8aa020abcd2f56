"""
Shared fixtures: a fake lootbox HTTP app, an in-memory WebSocket channel and a
real in-process lootbox WebSocket server.
"""

import asyncio
import json
import socket
from types import SimpleNamespace

import httpx
import pytest
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from app.bridge.connection import ConnectionManager

LOOTBOX_HTTP = "http://lootbox.test"
START_COMMAND = "lootbox server --port 3456"

SAMPLE_TYPES = """\
// Generated by lootbox. Do not edit.
export interface RpcClient {
  basic_memory: {
    write_memory(args: {
      title: string;
      content: string;
      folder?: string;
      tags?: string[];
    }): Promise<unknown>;
    list_notes(args: Record<string, never>): Promise<unknown>;
    search(args: {
      query: string;
      limit?: number;
      include_archived?: boolean;
      mode?: SearchMode;
    }): Promise<unknown>;
  };
  tmux: {
    send_keys(args: { session: string; keys: string; enter?: boolean }): Promise<unknown>;
    list_sessions(args: Record<string, never>): Promise<unknown>;
    resize(args: {
      /** pane dimensions */
      sizes: Array<number>;
      target?: string; // defaults to the current pane
    }): Promise<unknown>;
  };
}
"""


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    end = loop.time() + timeout
    while not predicate():
        if loop.time() > end:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


# --------- HTTP stand-in ----------------------------------------------------- #

def make_lootbox_app(*, types_text=SAMPLE_TYPES, serve_types=True, health_status=200, version="0.9.0"):
    app = FastAPI()

    @app.get("/health")
    def health():
        if health_status != 200:
            return PlainTextResponse("unhealthy", status_code=health_status)
        return {"status": "ok", "version": version}

    if serve_types:
        @app.get("/types", response_class=PlainTextResponse)
        def types_():
            return types_text

    return app


def asgi_client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=LOOTBOX_HTTP)


# --------- In-memory channel ------------------------------------------------- #

class FakeChannel:
    """Quacks like websockets' ClientConnection for the connection manager."""

    def __init__(self):
        self.state = State.OPEN
        self.sent = []
        self.close_code = None
        self.close_reason = ""
        self._inbox = asyncio.Queue()
        self._eof = False
        self.send_error = None

    async def send(self, data):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(json.loads(data))

    def feed(self, message):
        self._inbox.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def drop(self, code=1006, reason=""):
        """Peer-side closure."""
        self.state = State.CLOSED
        if self._eof:
            return
        self._eof = True
        self.close_code = code
        self.close_reason = reason
        self._inbox.put_nowait(None)

    async def close(self, code=1000, reason=""):
        self.drop(code, reason)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item


class FakeConnector:
    def __init__(self):
        self.channels = []

    async def __call__(self, url):
        channel = FakeChannel()
        self.channels.append(channel)
        return channel

    @property
    def last(self):
        return self.channels[-1]


@pytest.fixture
def fake_connector():
    return FakeConnector()


@pytest.fixture
async def make_manager():
    managers = []

    def factory(url="ws://lootbox.test/ws", **kwargs):
        kwargs.setdefault("connect_timeout", 2.0)
        kwargs.setdefault("request_timeout", 2.0)
        kwargs.setdefault("progress_timeout", 2.0)
        kwargs.setdefault("client_cwd", "/work/repo")
        kwargs.setdefault("start_command", START_COMMAND)
        manager = ConnectionManager(url, **kwargs)
        managers.append(manager)
        return manager

    yield factory
    for manager in managers:
        await manager.aclose()


# --------- Real WebSocket server --------------------------------------------- #

@pytest.fixture
async def lootbox_ws():
    state = SimpleNamespace(connections=0, requests=[])
    tasks = set()

    async def respond(ws, msg):
        method, args, call_id = msg["method"], msg.get("args") or {}, msg["id"]
        try:
            if method == "echo.args":
                await ws.send(json.dumps({"id": call_id, "result": args}))
            elif method == "slow.echo":
                await asyncio.sleep(args["delay"])
                await ws.send(json.dumps({"id": call_id, "result": args["value"]}))
            elif method == "progress.work":
                for i in range(args["ticks"]):
                    await asyncio.sleep(args["interval"])
                    await ws.send(json.dumps({"type": "progress", "id": call_id, "message": f"step {i}"}))
                await ws.send(json.dumps({"id": call_id, "result": "done"}))
            elif method == "fail.boom":
                await ws.send(json.dumps({"id": call_id, "error": "boom happened"}))
            elif method == "close.now":
                await ws.close(code=1011, reason="server closing")
            # silent.hang: never answers
        except ConnectionClosed:
            pass

    async def handler(ws):
        state.connections += 1
        await ws.send(json.dumps({"type": "welcome", "clientId": f"client-{state.connections}"}))
        try:
            async for raw in ws:
                msg = json.loads(raw)
                state.requests.append(msg)
                task = asyncio.create_task(respond(ws, msg))
                tasks.add(task)
                task.add_done_callback(tasks.discard)
        except ConnectionClosed:
            pass

    async with serve(handler, "127.0.0.1", 0) as server:
        port = server.sockets[0].getsockname()[1]
        yield SimpleNamespace(url=f"ws://127.0.0.1:{port}/ws", state=state)
        for task in list(tasks):
            task.cancel()
