# services/lootbox-bridge/app/bridge/connection.py
from __future__ import annotations

import asyncio
import itertools
import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.protocol import State

from app.bridge.deadline import Deadline
from app.bridge.errors import (
    BridgeError,
    ConnectionClosedError,
    ConnectRefusedError,
    ConnectTimeoutError,
    MalformedMessageError,
    ProgressTimeoutError,
    RequestTimeoutError,
    StaleConnectionError,
    UpstreamError,
)
from app.bridge.types import CLIENT_CWD_FIELD, ConnectionState, RpcRequest
from app.config import settings

logger = logging.getLogger("app.bridge.connection")

# Anything with send()/close()/state/close_code/close_reason and async iteration
# over incoming frames; websockets' ClientConnection in production.
Channel = Any
Connector = Callable[[str], Awaitable[Channel]]


async def websocket_connector(url: str) -> Channel:
    # open timeout is enforced by the broker
    return await connect(url, open_timeout=None, max_size=None)


def channel_is_open(channel: Channel) -> bool:
    return channel is not None and channel.state is State.OPEN


# --------- Connection broker ------------------------------------------------ #

class BrokerClosedError(BridgeError):
    """A connect attempt abandoned because the bridge is shutting down."""

    kind = "connection-closed"
    reason = "bridge shutting down"

    def __init__(self) -> None:
        super().__init__(f"Lootbox connection closed: {self.reason}")


class ConnectionBroker:
    """
    Sole owner of the socket. Either nothing, a pending connect, or an established
    channel. Callers ask acquire() for a channel; at most one connect runs at a time.
    """

    def __init__(
        self,
        url: str,
        *,
        connect_timeout: float,
        start_command: str,
        connector: Optional[Connector] = None,
        on_message: Callable[[Channel, Any], None],
        on_closed: Callable[[Channel, Optional[int], str], None],
    ) -> None:
        self.url = url
        self.connect_timeout = connect_timeout
        self.start_command = start_command
        self._connector = connector or websocket_connector
        self._on_message = on_message
        self._on_closed = on_closed

        self._channel: Optional[Channel] = None
        self._connecting: Optional[asyncio.Future] = None
        self._opener: Optional[asyncio.Task] = None
        self._readers: Dict[int, asyncio.Task] = {}
        self._closing: set[asyncio.Task] = set()
        self.connect_attempts = 0

    @property
    def state(self) -> ConnectionState:
        if self._channel is not None:
            return ConnectionState.CONNECTED
        if self._connecting is not None:
            return ConnectionState.CONNECTING
        return ConnectionState.DISCONNECTED

    async def acquire(self) -> Channel:
        if self._channel is not None:
            return self._channel
        if self._connecting is None:
            self.connect_attempts += 1
            waiter = asyncio.get_running_loop().create_future()
            self._connecting = waiter
            self._opener = asyncio.ensure_future(self._open(waiter))
        return await asyncio.shield(self._connecting)

    async def _open(self, waiter: asyncio.Future) -> None:
        logger.info("Connecting to lootbox server at %s", self.url)
        try:
            channel = await asyncio.wait_for(self._connector(self.url), timeout=self.connect_timeout)
        except (asyncio.TimeoutError, TimeoutError) as exc:
            logger.warning("Connect to %s timed out after %ss", self.url, self.connect_timeout)
            self._fail(waiter, ConnectTimeoutError(url=self.url, timeout_sec=self.connect_timeout), exc)
            return
        except (OSError, WebSocketException) as exc:
            logger.warning("Connect to %s failed: %s", self.url, exc)
            error = ConnectRefusedError(
                url=self.url,
                start_command=self.start_command,
                cause=f"{exc.__class__.__name__}: {exc}",
            )
            self._fail(waiter, error, exc)
            return
        except asyncio.CancelledError:
            self._fail(waiter, BrokerClosedError())
            raise
        except Exception as exc:
            logger.exception("Connect to %s failed unexpectedly", self.url)
            self._fail(waiter, exc)
            return
        finally:
            if self._connecting is waiter:
                self._connecting = None
                self._opener = None

        if waiter.done():
            # close() gave up on this attempt while it was in flight
            self._close_channel(channel)
            return
        self._channel = channel
        self._readers[id(channel)] = asyncio.ensure_future(self._read(channel))
        logger.info("Connected to lootbox server at %s", self.url)
        waiter.set_result(channel)

    @staticmethod
    def _fail(waiter: asyncio.Future, error: BaseException, cause: Optional[BaseException] = None) -> None:
        if cause is not None:
            error.__cause__ = cause
        if not waiter.done():
            waiter.set_exception(error)
            # callers see it through their shield() wrappers
            waiter.exception()

    async def _read(self, channel: Channel) -> None:
        try:
            async for raw in channel:
                try:
                    self._on_message(channel, raw)
                except Exception:
                    logger.exception("Failed to handle message from %s", self.url)
        except ConnectionClosed:
            pass
        except Exception:
            logger.exception("Reader for %s stopped unexpectedly", self.url)
            self._close_channel(channel)
        finally:
            self._readers.pop(id(channel), None)
            if self._channel is channel:
                self._channel = None
            code = getattr(channel, "close_code", None)
            reason = getattr(channel, "close_reason", None) or ""
            logger.info("Connection to %s closed (code=%s, reason=%s)", self.url, code, reason or "n/a")
            self._on_closed(channel, code, reason)

    def invalidate(self, channel: Channel) -> None:
        """
        Forget `channel` so the next acquire() reconnects, and make sure it is closed.
        """
        if self._channel is channel:
            self._channel = None
        self._close_channel(channel)

    def _close_channel(self, channel: Channel) -> None:
        try:
            task = asyncio.ensure_future(channel.close())
        except RuntimeError:
            # no running loop (interpreter shutdown)
            return
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    def close(self) -> None:
        waiter, self._connecting = self._connecting, None
        opener, self._opener = self._opener, None
        if waiter is not None and not waiter.done():
            waiter.set_exception(BrokerClosedError())
            waiter.exception()
        if opener is not None:
            opener.cancel()
            self._closing.add(opener)
            opener.add_done_callback(self._closing.discard)
        channel, self._channel = self._channel, None
        if channel is not None:
            self._close_channel(channel)

    async def wait_closed(self) -> None:
        pending = list(self._closing) + list(self._readers.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


# --------- Connection manager ----------------------------------------------- #

@dataclass
class PendingCall:
    correlation_id: str
    method: str
    future: asyncio.Future
    channel: Channel
    deadline: Optional[Deadline] = None
    created_at: float = field(default_factory=time.monotonic)
    progress_count: int = 0


class ConnectionManager:
    """
    Persistent, multiplexed RPC client for the lootbox WebSocket.

    Calls share one socket and are matched to responses by correlation id. The
    socket is opened lazily by the first call and reopened by the first call after
    it closes; there is no background reconnect and no retry.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        connect_timeout: Optional[float] = None,
        request_timeout: Optional[float] = None,
        progress_timeout: Optional[float] = None,
        client_cwd: Optional[str] = None,
        start_command: Optional[str] = None,
        connector: Optional[Connector] = None,
    ) -> None:
        self.url = url or settings.lootbox_url
        self.request_timeout = request_timeout if request_timeout is not None else settings.request_timeout_seconds
        self.progress_timeout = progress_timeout if progress_timeout is not None else settings.progress_timeout_seconds
        self.client_cwd = client_cwd or os.getcwd()
        self._broker = ConnectionBroker(
            self.url,
            connect_timeout=connect_timeout if connect_timeout is not None else settings.connect_timeout_seconds,
            start_command=start_command or settings.start_command,
            connector=connector,
            on_message=self._handle_message,
            on_closed=self._handle_closed,
        )
        self._pending: Dict[str, PendingCall] = {}
        self._counter = itertools.count(1)

    @property
    def state(self) -> ConnectionState:
        return self._broker.state

    @property
    def connect_attempts(self) -> int:
        return self._broker.connect_attempts

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _next_id(self) -> str:
        return f"call_{next(self._counter)}_{int(time.time() * 1000)}"

    async def call(self, namespace: str, name: str, args: Optional[Dict[str, Any]] = None) -> Any:
        method = f"{namespace}.{name}"
        try:
            channel = await self._broker.acquire()
        except BrokerClosedError as exc:
            raise ConnectionClosedError(method=method, code=1001, reason=exc.reason) from exc

        correlation_id = self._next_id()
        request: RpcRequest = {
            "method": method,
            "args": {CLIENT_CWD_FIELD: self.client_cwd, **(args or {})},
            "id": correlation_id,
        }

        # The channel may have closed while we were waiting for it.
        if not channel_is_open(channel):
            logger.warning("Stale connection detected before sending %s; forcing reconnect", method)
            self._broker.invalidate(channel)
            raise StaleConnectionError(method=method)

        future = asyncio.get_running_loop().create_future()
        pending = PendingCall(correlation_id=correlation_id, method=method, future=future, channel=channel)
        pending.deadline = Deadline(self.request_timeout, lambda: self._expire(correlation_id))
        self._pending[correlation_id] = pending

        try:
            await channel.send(json.dumps(request, default=str))
        except ConnectionClosed as exc:
            self._discard(correlation_id)
            if future.done() and not future.cancelled():
                future.exception()  # already rejected by the close handler
            self._broker.invalidate(channel)
            raise StaleConnectionError(method=method) from exc

        logger.debug("-> %s id=%s", method, correlation_id)
        try:
            return await future
        finally:
            self._discard(correlation_id)

    def _discard(self, correlation_id: str) -> Optional[PendingCall]:
        pending = self._pending.pop(correlation_id, None)
        if pending is not None and pending.deadline is not None:
            pending.deadline.cancel()
        return pending

    def _expire(self, correlation_id: str) -> None:
        pending = self._discard(correlation_id)
        if pending is None or pending.future.done():
            return
        deadline = pending.deadline
        window = deadline.window_sec if deadline is not None else self.request_timeout
        if pending.progress_count:
            exc: RequestTimeoutError = ProgressTimeoutError(
                method=pending.method, timeout_sec=window, progress_count=pending.progress_count
            )
        else:
            exc = RequestTimeoutError(method=pending.method, timeout_sec=window)
        logger.warning("%s (id=%s)", exc, correlation_id)
        pending.future.set_exception(exc)

    def _handle_message(self, channel: Channel, raw: Any) -> None:
        try:
            message = json.loads(raw)
            if not isinstance(message, dict):
                raise MalformedMessageError(f"expected a JSON object, got {type(message).__name__}")
        except Exception as exc:  # includes RecursionError from deeply nested frames
            logger.warning("Dropping malformed message from lootbox server: %s", exc)
            return

        kind = message.get("type")
        if kind == "welcome":
            logger.debug("Lootbox welcome: %s", message)
            return

        correlation_id = message.get("id")
        pending = self._pending.get(correlation_id) if isinstance(correlation_id, str) else None

        if kind == "progress":
            if pending is None or pending.deadline is None:
                return  # progress is broadcast to every client
            pending.progress_count += 1
            pending.deadline.extend(self.progress_timeout)
            logger.debug("Progress for %s (id=%s): %s", pending.method, correlation_id, message.get("message"))
            return

        if pending is None:
            if "result" in message or "error" in message:
                logger.debug("Ignoring response for unknown or expired id=%s", correlation_id)
            return
        if "result" not in message and "error" not in message:
            logger.debug("Ignoring message without result/error for id=%s", correlation_id)
            return

        self._discard(correlation_id)
        if pending.future.done():
            return
        if message.get("error") is not None:
            pending.future.set_exception(UpstreamError(method=pending.method, error=str(message["error"])))
        else:
            pending.future.set_result(message.get("result"))
        logger.debug("<- %s id=%s (%.0f ms)", pending.method, correlation_id, (time.monotonic() - pending.created_at) * 1000)

    def _handle_closed(self, channel: Channel, code: Optional[int], reason: str) -> None:
        self._reject_all(code, reason, only_channel=channel)

    def _reject_all(self, code: Optional[int], reason: str, *, only_channel: Optional[Channel] = None) -> int:
        rejected = 0
        for correlation_id, pending in list(self._pending.items()):
            if only_channel is not None and pending.channel is not only_channel:
                continue
            self._discard(correlation_id)
            if not pending.future.done():
                pending.future.set_exception(
                    ConnectionClosedError(method=pending.method, code=code, reason=reason)
                )
                rejected += 1
        if rejected:
            logger.warning("Rejected %d pending call(s) after connection closed", rejected)
        return rejected

    def close(self) -> None:
        """
        Reject every pending call, cancel their timers and start closing the socket.
        Synchronous so it can run from a signal handler.
        """
        self._reject_all(1001, "bridge shutting down")
        self._broker.close()

    async def aclose(self) -> None:
        self.close()
        await self._broker.wait_closed()
