# services/lootbox-bridge/app/bridge/deadline.py
from __future__ import annotations

import asyncio
from typing import Callable, Optional


class Deadline:
    """
    A single-shot timer that can be pushed forward.

    At most one timer handle is ever scheduled: extend() cancels the current
    handle before installing the next one.
    """

    def __init__(
        self,
        window_sec: float,
        on_expire: Callable[[], None],
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self._loop = loop or asyncio.get_running_loop()
        self._on_expire = on_expire
        self._handle: Optional[asyncio.TimerHandle] = None
        self.window_sec = window_sec
        self.expires_at = 0.0
        self.extensions = 0
        self._schedule(window_sec)

    def _schedule(self, window_sec: float) -> None:
        self.window_sec = window_sec
        self.expires_at = self._loop.time() + window_sec
        self._handle = self._loop.call_at(self.expires_at, self._fire)

    def _fire(self) -> None:
        self._handle = None
        self._on_expire()

    def extend(self, window_sec: float) -> None:
        self.cancel()
        self.extensions += 1
        self._schedule(window_sec)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    @property
    def active(self) -> bool:
        return self._handle is not None

    @property
    def remaining(self) -> float:
        if self._handle is None:
            return 0.0
        return max(0.0, self.expires_at - self._loop.time())
