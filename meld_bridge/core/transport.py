"""
core/transport.py — Persistent WebSocket transport with reconnect & event hooks.

The transport owns exactly one socket at a time. It knows nothing about the
messages it carries: text goes out through send(), frames come back through
the on_message listeners, and lifecycle changes are reported through
on_open / on_close / on_error / on_status.

Reconnect model:
  - a close that was not requested by the owner schedules ONE reconnect
    after `reconnect_interval` seconds (multiplied by `reconnect_backoff`
    after every failed attempt, capped at `max_reconnect_interval`)
  - close() / connect() cancel any pending reconnect before doing anything
    else, so a teardown can never race a timer-driven reconnect
  - every socket task carries a generation number; a superseded task exits
    silently instead of reporting a close for a connection nobody owns
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Union

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from meld_bridge.errors import TransportError

log = logging.getLogger(__name__)

Listener = Callable[..., Any]


class ConnectionStatus(str, Enum):
    CONNECTING = "connecting"
    OK = "ok"
    DISCONNECTED = "disconnected"
    ERROR = "error"


@dataclass(frozen=True)
class Endpoint:
    host: str
    port: int

    def __post_init__(self) -> None:
        if not self.host:
            raise ValueError("Endpoint host must not be empty")
        if not 1 <= int(self.port) <= 65535:
            raise ValueError(f"Endpoint port out of range: {self.port}")

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"


def decode_frame(frame: Union[str, bytes, bytearray, memoryview]) -> str:
    """Return an inbound frame as text; binary frames are decoded as UTF-8."""
    if isinstance(frame, str):
        return frame
    return bytes(frame).decode("utf-8", errors="replace")


class Transport:
    def __init__(
        self,
        reconnect_interval: float = 3.0,
        reconnect_backoff: float = 1.0,
        max_reconnect_interval: float = 30.0,
        max_reconnect_attempts: int = 0,
        open_timeout: float = 10.0,
    ):
        self.reconnect_interval = reconnect_interval
        self.reconnect_backoff = reconnect_backoff
        self.max_reconnect_interval = max_reconnect_interval
        self.max_reconnect_attempts = max_reconnect_attempts
        self.open_timeout = open_timeout

        self.endpoint: Optional[Endpoint] = None
        self.status = ConnectionStatus.DISCONNECTED
        self.status_reason = ""

        self._ws: Optional[ClientConnection] = None
        self._outbox: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._generation = 0
        self._torn_down = True
        self._attempts = 0
        self._delay = reconnect_interval

        self._open_listeners: list[Listener] = []
        self._message_listeners: list[Listener] = []
        self._close_listeners: list[Listener] = []
        self._error_listeners: list[Listener] = []
        self._status_listeners: list[Listener] = []

    # ── Event subscriptions ───────────────────────────────────────────

    def on_open(self, callback: Callable[[], Any]) -> None:
        self._open_listeners.append(callback)

    def on_message(self, callback: Callable[[str], Any]) -> None:
        self._message_listeners.append(callback)

    def on_close(self, callback: Callable[[], Any]) -> None:
        self._close_listeners.append(callback)

    def on_error(self, callback: Callable[[TransportError], Any]) -> None:
        self._error_listeners.append(callback)

    def on_status(self, callback: Callable[[ConnectionStatus, str], Any]) -> None:
        """Callback receives (status, reason) on every status transition."""
        self._status_listeners.append(callback)

    def _emit(self, listeners: list[Listener], *args: Any) -> None:
        for cb in list(listeners):
            try:
                cb(*args)
            except Exception:
                log.exception("Transport listener error")

    def _set_status(self, status: ConnectionStatus, reason: str = "") -> None:
        self.status = status
        self.status_reason = reason
        self._emit(self._status_listeners, status, reason)

    # ── Connection ────────────────────────────────────────────────────

    def is_connected(self) -> bool:
        return self._ws is not None

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    def connect(self, endpoint: Endpoint) -> None:
        """Open a connection to `endpoint`, replacing any existing one."""
        self._teardown()
        self.endpoint = endpoint
        self._torn_down = False
        self._attempts = 0
        self._delay = self.reconnect_interval
        self._start()

    def close(self) -> None:
        """Explicit teardown: no reconnect will follow."""
        self._torn_down = True
        self._teardown()

    async def aclose(self) -> None:
        task = self._task
        self.close()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def abort(self, reason: str) -> None:
        """Fail the live connection and fall back to the reconnect schedule."""
        log.error(f"Connection aborted: {reason}")
        self._set_status(ConnectionStatus.ERROR, reason)
        self._emit(self._error_listeners, TransportError(reason))
        self._teardown()
        self._schedule_reconnect()

    def _start(self) -> None:
        self._generation += 1
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(self.endpoint, self._generation))

    def _teardown(self) -> None:
        self._cancel_reconnect()
        self._generation += 1
        task, self._task = self._task, None
        live = task is not None and not task.done()
        if task is not None:
            task.cancel()
        self._ws = None
        self._outbox = None
        if live:
            if self.status is not ConnectionStatus.ERROR:
                self._set_status(ConnectionStatus.DISCONNECTED)
            self._emit(self._close_listeners)

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    async def _run(self, endpoint: Endpoint, generation: int) -> None:
        self._set_status(ConnectionStatus.CONNECTING)
        log.info(f"Connecting to Meld: {endpoint.url}")
        writer: Optional[asyncio.Task] = None
        try:
            async with connect(
                endpoint.url,
                open_timeout=self.open_timeout,
                max_size=None,
                compression=None,
            ) as ws:
                outbox: asyncio.Queue = asyncio.Queue()
                self._ws = ws
                self._outbox = outbox
                writer = asyncio.get_running_loop().create_task(self._write_loop(ws, outbox))
                self._attempts = 0
                self._delay = self.reconnect_interval
                self._set_status(ConnectionStatus.OK)
                self._emit(self._open_listeners)
                async for frame in ws:
                    self._emit(self._message_listeners, decode_frame(frame))
        except ConnectionClosed as e:
            log.warning(f"WebSocket closed: {e}")
        except Exception as e:
            reason = str(e) or e.__class__.__name__
            log.error(f"WebSocket error: {reason}")
            if generation == self._generation:
                self._set_status(ConnectionStatus.ERROR, reason)
                self._emit(self._error_listeners, TransportError(reason))
        finally:
            if writer is not None:
                writer.cancel()

        if generation != self._generation:
            return
        self._task = None
        self._ws = None
        self._outbox = None
        self._handle_close()

    async def _write_loop(self, ws: ClientConnection, outbox: asyncio.Queue) -> None:
        while True:
            text = await outbox.get()
            try:
                await ws.send(text)
            except ConnectionClosed:
                return
            except Exception as e:
                log.error(f"Transport send failed: {e}")

    def _handle_close(self) -> None:
        if self.status is not ConnectionStatus.ERROR:
            self._set_status(ConnectionStatus.DISCONNECTED)
        log.warning("WebSocket closed")
        self._emit(self._close_listeners)
        self._schedule_reconnect()

    # ── Reconnect ─────────────────────────────────────────────────────

    def _schedule_reconnect(self) -> None:
        if self._torn_down or self.endpoint is None:
            return
        if self._reconnect_handle is not None:
            log.debug("Reconnect already pending; not scheduling another.")
            return
        if self.max_reconnect_attempts and self._attempts >= self.max_reconnect_attempts:
            log.error("Max Meld reconnect attempts reached.")
            return
        delay = self._delay
        self._attempts += 1
        self._delay = min(self._delay * self.reconnect_backoff, self.max_reconnect_interval)
        log.info(f"Reconnect attempt {self._attempts} in {delay:.1f}s...")
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(delay, self._reconnect)

    def _reconnect(self) -> None:
        self._reconnect_handle = None
        if self._torn_down or self.endpoint is None:
            return
        self._start()

    # ── Outbound ──────────────────────────────────────────────────────

    def send(self, payload: Any) -> bool:
        """Queue one text frame; objects are serialized to JSON first."""
        text = payload if isinstance(payload, str) else json.dumps(payload)
        if self._outbox is None:
            log.warning("Transport send skipped: not connected")
            return False
        self._outbox.put_nowait(text)
        return True
