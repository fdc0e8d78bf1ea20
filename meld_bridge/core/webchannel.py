"""
core/webchannel.py — Qt WebChannel client: dynamic proxies for remote objects.

Meld Studio publishes its scripting surface through Qt's WebChannel. Nothing
about that surface is hard-coded here: the handshake response lists every
published object with its methods, properties and signals, and each one is
materialized as a RemoteObject whose attributes resolve at runtime:

    root = channel.root                 # the "meld" object
    root.toggleRecord()                 # method stub → invokeMethod frame
    root.isRecording                    # cached property (pushed, never polled)
    root.isRecordingChanged.connect(cb) # signal subscription

Message types (fixed by the Qt WebChannel protocol):
  1 signal  2 propertyUpdate  3 init  4 idle  5 debug
  6 invokeMethod  7 connectToSignal  8 disconnectFromSignal
  9 setProperty  10 response

Every request that expects a reply carries a unique integer id; replies are
matched by that id only, so concurrent calls never cross-correlate and
replies for unknown or expired ids are dropped.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import IntEnum
from functools import partial
from typing import Any, Callable, Optional

from meld_bridge.errors import ProtocolError

log = logging.getLogger(__name__)

QOBJECT_MARKER = "__QObject*__"
_DESTROYED_SIGNALS = ("destroyed", "destroyed()", "destroyed(QObject*)")


class MessageType(IntEnum):
    SIGNAL = 1
    PROPERTY_UPDATE = 2
    INIT = 3
    IDLE = 4
    DEBUG = 5
    INVOKE_METHOD = 6
    CONNECT_TO_SIGNAL = 7
    DISCONNECT_FROM_SIGNAL = 8
    SET_PROPERTY = 9
    RESPONSE = 10


@dataclass
class _PendingCall:
    future: asyncio.Future
    callback: Optional[Callable[[Any], Any]]
    timer: Optional[asyncio.TimerHandle]


class RemoteSignal:
    """Observer list for one remote signal; listeners run serially, in order."""

    def __init__(self, owner: "RemoteObject", name: str, index: int, notify: bool = False):
        self.owner = owner
        self.name = name
        self.index = index
        self.notify = notify
        self._listeners: list[Callable] = []

    def __repr__(self) -> str:
        return f"<RemoteSignal {self.owner.id}.{self.name}>"

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def _needs_subscription(self) -> bool:
        # Property notify signals arrive inside propertyUpdate frames and
        # destroyed is always delivered.
        return not self.notify and self.name not in _DESTROYED_SIGNALS

    def connect(self, listener: Callable) -> None:
        if not callable(listener):
            raise TypeError(f"Cannot connect {self!r} to non-callable {listener!r}")
        self._listeners.append(listener)
        if self._needs_subscription() and len(self._listeners) == 1:
            self.owner._channel._send({
                "type": MessageType.CONNECT_TO_SIGNAL.value,
                "object": self.owner.id,
                "signal": self.index,
            })

    def disconnect(self, listener: Callable) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            log.warning(f"{self!r}: listener was not connected")
            return
        if self._needs_subscription() and not self._listeners:
            self.owner._channel._send({
                "type": MessageType.DISCONNECT_FROM_SIGNAL.value,
                "object": self.owner.id,
                "signal": self.index,
            })

    def _emit(self, args: list) -> None:
        for listener in list(self._listeners):
            try:
                listener(*args)
            except Exception:
                log.exception(f"Listener for {self.owner.id}.{self.name} failed")

    def _clear(self) -> None:
        self._listeners.clear()


class RemoteObject:
    """Local proxy for one published remote object, valid for one handshake."""

    def __init__(self, channel: "WebChannel", object_id: str, data: dict):
        self._channel = channel
        self.id = object_id
        self._valid = True
        self._methods: dict[str, Any] = {}
        self._property_index: dict[str, int] = {}
        self._property_cache: dict[int, Any] = {}
        self._signals: dict[str, RemoteSignal] = {}
        self._signals_by_index: dict[int, RemoteSignal] = {}
        self.enums: dict[str, Any] = dict(data.get("enums") or {})

        for name, index in data.get("methods") or []:
            # Signature-style names are addressed by index, plain names by name.
            key = index if name.endswith(")") else name
            self._methods[name] = key
            self._methods.setdefault(name.split("(", 1)[0], key)

        for name, index in data.get("signals") or []:
            self._add_signal(name, index)

        for index, name, notify, value in data.get("properties") or []:
            self._property_index[name] = index
            self._property_cache[index] = value
            if notify:
                signal_name = notify[0]
                if signal_name == 1:
                    signal_name = f"{name}Changed"
                self._add_signal(signal_name, notify[1], notify=True)

    def __repr__(self) -> str:
        state = "" if self._valid else " (invalidated)"
        return f"<RemoteObject {self.id}{state}>"

    def _add_signal(self, name: str, index: int, notify: bool = False) -> None:
        signal = RemoteSignal(self, name, index, notify)
        self._signals[name] = signal
        self._signals.setdefault(name.split("(", 1)[0], signal)
        self._signals_by_index[index] = signal

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        if name in self._methods:
            return partial(self.call, name)
        if name in self._signals:
            return self._signals[name]
        if name in self._property_index:
            return self._property_cache.get(self._property_index[name])
        raise AttributeError(f"Remote object '{self.id}' has no member '{name}'")

    # ── Introspection ─────────────────────────────────────────────────

    @property
    def valid(self) -> bool:
        return self._valid

    @property
    def method_names(self) -> list[str]:
        return sorted(self._methods)

    @property
    def property_names(self) -> list[str]:
        return sorted(self._property_index)

    @property
    def signal_names(self) -> list[str]:
        return sorted(self._signals)

    def has_method(self, name: str) -> bool:
        return name in self._methods

    def has_property(self, name: str) -> bool:
        return name in self._property_index

    def signal(self, name: str) -> Optional[RemoteSignal]:
        return self._signals.get(name)

    def property(self, name: str, default: Any = None) -> Any:
        index = self._property_index.get(name)
        if index is None:
            return default
        return self._property_cache.get(index, default)

    # ── Invocation ────────────────────────────────────────────────────

    def call(self, method: str, *args: Any, callback: Optional[Callable[[Any], Any]] = None) -> asyncio.Future:
        """Invoke a remote method; the returned future resolves with the reply."""
        if not self._valid:
            raise ProtocolError(f"Remote object '{self.id}' is no longer valid")
        key = self._methods.get(method)
        if key is None:
            raise ProtocolError(f"Remote object '{self.id}' has no method '{method}'")
        wire_args = [{"id": a.id} if isinstance(a, RemoteObject) else a for a in args]
        return self._channel._invoke(self.id, key, wire_args, callback)

    # ── Inbound updates ───────────────────────────────────────────────

    def _signal_emitted(self, index: int, args: list) -> None:
        signal = self._signals_by_index.get(index)
        if signal is None:
            log.debug(f"{self.id}: ignoring unknown signal index {index}")
            return
        signal._emit(args)

    def _property_update(self, signals: dict, properties: dict) -> None:
        for index, value in properties.items():
            self._property_cache[int(index)] = self._channel.unwrap(value)
        for index, args in signals.items():
            self._signal_emitted(int(index), self._channel.unwrap(args or []))

    def _unwrap_properties(self) -> None:
        for index, value in list(self._property_cache.items()):
            self._property_cache[index] = self._channel.unwrap(value)

    def _invalidate(self) -> None:
        self._valid = False
        for signal in self._signals.values():
            signal._clear()


class WebChannel:
    """
    One WebChannel session over an already-open transport.

    `send` receives plain dicts; the transport owns serialization. The
    channel lives for exactly one connection: after close() (or a failed
    handshake) every RemoteObject it produced is invalidated.
    """

    def __init__(
        self,
        send: Callable[[dict], Any],
        root_object: str = "meld",
        call_timeout: Optional[float] = 10.0,
        handshake_timeout: Optional[float] = 5.0,
    ):
        self._send_raw = send
        self.root_object = root_object
        self.call_timeout = call_timeout
        self.handshake_timeout = handshake_timeout

        self.objects: dict[str, RemoteObject] = {}
        self._pending: dict[int, _PendingCall] = {}
        self._next_id = 0
        self._init_id: Optional[int] = None
        self._handshake_timer: Optional[asyncio.TimerHandle] = None
        self._ready = False
        self._closed = False
        self._ready_listeners: list[Callable[["WebChannel"], Any]] = []
        self._failure_listeners: list[Callable[[ProtocolError], Any]] = []

    def on_ready(self, callback: Callable[["WebChannel"], Any]) -> None:
        self._ready_listeners.append(callback)

    def on_failure(self, callback: Callable[[ProtocolError], Any]) -> None:
        self._failure_listeners.append(callback)

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def root(self) -> Optional[RemoteObject]:
        return self.objects.get(self.root_object) if self._ready else None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _allocate_id(self) -> int:
        request_id = self._next_id
        self._next_id += 1
        return request_id

    def _send(self, message: dict) -> None:
        if self._closed:
            log.debug(f"WebChannel closed; dropping outbound {message.get('type')}")
            return
        self._send_raw(message)

    # ── Handshake ─────────────────────────────────────────────────────

    def start(self) -> None:
        self._init_id = self._allocate_id()
        self._send({"type": MessageType.INIT.value, "id": self._init_id})
        if self.handshake_timeout:
            loop = asyncio.get_running_loop()
            self._handshake_timer = loop.call_later(self.handshake_timeout, self._handshake_expired)

    def _handshake_expired(self) -> None:
        self._handshake_timer = None
        if not self._ready:
            self.fail(ProtocolError(f"No handshake response within {self.handshake_timeout}s"))

    def _complete_handshake(self, message: Any) -> None:
        if (
            not isinstance(message, dict)
            or message.get("type") != MessageType.RESPONSE
            or message.get("id") != self._init_id
            or not isinstance(message.get("data"), dict)
        ):
            raise ProtocolError(f"Unexpected handshake response: {str(message)[:200]}")

        for name, data in message["data"].items():
            if not isinstance(data, dict):
                raise ProtocolError(f"Malformed description for remote object '{name}'")
            try:
                self.objects[name] = RemoteObject(self, name, data)
            except (TypeError, ValueError) as e:
                raise ProtocolError(f"Malformed description for remote object '{name}': {e}") from e

        if self.root_object not in self.objects:
            raise ProtocolError(
                f"Remote object '{self.root_object}' not published. Available: {list(self.objects)}"
            )

        for obj in list(self.objects.values()):
            obj._unwrap_properties()

        if self._handshake_timer is not None:
            self._handshake_timer.cancel()
            self._handshake_timer = None
        self._ready = True
        log.info(f"WebChannel ready: {', '.join(sorted(self.objects))}")
        for cb in list(self._ready_listeners):
            try:
                cb(self)
            except Exception:
                log.exception("WebChannel ready listener failed")
        self._send({"type": MessageType.IDLE.value})

    def fail(self, error: ProtocolError) -> None:
        if self._closed:
            return
        log.error(f"WebChannel failed: {error}")
        self.close()
        for cb in list(self._failure_listeners):
            try:
                cb(error)
            except Exception:
                log.exception("WebChannel failure listener failed")

    # ── Inbound ───────────────────────────────────────────────────────

    def handle_message(self, text: str) -> None:
        if self._closed:
            return
        try:
            message = json.loads(text)
        except ValueError as e:
            if not self._ready:
                self.fail(ProtocolError(f"Handshake response is not valid JSON: {e}"))
            else:
                log.error(f"Discarding unparseable frame: {e}")
            return

        if not self._ready:
            try:
                self._complete_handshake(message)
            except ProtocolError as e:
                self.fail(e)
            return

        if not isinstance(message, dict):
            log.error(f"Discarding non-object frame: {str(message)[:200]}")
            return

        msg_type = message.get("type")
        if msg_type == MessageType.SIGNAL:
            self._handle_signal(message)
        elif msg_type == MessageType.RESPONSE:
            self._handle_response(message)
        elif msg_type == MessageType.PROPERTY_UPDATE:
            self._handle_property_update(message)
        else:
            log.debug(f"Ignoring message of type {msg_type}")

    def _lookup(self, object_id: Any) -> Optional[RemoteObject]:
        obj = self.objects.get(object_id)
        if obj is None:
            log.warning(f"Frame references unknown remote object '{object_id}'")
        return obj

    def _handle_signal(self, message: dict) -> None:
        obj = self._lookup(message.get("object"))
        if obj is not None:
            obj._signal_emitted(message.get("signal"), self.unwrap(message.get("args") or []))

    def _handle_response(self, message: dict) -> None:
        pending = self._pending.pop(message.get("id"), None)
        if pending is None:
            log.debug(f"Discarding response for unknown request id {message.get('id')}")
            return
        if pending.timer is not None:
            pending.timer.cancel()
        result = self.unwrap(message.get("data"))
        if pending.callback is not None:
            try:
                pending.callback(result)
            except Exception:
                log.exception("Remote call callback failed")
        if not pending.future.done():
            pending.future.set_result(result)

    def _handle_property_update(self, message: dict) -> None:
        for entry in message.get("data") or []:
            if not isinstance(entry, dict):
                log.debug(f"Skipping malformed property update entry: {entry!r}")
                continue
            obj = self._lookup(entry.get("object"))
            if obj is not None:
                obj._property_update(entry.get("signals") or {}, entry.get("properties") or {})
        self._send({"type": MessageType.IDLE.value})

    # ── Outbound calls ────────────────────────────────────────────────

    def _invoke(self, object_id: str, method: Any, args: list, callback: Optional[Callable]) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        request_id = self._allocate_id()
        future = loop.create_future()
        timer = None
        if self.call_timeout:
            timer = loop.call_later(self.call_timeout, self._expire_call, request_id)
        self._pending[request_id] = _PendingCall(future, callback, timer)
        self._send({
            "type": MessageType.INVOKE_METHOD.value,
            "object": object_id,
            "method": method,
            "args": args,
            "id": request_id,
        })
        return future

    def _expire_call(self, request_id: int) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        log.warning(f"Remote call {request_id} got no reply within {self.call_timeout}s; dropping it")
        pending.future.cancel()

    # ── QObject references ────────────────────────────────────────────

    def unwrap(self, value: Any) -> Any:
        """Replace QObject references in `value` with RemoteObject proxies."""
        if isinstance(value, list):
            return [self.unwrap(v) for v in value]
        if not isinstance(value, dict):
            return value
        if not value.get(QOBJECT_MARKER) or "id" not in value:
            return {k: self.unwrap(v) for k, v in value.items()}

        object_id = value["id"]
        existing = self.objects.get(object_id)
        if existing is not None:
            return existing
        if not value.get("data"):
            log.warning(f"Cannot unwrap unknown remote object '{object_id}'")
            return None

        obj = RemoteObject(self, object_id, value["data"])
        self.objects[object_id] = obj
        destroyed = obj.signal("destroyed")
        if destroyed is not None:
            destroyed.connect(lambda *_: self._forget(object_id))
        obj._unwrap_properties()
        return obj

    def _forget(self, object_id: str) -> None:
        obj = self.objects.pop(object_id, None)
        if obj is not None:
            obj._invalidate()

    # ── Teardown ──────────────────────────────────────────────────────

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._ready = False
        if self._handshake_timer is not None:
            self._handshake_timer.cancel()
            self._handshake_timer = None
        pending, self._pending = self._pending, {}
        for call in pending.values():
            if call.timer is not None:
                call.timer.cancel()
            call.future.cancel()
        if pending:
            log.info(f"Cancelled {len(pending)} unanswered remote call(s)")
        for obj in self.objects.values():
            obj._invalidate()
        self.objects.clear()
