"""
core/instance.py — The controlling context for one Meld connection.

Owns the Transport, the WebChannel of the current connection, the session
mirror and the command dispatcher, and pushes derived descriptors to the
host through five registration callbacks (full replacement every time):

    register_actions(actions)       register_feedbacks(feedbacks)
    register_presets(presets)       set_variables(values)
    set_connection_status(status, reason)

Flow per connection:
    transport open → WebChannel.start() → handshake → mirror.attach(root)
    → generate(state) → host callbacks → status ok
A failed handshake aborts the transport (status error, reconnect); a close
invalidates the channel and every proxy it produced.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Protocol, Sequence

from meld_bridge.commands.dispatcher import CommandDispatcher, parse_arguments
from meld_bridge.descriptors.generator import (
    ActionDescriptor,
    DerivedDescriptors,
    evaluate_feedback,
    feedback_style,
    generate,
)
from meld_bridge.state.mirror import SessionMirror, SessionState

from meld_bridge.errors import ProtocolError, StaleReferenceError
from .transport import ConnectionStatus, Endpoint, Transport
from .webchannel import RemoteObject, WebChannel

log = logging.getLogger(__name__)

# start/stop against a toggle-only remote: (toggle command, state flag, wanted value)
_OUTPUT_COMMANDS: dict[str, tuple[str, str, bool]] = {
    "startRecord": ("toggleRecord", "is_recording", True),
    "stopRecord": ("toggleRecord", "is_recording", False),
    "startStream": ("toggleStream", "is_streaming", True),
    "stopStream": ("toggleStream", "is_streaming", False),
}


class HostCallbacks(Protocol):
    def register_actions(self, actions: Sequence[Any]) -> None: ...
    def register_feedbacks(self, feedbacks: Sequence[Any]) -> None: ...
    def register_presets(self, presets: Sequence[Any]) -> None: ...
    def set_variables(self, values: Mapping[str, Any]) -> None: ...
    def set_connection_status(self, status: ConnectionStatus, reason: str = "") -> None: ...


class MeldInstance:
    def __init__(
        self,
        host: HostCallbacks,
        endpoint: Endpoint,
        root_object: str = "meld",
        call_timeout: Optional[float] = 10.0,
        handshake_timeout: Optional[float] = 5.0,
        transport: Optional[Transport] = None,
    ):
        self._host = host
        self.endpoint = endpoint
        self.root_object = root_object
        self.call_timeout = call_timeout
        self.handshake_timeout = handshake_timeout

        self.transport = transport or Transport()
        self.channel: Optional[WebChannel] = None
        self.mirror = SessionMirror(on_change=self._on_state_change)
        self.dispatcher = CommandDispatcher(lambda: self.root)
        self.descriptors: DerivedDescriptors = generate(self.mirror.state)
        self.status = ConnectionStatus.DISCONNECTED
        self.status_reason = ""
        self._started = False

        self.transport.on_open(self._on_transport_open)
        self.transport.on_message(self._on_transport_message)
        self.transport.on_close(self._on_transport_close)
        self.transport.on_status(self._on_transport_status)

    # ── Lifecycle ─────────────────────────────────────────────────────

    @property
    def root(self) -> Optional[RemoteObject]:
        if self.channel is None:
            return None
        return self.channel.root

    @property
    def ready(self) -> bool:
        return self.root is not None

    @property
    def state(self) -> SessionState:
        return self.mirror.state

    def start(self) -> None:
        """Publish the initial descriptors and open the connection."""
        self._started = True
        self._publish()
        self.transport.connect(self.endpoint)

    def update_config(self, host: str, port: int) -> bool:
        """Point at a new endpoint; returns True when a reconnect was triggered."""
        endpoint = Endpoint(host, int(port))
        if endpoint == self.endpoint and self._started:
            log.debug(f"Endpoint unchanged ({endpoint.url}); keeping connection")
            return False
        log.info(f"Endpoint changed → {endpoint.url}")
        self._close_channel()
        self.endpoint = endpoint
        if not self._started:
            return False
        self.transport.connect(endpoint)
        return True

    def destroy(self) -> None:
        self._started = False
        self._close_channel()
        self.transport.close()

    async def aclose(self) -> None:
        self._started = False
        self._close_channel()
        await self.transport.aclose()

    # ── Transport events ──────────────────────────────────────────────

    def _on_transport_status(self, status: ConnectionStatus, reason: str) -> None:
        if status is ConnectionStatus.OK:
            # The socket is up but nothing is usable until the handshake lands.
            self._set_status(ConnectionStatus.CONNECTING, "handshake")
            return
        self._set_status(status, reason)

    def _on_transport_open(self) -> None:
        self._close_channel()
        channel = WebChannel(
            self.transport.send,
            root_object=self.root_object,
            call_timeout=self.call_timeout,
            handshake_timeout=self.handshake_timeout,
        )
        channel.on_ready(self._on_channel_ready)
        channel.on_failure(self._on_channel_failure)
        self.channel = channel
        channel.start()

    def _on_transport_message(self, text: str) -> None:
        if self.channel is not None:
            self.channel.handle_message(text)

    def _on_transport_close(self) -> None:
        self._close_channel()

    def _close_channel(self) -> None:
        channel, self.channel = self.channel, None
        if channel is not None:
            channel.close()
        self.mirror.detach()

    # ── Channel events ────────────────────────────────────────────────

    def _on_channel_ready(self, channel: WebChannel) -> None:
        if channel is not self.channel:
            return
        log.info("Meld WebChannel ready")
        self.mirror.attach(channel.root)
        self._set_status(ConnectionStatus.OK)

    def _on_channel_failure(self, error: ProtocolError) -> None:
        self._close_channel()
        self.transport.abort(str(error))

    # ── Publishing ────────────────────────────────────────────────────

    def _on_state_change(self, state: SessionState) -> None:
        self.descriptors = generate(state)
        self._publish()

    def _publish(self) -> None:
        d = self.descriptors
        self._host.register_actions(d.actions)
        self._host.register_feedbacks(d.feedbacks)
        self._host.register_presets(d.presets)
        self._host.set_variables(dict(d.variables))

    def _set_status(self, status: ConnectionStatus, reason: str = "") -> None:
        self.status = status
        self.status_reason = reason
        self._host.set_connection_status(status, reason)

    # ── Actions & feedbacks ───────────────────────────────────────────

    def run_action(self, action_id: str, options: Optional[Mapping[str, Any]] = None) -> bool:
        """Execute one action descriptor; True when a command went out."""
        action = self.descriptors.action(action_id)
        if action is None:
            log.warning(f"Unknown action '{action_id}'")
            return False
        values = action.resolve(options)

        if "sceneId" in action.args:
            try:
                self.mirror.state.require_scene(str(values.get("sceneId") or ""))
            except StaleReferenceError as e:
                log.warning(f"{action_id}: {e}; ignoring")
                return False

        if action.command == "callMethod":
            method = str(values.get("method") or "").strip()
            if not method:
                log.warning("callMethod needs a method name")
                return False
            return self.dispatcher.dispatch(method, *parse_arguments(values.get("args")))

        if action.command in _OUTPUT_COMMANDS:
            return self._set_output(action.command)

        try:
            args = _positional_args(action, values)
        except ValueError as e:
            log.warning(f"{action_id}: {e}")
            return False
        return self.dispatcher.dispatch(action.command, *args)

    def _set_output(self, command: str) -> bool:
        if self.root is None or self.dispatcher.supports(command):
            return self.dispatcher.dispatch(command)
        toggle, flag, wanted = _OUTPUT_COMMANDS[command]
        if getattr(self.mirror.state, flag) == wanted:
            log.info(f"{command}: already {'on' if wanted else 'off'}")
            return False
        return self.dispatcher.dispatch(toggle)

    def evaluate_feedback(self, feedback_id: str, options: Optional[Mapping[str, Any]] = None) -> bool:
        return evaluate_feedback(self.mirror.state, feedback_id, options)

    def feedback_style(self, feedback_id: str, options: Optional[Mapping[str, Any]] = None):
        return feedback_style(self.mirror.state, feedback_id, options)


def _positional_args(action: ActionDescriptor, values: Mapping[str, Any]) -> list:
    kinds = {opt.id: opt.kind for opt in action.options}
    args = []
    for name in action.args:
        value = values.get(name)
        if kinds.get(name) == "number":
            try:
                value = float(value)
            except (TypeError, ValueError):
                raise ValueError(f"option '{name}' must be a number, got {value!r}") from None
        args.append(value)
    return args
