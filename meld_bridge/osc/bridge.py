"""
osc/bridge.py — TouchOSC / OSC UDP bridge.

Listens for OSC messages on a UDP port and maps them to Meld actions.
Also sends feedback (current state) back to OSC clients on reply port.

Address map:
  /meld/scene/{sceneId}              → show scene
  /meld/record/{toggle|start|stop}   → recording
  /meld/stream/{toggle|start|stop}   → streaming
  /meld/action/{actionId} [json]     → any action, optional JSON options
  /meld/call/{method} args...        → raw method call on the root object
  /meld/state/query                  → resend state

Feedback messages sent back:
  /meld/state/scene           → current scene name ("" when none)
  /meld/state/recording       → 0 or 1
  /meld/state/streaming       → 0 or 1
  /meld/state/status          → connection status (ok, connecting, ...)
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

from pythonosc.dispatcher import Dispatcher
from pythonosc.osc_server import AsyncIOOSCUDPServer
from pythonosc.udp_client import SimpleUDPClient

from meld_bridge.descriptors.generator import scene_action_id

log = logging.getLogger(__name__)

_OUTPUT_VERBS = ("toggle", "start", "stop")


class OSCBridge:
    """
    UDP OSC server that translates TouchOSC / Open Sound Control messages
    into Meld actions, and sends feedback back to clients.
    """

    def __init__(
        self,
        listen_host: str = "0.0.0.0",
        listen_port: int = 9000,
        reply_port: int = 9001,
        client_host: str = "255.255.255.255",
        instance: Optional[Any] = None,
        store: Optional[Any] = None,
    ):
        self.listen_host = listen_host
        self.listen_port = listen_port
        self.reply_port = reply_port
        self.client_host = client_host

        self._instance = instance
        self._store = store

        self._server: Optional[Any] = None
        self._transport: Optional[Any] = None
        self._reply_client: Optional[Any] = None
        self._running = False

    # ──────────────────────────────────────────────────────────────────
    # Server lifecycle
    # ──────────────────────────────────────────────────────────────────

    async def start(self) -> None:
        dispatcher = Dispatcher()
        self._setup_dispatcher(dispatcher)

        self._server = AsyncIOOSCUDPServer(
            (self.listen_host, self.listen_port),
            dispatcher,
            asyncio.get_running_loop(),
        )
        self._transport, _ = await self._server.create_serve_endpoint()
        self._reply_client = SimpleUDPClient(self.client_host, self.reply_port, allow_broadcast=True)
        if self._store is not None:
            self._store.subscribe(self._on_store_event)
        self._running = True
        log.info(f"OSC bridge listening on {self.listen_host}:{self.listen_port} → reply to {self.client_host}:{self.reply_port}")

    async def stop(self) -> None:
        if self._store is not None:
            self._store.unsubscribe(self._on_store_event)
        if self._transport:
            self._transport.close()
        self._running = False
        log.info("OSC bridge stopped.")

    def is_running(self) -> bool:
        return self._running

    # ──────────────────────────────────────────────────────────────────
    # Dispatcher setup
    # ──────────────────────────────────────────────────────────────────

    def _setup_dispatcher(self, dispatcher: Dispatcher) -> None:
        dispatcher.map("/meld/scene/*", self._handle_scene)
        dispatcher.map("/meld/record/*", self._handle_output)
        dispatcher.map("/meld/stream/*", self._handle_output)
        dispatcher.map("/meld/action/*", self._handle_action)
        dispatcher.map("/meld/call/*", self._handle_call)
        dispatcher.map("/meld/state/query", self._handle_state_query)

        # Default fallback
        dispatcher.set_default_handler(self._handle_unknown)

    # ──────────────────────────────────────────────────────────────────
    # OSC message handlers
    # ──────────────────────────────────────────────────────────────────

    def _run_action(self, action_id: str, options: Optional[dict] = None) -> bool:
        if self._instance is None:
            log.warning(f"[OSC] No Meld instance; dropping {action_id}")
            return False
        return self._instance.run_action(action_id, options or {})

    @staticmethod
    def _tail(address: str, prefix_parts: int) -> str:
        return "/".join(address.strip("/").split("/")[prefix_parts:])

    def _handle_scene(self, address: str, *args) -> None:
        # /meld/scene/{sceneId}
        scene_id = self._tail(address, 2)
        if not scene_id:
            return
        log.info(f"[OSC] Scene: {scene_id}")
        self._run_action(scene_action_id(scene_id))

    def _handle_output(self, address: str, *args) -> None:
        # /meld/record/start → startRecord, /meld/stream/toggle → toggleStream
        parts = address.strip("/").split("/")
        if len(parts) != 3 or parts[2] not in _OUTPUT_VERBS:
            self._handle_unknown(address, *args)
            return
        action_id = f"{parts[2]}{parts[1].capitalize()}"
        log.info(f"[OSC] {action_id}")
        self._run_action(action_id)

    def _handle_action(self, address: str, *args) -> None:
        # /meld/action/{actionId} ['{"trackId": "abc"}']
        action_id = self._tail(address, 2)
        options: dict = {}
        if args and isinstance(args[0], str) and args[0].strip():
            try:
                parsed = json.loads(args[0])
            except ValueError:
                log.warning(f"[OSC] Options for {action_id} are not JSON: {args[0]!r}")
                return
            if not isinstance(parsed, dict):
                log.warning(f"[OSC] Options for {action_id} must be a JSON object")
                return
            options = parsed
        log.info(f"[OSC] Action: {action_id}")
        self._run_action(action_id, options)

    def _handle_call(self, address: str, *args) -> None:
        # /meld/call/{method} arg1 arg2 ...
        method = self._tail(address, 2)
        if not method:
            return
        if self._instance is None:
            log.warning(f"[OSC] No Meld instance; dropping call {method}")
            return
        log.info(f"[OSC] Call: {method}{args}")
        self._instance.dispatcher.dispatch(method, *args)

    def _handle_state_query(self, address: str, *args) -> None:
        self._send_state()

    def _handle_unknown(self, address: str, *args) -> None:
        log.debug(f"[OSC] Unhandled: {address} {args}")

    # ──────────────────────────────────────────────────────────────────
    # Feedback
    # ──────────────────────────────────────────────────────────────────

    def _on_store_event(self, event: str, payload: Any) -> None:
        if event == "variables":
            self._send_variables(payload)
        elif event == "status":
            self._send_osc("/meld/state/status", payload["status"])

    def _send_variables(self, variables: dict) -> None:
        self._send_osc("/meld/state/scene", variables.get("current_scene_name", ""))
        self._send_osc("/meld/state/recording", 1 if variables.get("is_recording") == "ON" else 0)
        self._send_osc("/meld/state/streaming", 1 if variables.get("is_streaming") == "ON" else 0)

    def _send_state(self) -> None:
        """Broadcast current state back to OSC clients."""
        if not self._reply_client or self._store is None:
            return
        self._send_variables(self._store.variables)
        self._send_osc("/meld/state/status", self._store.status.value)

    def _send_osc(self, address: str, value: Any) -> None:
        if self._reply_client:
            try:
                self._reply_client.send_message(address, value)
            except Exception as e:
                log.debug(f"OSC send error: {e}")
