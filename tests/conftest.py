"""Shared fixtures: a scripted Meld root object and WebChannel frame builders."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

import pytest

from meld_bridge.core import ConnectionStatus, Endpoint, MeldInstance, Transport, WebChannel
from meld_bridge.host import DescriptorStore


# ─── Meld root object description ────────────────────────────────────────────

ROOT_METHODS = [
    ["toggleRecord", 5],
    ["toggleStream", 6],
    ["showScene", 7],
    ["setStagedScene", 8],
    ["showStagedScene", 9],
    ["toggleMute", 10],
    ["toggleMonitor", 11],
    ["toggleLayer", 12],
    ["toggleEffect", 13],
    ["setGain", 14],
    ["sendCommand", 15],
]
ROOT_SIGNALS = [["destroyed", 0], ["gainUpdated", 21]]

# notify signal indexes, as Meld publishes them
SESSION_CHANGED = 20
IS_RECORDING_CHANGED = 22
IS_STREAMING_CHANGED = 23
CURRENT_SCENE_CHANGED = 24

# property indexes
IS_RECORDING = 1
IS_STREAMING = 2
SESSION = 3
CURRENT_SCENE = 4

INTRO_OUTRO = {
    "A": {"type": "scene", "name": "Intro (abc12345)", "index": 0, "current": True},
    "B": {"type": "scene", "name": "Outro", "index": 1},
    "mic": {"type": "track", "name": "Mic"},
}


def meld_description(
    items: Optional[dict] = None,
    recording: bool = False,
    streaming: bool = False,
    current_scene: Optional[str] = None,
    methods: Optional[list] = None,
    signals: Optional[list] = None,
) -> dict:
    return {
        "methods": ROOT_METHODS if methods is None else methods,
        "signals": ROOT_SIGNALS if signals is None else signals,
        "properties": [
            [IS_RECORDING, "isRecording", [1, IS_RECORDING_CHANGED], recording],
            [IS_STREAMING, "isStreaming", [1, IS_STREAMING_CHANGED], streaming],
            [SESSION, "session", [1, SESSION_CHANGED], {"items": items} if items is not None else None],
            [CURRENT_SCENE, "currentScene", [1, CURRENT_SCENE_CHANGED], current_scene],
        ],
        "enums": {},
    }


class Frames:
    """JSON text of the frames Meld sends."""

    @staticmethod
    def handshake(objects: dict, request_id: int = 0) -> str:
        return json.dumps({"type": 10, "id": request_id, "data": objects})

    @staticmethod
    def response(request_id: int, data: Any = None) -> str:
        return json.dumps({"type": 10, "id": request_id, "data": data})

    @staticmethod
    def signal(object_id: str, index: int, *args: Any) -> str:
        return json.dumps({"type": 1, "object": object_id, "signal": index, "args": list(args)})

    @staticmethod
    def property_update(object_id: str, signals: dict, properties: dict) -> str:
        return json.dumps({
            "type": 2,
            "data": [{
                "object": object_id,
                "signals": {str(k): v for k, v in signals.items()},
                "properties": {str(k): v for k, v in properties.items()},
            }],
        })

    @classmethod
    def recording(cls, active: bool) -> str:
        return cls.property_update("meld", {IS_RECORDING_CHANGED: [active]}, {IS_RECORDING: active})

    @classmethod
    def current_scene(cls, scene_id: str) -> str:
        return cls.property_update("meld", {CURRENT_SCENE_CHANGED: [scene_id]}, {CURRENT_SCENE: scene_id})

    @classmethod
    def session(cls, items: dict) -> str:
        return cls.property_update("meld", {SESSION_CHANGED: []}, {SESSION: {"items": items}})


@pytest.fixture
def frames():
    return Frames


@pytest.fixture
def describe():
    return meld_description


@pytest.fixture
def open_channel():
    """Factory: a WebChannel that has completed its handshake. Call inside a running loop."""
    def _open(description: Optional[dict] = None, **kwargs):
        sent: list[dict] = []
        channel = WebChannel(sent.append, **kwargs)
        channel.start()
        channel.handle_message(Frames.handshake({"meld": description or meld_description()}))
        assert channel.ready
        return channel, sent
    return _open


# ─── Instance over a scripted transport ──────────────────────────────────────

class ScriptedTransport(Transport):
    """Transport that never opens a socket; tests drive its events by hand."""

    def __init__(self):
        super().__init__()
        self.sent: list[dict] = []
        self.connected_to: list[Endpoint] = []
        self.aborted: list[str] = []

    def connect(self, endpoint: Endpoint) -> None:
        self.endpoint = endpoint
        self.connected_to.append(endpoint)

    def close(self) -> None:
        self._torn_down = True

    def abort(self, reason: str) -> None:
        self.aborted.append(reason)

    def send(self, payload: Any) -> bool:
        self.sent.append(payload)
        return True

    # events

    def open(self) -> None:
        self._set_status(ConnectionStatus.OK)
        self._emit(self._open_listeners)

    def deliver(self, text: str) -> None:
        self._emit(self._message_listeners, text)

    def drop(self) -> None:
        self._set_status(ConnectionStatus.DISCONNECTED)
        self._emit(self._close_listeners)

    def invocations(self) -> list[dict]:
        return [m for m in self.sent if m.get("type") == 6]


@pytest.fixture
def scripted_instance():
    """Factory: (instance, transport, store). Call inside a running loop."""
    def _build(description: Optional[dict] = None, handshake: bool = True):
        store = DescriptorStore()
        transport = ScriptedTransport()
        instance = MeldInstance(store, Endpoint("127.0.0.1", 13376), transport=transport)
        instance.start()
        if handshake:
            transport.open()
            transport.deliver(Frames.handshake({"meld": description or meld_description(items=INTRO_OUTRO)}))
        return instance, transport, store
    return _build


async def wait_until(predicate, timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def wait():
    return wait_until


@pytest.fixture
def intro_outro():
    return json.loads(json.dumps(INTRO_OUTRO))
