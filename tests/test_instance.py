"""
tests/test_instance.py — Meld instance: lifecycle, actions, host callbacks.
Run with: pytest tests/ -v
"""

import json
from unittest.mock import MagicMock

import pytest
from websockets.asyncio.server import serve

from meld_bridge.core import ConnectionStatus, Endpoint, MeldInstance, Transport
from meld_bridge.host import DescriptorStore


# ─── Lifecycle ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_start_publishes_before_connecting(scripted_instance):
    instance, transport, store = scripted_instance(handshake=False)

    assert transport.connected_to == [Endpoint("127.0.0.1", 13376)]
    assert [p.name for p in store.presets] == ["Toggle Recording", "Toggle Streaming"]
    assert store.variables["scene_count"] == 0
    assert store.status is ConnectionStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_handshake_brings_instance_up(scripted_instance):
    instance, transport, store = scripted_instance()

    assert instance.ready
    assert store.status is ConnectionStatus.OK
    assert transport.sent[0] == {"type": 3, "id": 0}
    assert [a.action_id for a in store.actions[:2]] == ["showScene:A", "showScene:B"]
    assert store.variables["current_scene_name"] == "Intro"


@pytest.mark.asyncio
async def test_socket_open_is_reported_as_handshaking(scripted_instance):
    instance, transport, store = scripted_instance(handshake=False)

    transport.open()

    assert store.status is ConnectionStatus.CONNECTING
    assert store.status_reason == "handshake"
    assert not instance.ready


@pytest.mark.asyncio
async def test_failed_handshake_aborts_transport(scripted_instance, frames):
    instance, transport, store = scripted_instance(handshake=False)
    transport.open()

    transport.deliver(frames.handshake({"studio": {}}))

    assert len(transport.aborted) == 1
    assert "not published" in transport.aborted[0]
    assert instance.channel is None


@pytest.mark.asyncio
async def test_close_invalidates_proxies(scripted_instance):
    instance, transport, store = scripted_instance()
    root = instance.root
    future = root.toggleRecord()

    transport.drop()

    assert future.cancelled()
    assert not root.valid
    assert instance.root is None
    assert store.status is ConnectionStatus.DISCONNECTED
    # last known session stays visible while reconnecting
    assert store.variables["scene_count"] == 2


@pytest.mark.asyncio
async def test_update_config_reconnects_only_on_change(scripted_instance):
    instance, transport, store = scripted_instance()

    assert instance.update_config("127.0.0.1", 13376) is False
    assert instance.ready

    assert instance.update_config("10.0.0.5", 13376) is True
    assert transport.connected_to[-1] == Endpoint("10.0.0.5", 13376)
    assert instance.root is None


# ─── Actions ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_toggle_record_round_trip(scripted_instance, frames):
    instance, transport, store = scripted_instance()
    assert store.variables["is_recording"] == "OFF"

    assert instance.run_action("toggleRecord")
    call = transport.invocations()[-1]
    assert call["method"] == "toggleRecord"

    transport.deliver(frames.response(call["id"]))
    transport.deliver(frames.recording(True))

    assert instance.evaluate_feedback("recordingOn")
    assert store.variables["is_recording"] == "ON"


@pytest.mark.asyncio
async def test_scene_action_sends_scene_id(scripted_instance):
    instance, transport, _ = scripted_instance()

    assert instance.run_action("showScene:B")

    call = transport.invocations()[-1]
    assert (call["method"], call["args"]) == ("showScene", ["B"])


@pytest.mark.asyncio
async def test_scene_action_ignores_caller_scene_id(scripted_instance):
    instance, transport, _ = scripted_instance()

    assert instance.run_action("showScene:A", {"sceneId": "B"})

    call = transport.invocations()[-1]
    assert (call["method"], call["args"]) == ("showScene", ["A"])


@pytest.mark.asyncio
async def test_stale_scene_action_is_a_noop(scripted_instance):
    instance, transport, _ = scripted_instance()

    assert not instance.run_action("setStagedScene", {"sceneId": "deleted"})
    assert transport.invocations() == []


@pytest.mark.asyncio
async def test_unknown_action_is_rejected(scripted_instance):
    instance, transport, _ = scripted_instance()

    assert not instance.run_action("selfDestruct")
    assert transport.invocations() == []


@pytest.mark.asyncio
async def test_set_gain_coerces_number(scripted_instance):
    instance, transport, _ = scripted_instance()

    assert instance.run_action("setGain", {"trackId": "mic", "gain": "0.75"})
    assert transport.invocations()[-1]["args"] == ["mic", 0.75]

    assert not instance.run_action("setGain", {"trackId": "mic", "gain": "loud"})


@pytest.mark.asyncio
async def test_call_method_passes_arguments(describe, scripted_instance):
    methods = [["toggleRecord", 1], ["setVolume(QString,double)", 2]]
    instance, transport, _ = scripted_instance(describe(methods=methods))

    assert instance.run_action("callMethod", {"method": "setVolume", "args": '["mic", 0.2]'})
    call = transport.invocations()[-1]
    assert (call["method"], call["args"]) == (2, ["mic", 0.2])

    assert not instance.run_action("callMethod", {"method": ""})


@pytest.mark.asyncio
async def test_start_record_on_toggle_only_remote(describe, frames, scripted_instance):
    instance, transport, _ = scripted_instance(describe(methods=[["toggleRecord", 1]]))

    assert instance.run_action("startRecord")
    assert transport.invocations()[-1]["method"] == "toggleRecord"

    transport.deliver(frames.recording(True))
    assert not instance.run_action("startRecord")
    assert len(transport.invocations()) == 1

    assert instance.run_action("stopRecord")
    assert len(transport.invocations()) == 2


@pytest.mark.asyncio
async def test_start_record_prefers_direct_method(describe, scripted_instance):
    methods = [["toggleRecord", 1], ["startRecording", 2]]
    instance, transport, _ = scripted_instance(describe(methods=methods))

    assert instance.run_action("startRecord")
    assert transport.invocations()[-1]["method"] == "startRecording"


@pytest.mark.asyncio
async def test_action_before_handshake_is_dropped(scripted_instance):
    instance, transport, _ = scripted_instance(handshake=False)

    assert not instance.run_action("toggleRecord")
    assert transport.sent == []


# ─── Host callbacks ──────────────────────────────────────────────────────────

def test_host_receives_full_sets(intro_outro):
    host = MagicMock()
    instance = MeldInstance(host, Endpoint("127.0.0.1", 13376))

    instance.mirror.apply_items(intro_outro)

    actions = host.register_actions.call_args.args[0]
    assert [a.action_id for a in actions[:2]] == ["showScene:A", "showScene:B"]
    presets = host.register_presets.call_args.args[0]
    assert len(presets) == 4
    host.set_variables.assert_called_with({
        "current_scene_name": "Intro",
        "current_scene_id": "A",
        "is_recording": "OFF",
        "is_streaming": "OFF",
        "scene_count": 2,
    })


# ─── Loopback ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_loopback_against_fake_meld(describe, intro_outro, wait):
    async def fake_meld(ws):
        recording = False
        async for raw in ws:
            msg = json.loads(raw)
            if msg["type"] == 3:
                await ws.send(json.dumps({
                    "type": 10, "id": msg["id"], "data": {"meld": describe(items=intro_outro)},
                }))
            elif msg["type"] == 6 and msg["method"] == "toggleRecord":
                recording = not recording
                await ws.send(json.dumps({"type": 10, "id": msg["id"], "data": None}))
                await ws.send(json.dumps({
                    "type": 2,
                    "data": [{"object": "meld", "signals": {"22": [recording]}, "properties": {"1": recording}}],
                }))

    async with serve(fake_meld, "127.0.0.1", 0) as server:
        port = server.sockets[0].getsockname()[1]
        store = DescriptorStore()
        instance = MeldInstance(store, Endpoint("127.0.0.1", port), transport=Transport(reconnect_interval=60))
        instance.start()

        await wait(lambda: store.status is ConnectionStatus.OK)
        assert store.variables["scene_count"] == 2

        assert instance.run_action("toggleRecord")
        await wait(lambda: store.variables["is_recording"] == "ON")
        assert instance.evaluate_feedback("recordingOn")

        await instance.aclose()

    assert store.status is ConnectionStatus.DISCONNECTED
