"""
tests/test_host.py — Descriptor store: replacement semantics and change fan-out.
Run with: pytest tests/ -v
"""

from meld_bridge.core import ConnectionStatus
from meld_bridge.descriptors import generate
from meld_bridge.host import DescriptorStore
from meld_bridge.state import SceneEntry, SessionState


def test_store_notifies_only_on_change():
    store = DescriptorStore()
    events = []
    store.subscribe(lambda event, payload: events.append(event))
    d = generate(SessionState(scenes=(SceneEntry("A", "Intro", 0),)))

    store.register_actions(d.actions)
    store.register_actions(generate(SessionState(scenes=(SceneEntry("A", "Intro", 0),))).actions)
    store.set_variables(d.variables)
    store.set_variables(dict(d.variables))

    assert events == ["actions", "variables"]


def test_store_payloads_are_json_ready():
    store = DescriptorStore()
    payloads = {}
    store.subscribe(lambda event, payload: payloads.__setitem__(event, payload))
    d = generate(SessionState(scenes=(SceneEntry("A", "Intro", 0),), current_scene_id="A"))

    store.register_presets(d.presets)
    store.set_connection_status(ConnectionStatus.ERROR, "refused")

    scene_preset = payloads["presets"][0]
    assert scene_preset["action"] == {"action_id": "showScene:A", "options": ()}
    assert scene_preset["style"]["text"] == "Intro"
    assert payloads["status"] == {"status": "error", "reason": "refused"}


def test_failing_listener_does_not_block_others():
    store = DescriptorStore()
    seen = []

    def broken(event, payload):
        raise RuntimeError("boom")

    store.subscribe(broken)
    store.subscribe(lambda event, payload: seen.append(event))

    store.set_connection_status(ConnectionStatus.CONNECTING)

    assert seen == ["status"]


def test_snapshot_and_unsubscribe():
    store = DescriptorStore()
    events = []
    listener = lambda event, payload: events.append(event)  # noqa: E731
    store.subscribe(listener)
    store.unsubscribe(listener)

    store.set_variables({"scene_count": 0})

    assert events == []
    snap = store.snapshot()
    assert snap["status"] == {"status": "disconnected", "reason": ""}
    assert snap["variables"] == {"scene_count": 0}
    assert snap["actions"] == []
