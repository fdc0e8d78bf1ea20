"""
tests/test_descriptors.py — Actions, feedbacks, presets and variables from SessionState.
Run with: pytest tests/ -v
"""

import logging

import pytest

from meld_bridge.descriptors import evaluate_feedback, feedback_style, generate
from meld_bridge.descriptors.generator import (
    BLACK,
    LIVE_RED,
    RECORD_RED,
    SCENE_PRESET_CATEGORY,
    UTILITY_PRESET_CATEGORY,
    WHITE,
)
from meld_bridge.state import SceneEntry, SessionState, parse_session_items


def _state(items, **kwargs) -> SessionState:
    scenes, current = parse_session_items(items)
    return SessionState(scenes=scenes, current_scene_id=current, **kwargs)


# ─── Generation ───────────────────────────────────────────────────────────────

def test_generate_is_idempotent(intro_outro):
    state = _state(intro_outro, is_recording=True)

    first = generate(state)
    second = generate(state)

    assert first == second
    assert [a.action_id for a in first.actions] == [a.action_id for a in second.actions]
    assert [p.name for p in first.presets] == [p.name for p in second.presets]


def test_intro_outro_scenario(intro_outro):
    d = generate(_state(intro_outro))

    scene_actions = [a for a in d.actions if a.command == "showScene"]
    assert [a.action_id for a in scene_actions] == ["showScene:A", "showScene:B"]
    assert [a.name for a in scene_actions] == ["Show Scene: Intro", "Show Scene: Outro"]

    scene_presets = [p for p in d.presets if p.category == SCENE_PRESET_CATEGORY]
    assert [p.style.text for p in scene_presets] == ["Intro", "Outro"]
    assert [p.action.action_id for p in scene_presets] == ["showScene:A", "showScene:B"]
    assert scene_presets[0].feedbacks[0].feedback_id == "sceneIsLive"
    assert dict(scene_presets[0].feedbacks[0].options) == {"sceneId": "A"}


def test_duplicate_names_get_one_action_and_preset_each():
    state = SessionState(scenes=(
        SceneEntry("cam-a", "Cam", 1),
        SceneEntry("cam-b", "Cam", 1),
    ))

    d = generate(state)

    assert [a.action_id for a in d.actions if a.command == "showScene"] == ["showScene:cam-a", "showScene:cam-b"]
    assert [p.action.action_id for p in d.presets if p.category == SCENE_PRESET_CATEGORY] == [
        "showScene:cam-a",
        "showScene:cam-b",
    ]


def test_utility_descriptors_exist_without_scenes():
    d = generate(SessionState())

    ids = [a.action_id for a in d.actions]
    for action_id in ("toggleRecord", "startRecord", "stopRecord", "toggleStream", "setGain", "callMethod"):
        assert action_id in ids
    assert [f.feedback_id for f in d.feedbacks] == ["labelSceneName", "sceneIsLive", "recordingOn", "streamingOn"]
    assert [p.name for p in d.presets] == ["Toggle Recording", "Toggle Streaming"]
    assert all(p.category == UTILITY_PRESET_CATEGORY for p in d.presets)


def test_scene_dropdown_tracks_scene_set(intro_outro):
    d = generate(_state(intro_outro))

    staged = d.action("setStagedScene")
    dropdown = staged.options[0]
    assert dropdown.kind == "dropdown"
    assert [(c.id, c.label) for c in dropdown.choices] == [("A", "Intro"), ("B", "Outro")]
    assert dropdown.default == "A"
    assert staged.defaults() == {"sceneId": "A"}


def test_variables(intro_outro):
    d = generate(_state(intro_outro, is_streaming=True))

    assert d.variables == {
        "current_scene_name": "Intro",
        "current_scene_id": "A",
        "is_recording": "OFF",
        "is_streaming": "ON",
        "scene_count": 2,
    }


# ─── Feedback evaluation ─────────────────────────────────────────────────────

def test_scene_is_live(intro_outro):
    state = _state(intro_outro)

    assert evaluate_feedback(state, "sceneIsLive", {"sceneId": "A"})
    assert not evaluate_feedback(state, "sceneIsLive", {"sceneId": "B"})
    assert not evaluate_feedback(state, "sceneIsLive", {})


def test_stale_scene_feedback_is_inactive(intro_outro):
    state = _state(intro_outro)

    assert not evaluate_feedback(state, "sceneIsLive", {"sceneId": "deleted"})
    style = feedback_style(state, "sceneIsLive", {"sceneId": "deleted"})
    assert (style.bgcolor, style.color) == (BLACK, WHITE)


def test_output_feedbacks():
    state = SessionState(is_recording=True)

    assert evaluate_feedback(state, "recordingOn")
    assert not evaluate_feedback(state, "streamingOn")
    assert feedback_style(state, "recordingOn").bgcolor == RECORD_RED


def test_feedback_style_overrides(intro_outro):
    state = _state(intro_outro)
    options = {"sceneId": "A", "activeBg": 0x123456, "activeFg": 0}

    style = feedback_style(state, "sceneIsLive", options)
    assert (style.bgcolor, style.color) == (0x123456, 0)

    assert feedback_style(state, "sceneIsLive", {"sceneId": "A"}).bgcolor == LIVE_RED


def test_unknown_feedback_is_inactive(caplog):
    with caplog.at_level(logging.WARNING):
        assert not evaluate_feedback(SessionState(), "nope")
    assert "Unknown feedback 'nope'" in caplog.text


@pytest.mark.parametrize("feedback_id", ["recordingOn", "streamingOn", "sceneIsLive"])
def test_feedback_descriptors_expose_color_options(feedback_id):
    feedback = generate(SessionState()).feedback(feedback_id)

    option_ids = [o.id for o in feedback.options]
    assert option_ids[-4:] == ["activeBg", "activeFg", "inactiveBg", "inactiveFg"]


# ─── Scene label ──────────────────────────────────────────────────────────────

def test_scene_label_live_and_idle(intro_outro):
    state = _state(intro_outro)

    live = feedback_style(state, "labelSceneName", {"sceneId": "A"})
    assert (live.text, live.bgcolor, live.color) == ("Intro", LIVE_RED, WHITE)
    assert evaluate_feedback(state, "labelSceneName", {"sceneId": "A"})

    idle = feedback_style(state, "labelSceneName", {"sceneId": "B", "idleBg": 0x222222})
    assert (idle.text, idle.bgcolor, idle.color) == ("Outro", 0x222222, WHITE)


def test_scene_label_without_highlight_stays_idle(intro_outro):
    state = _state(intro_outro)
    options = {"sceneId": "A", "highlightLive": False, "liveBg": 0x00FF00}

    style = feedback_style(state, "labelSceneName", options)

    assert (style.text, style.bgcolor) == ("Intro", BLACK)
    assert not evaluate_feedback(state, "labelSceneName", options)


def test_scene_label_stale_id_shows_raw_id(intro_outro):
    state = _state(intro_outro)

    style = feedback_style(state, "labelSceneName", {"sceneId": "deleted"})

    assert (style.text, style.bgcolor, style.color) == ("deleted", BLACK, WHITE)
    assert feedback_style(state, "labelSceneName", {}).text is None


def test_scene_presets_carry_label_feedback(intro_outro):
    d = generate(_state(intro_outro))

    label = d.feedback("labelSceneName")
    assert label.kind == "advanced"
    assert [o.id for o in label.options] == ["sceneId", "highlightLive", "idleBg", "idleFg", "liveBg", "liveFg"]

    for preset in (p for p in d.presets if p.category == SCENE_PRESET_CATEGORY):
        refs = {ref.feedback_id: dict(ref.options) for ref in preset.feedbacks}
        assert refs["labelSceneName"]["sceneId"] == refs["sceneIsLive"]["sceneId"]
        assert refs["labelSceneName"]["highlightLive"] is True


def test_scene_action_binds_its_scene(intro_outro):
    action = generate(_state(intro_outro)).action("showScene:A")

    assert action.options == ()
    assert action.resolve({"sceneId": "B"}) == {"sceneId": "A"}
