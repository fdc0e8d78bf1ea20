"""
descriptors/generator.py — SessionState → actions, feedbacks, presets, variables.

Everything here is a pure function of SessionState. Descriptor sets are
rebuilt from scratch on every state change and compared by value, so two
generations from the same state are equal even though they are distinct
objects. Scenes are always listed in (order, name case-insensitive, id)
order, which SessionState already guarantees.

Default feedback styling:
  active   → white text on saturated red (0xCC0000); streaming uses green
  inactive → white text on black (0x000000)
Every boolean feedback exposes activeBg / activeFg / inactiveBg / inactiveFg
options so a host can override the pair per button. The advanced
"labelSceneName" feedback returns a whole style instead: the scene name as
text, with liveBg/liveFg while the scene is live and idleBg/idleFg otherwise.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from meld_bridge.errors import StaleReferenceError
from meld_bridge.state.mirror import SceneEntry, SessionState

log = logging.getLogger(__name__)

WHITE = 0xFFFFFF
BLACK = 0x000000
LIVE_RED = 0xCC0000
RECORD_RED = 0xFF0000
STREAM_GREEN = 0x00AA00

SCENE_ACTION_PREFIX = "showScene:"
SCENE_PRESET_CATEGORY = "Meld Studio / Scenes"
UTILITY_PRESET_CATEGORY = "Meld Studio / Utility"


# ──────────────────────────────────────────────────────────────────────────────
# Descriptor types
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Choice:
    id: str
    label: str


@dataclass(frozen=True)
class OptionField:
    kind: str                       # "dropdown" | "textinput" | "number" | "checkbox" | "colorpicker"
    id: str
    label: str
    default: Any = None
    choices: tuple[Choice, ...] = ()
    allow_custom: bool = False
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    step: Optional[float] = None


@dataclass(frozen=True)
class Style:
    bgcolor: int = BLACK
    color: int = WHITE
    text: Optional[str] = None
    size: str = "auto"


@dataclass(frozen=True)
class StylePair:
    active: Style
    inactive: Style = Style()


@dataclass(frozen=True)
class ActionDescriptor:
    action_id: str
    name: str
    command: str
    options: tuple[OptionField, ...] = ()
    args: tuple[str, ...] = ()      # option ids, in remote positional-argument order
    bound: tuple[tuple[str, Any], ...] = ()    # fixed values callers cannot override

    def defaults(self) -> dict:
        return {opt.id: opt.default for opt in self.options}

    def resolve(self, options: Optional[Mapping[str, Any]] = None) -> dict:
        return {**self.defaults(), **(options or {}), **dict(self.bound)}


@dataclass(frozen=True)
class FeedbackDescriptor:
    feedback_id: str
    name: str
    description: str
    styles: StylePair
    options: tuple[OptionField, ...] = ()
    kind: str = "boolean"


@dataclass(frozen=True)
class ActionRef:
    action_id: str
    options: tuple[tuple[str, Any], ...] = ()


@dataclass(frozen=True)
class FeedbackRef:
    feedback_id: str
    style: Style
    options: tuple[tuple[str, Any], ...] = ()


@dataclass(frozen=True)
class PresetDescriptor:
    category: str
    name: str
    style: Style
    action: ActionRef
    feedbacks: tuple[FeedbackRef, ...] = ()
    kind: str = "button"


@dataclass(frozen=True)
class DerivedDescriptors:
    actions: tuple[ActionDescriptor, ...] = ()
    feedbacks: tuple[FeedbackDescriptor, ...] = ()
    presets: tuple[PresetDescriptor, ...] = ()
    variables: Mapping[str, Any] = field(default_factory=dict)

    def action(self, action_id: str) -> Optional[ActionDescriptor]:
        for action in self.actions:
            if action.action_id == action_id:
                return action
        return None

    def feedback(self, feedback_id: str) -> Optional[FeedbackDescriptor]:
        for feedback in self.feedbacks:
            if feedback.feedback_id == feedback_id:
                return feedback
        return None


# ──────────────────────────────────────────────────────────────────────────────
# Option helpers
# ──────────────────────────────────────────────────────────────────────────────

def _scene_choices(state: SessionState) -> tuple[Choice, ...]:
    return tuple(Choice(s.id, s.name) for s in state.scenes)


def _scene_dropdown(state: SessionState) -> OptionField:
    choices = _scene_choices(state)
    return OptionField(
        kind="dropdown",
        id="sceneId",
        label="Scene",
        default=choices[0].id if choices else "",
        choices=choices,
        allow_custom=True,
    )


def _text(option_id: str, label: str, default: str = "") -> OptionField:
    return OptionField(kind="textinput", id=option_id, label=label, default=default)


def _style_options(styles: StylePair) -> tuple[OptionField, ...]:
    return (
        OptionField("colorpicker", "activeBg", "Background when active", styles.active.bgcolor),
        OptionField("colorpicker", "activeFg", "Text color when active", styles.active.color),
        OptionField("colorpicker", "inactiveBg", "Background when inactive", styles.inactive.bgcolor),
        OptionField("colorpicker", "inactiveFg", "Text color when inactive", styles.inactive.color),
    )


# ──────────────────────────────────────────────────────────────────────────────
# Actions
# ──────────────────────────────────────────────────────────────────────────────

def scene_action_id(scene_id: str) -> str:
    return f"{SCENE_ACTION_PREFIX}{scene_id}"


def _scene_action(scene: SceneEntry) -> ActionDescriptor:
    return ActionDescriptor(
        action_id=scene_action_id(scene.id),
        name=f"Show Scene: {scene.name}",
        command="showScene",
        args=("sceneId",),
        bound=(("sceneId", scene.id),),
    )


def _utility_actions() -> tuple[ActionDescriptor, ...]:
    return (
        ActionDescriptor("toggleRecord", "Toggle Record", "toggleRecord"),
        ActionDescriptor("startRecord", "Start Record", "startRecord"),
        ActionDescriptor("stopRecord", "Stop Record", "stopRecord"),
        ActionDescriptor("toggleStream", "Toggle Stream", "toggleStream"),
        ActionDescriptor("startStream", "Start Stream", "startStream"),
        ActionDescriptor("stopStream", "Stop Stream", "stopStream"),
    )


def _passthrough_actions(state: SessionState) -> tuple[ActionDescriptor, ...]:
    scene = _scene_dropdown(state)
    track = _text("trackId", "Track ID")
    layer = _text("layerId", "Layer ID")
    return (
        ActionDescriptor("setStagedScene", "Set Staged Scene", "setStagedScene", (scene,), ("sceneId",)),
        ActionDescriptor("showStagedScene", "Show Staged Scene", "showStagedScene"),
        ActionDescriptor("toggleMute", "Toggle Mute (Track ID)", "toggleMute", (track,), ("trackId",)),
        ActionDescriptor("toggleMonitor", "Toggle Monitor (Track ID)", "toggleMonitor", (track,), ("trackId",)),
        ActionDescriptor(
            "toggleLayer", "Toggle Layer (Scene + Layer ID)", "toggleLayer",
            (scene, layer), ("sceneId", "layerId"),
        ),
        ActionDescriptor(
            "toggleEffect", "Toggle Effect (Scene + Layer + Effect ID)", "toggleEffect",
            (scene, layer, _text("effectId", "Effect ID")), ("sceneId", "layerId", "effectId"),
        ),
        ActionDescriptor(
            "setGain", "Set Gain (Track ID, 0.0–1.0)", "setGain",
            (track, OptionField("number", "gain", "Gain (0–1)", 0.5, minimum=0, maximum=1, step=0.01)),
            ("trackId", "gain"),
        ),
        ActionDescriptor(
            "sendCommand", "Send Command (string)", "sendCommand",
            (_text("command", "Command", "meld.screenshot"),), ("command",),
        ),
        ActionDescriptor(
            "callMethod", "Call Remote Method", "callMethod",
            (_text("method", "Method name"), _text("args", "Arguments (JSON array or comma separated)")),
            ("method", "args"),
        ),
    )


def generate_actions(state: SessionState) -> tuple[ActionDescriptor, ...]:
    scene_actions = tuple(_scene_action(scene) for scene in state.scenes)
    return scene_actions + _utility_actions() + _passthrough_actions(state)


# ──────────────────────────────────────────────────────────────────────────────
# Feedbacks
# ──────────────────────────────────────────────────────────────────────────────

SCENE_LIVE_STYLES = StylePair(active=Style(bgcolor=LIVE_RED, color=WHITE))
RECORDING_STYLES = StylePair(active=Style(bgcolor=RECORD_RED, color=WHITE))
STREAMING_STYLES = StylePair(active=Style(bgcolor=STREAM_GREEN, color=WHITE))
SCENE_LABEL_STYLES = StylePair(active=Style(bgcolor=LIVE_RED, color=WHITE), inactive=Style(bgcolor=BLACK, color=WHITE))


def _label_options(state: SessionState) -> tuple[OptionField, ...]:
    live, idle = SCENE_LABEL_STYLES.active, SCENE_LABEL_STYLES.inactive
    return (
        _scene_dropdown(state),
        OptionField("checkbox", "highlightLive", "Highlight when scene is live", True),
        OptionField("colorpicker", "idleBg", "Background when NOT live", idle.bgcolor),
        OptionField("colorpicker", "idleFg", "Text color when NOT live", idle.color),
        OptionField("colorpicker", "liveBg", "Background when LIVE", live.bgcolor),
        OptionField("colorpicker", "liveFg", "Text color when LIVE", live.color),
    )


def generate_feedbacks(state: SessionState) -> tuple[FeedbackDescriptor, ...]:
    return (
        FeedbackDescriptor(
            feedback_id="labelSceneName",
            name="Label: Scene Name (from dropdown)",
            description="Sets button text to the selected scene name. Optionally highlight if that scene is live.",
            styles=SCENE_LABEL_STYLES,
            options=_label_options(state),
            kind="advanced",
        ),
        FeedbackDescriptor(
            feedback_id="sceneIsLive",
            name="Scene is Live",
            description="True when the selected scene is currently live",
            styles=SCENE_LIVE_STYLES,
            options=(_scene_dropdown(state),) + _style_options(SCENE_LIVE_STYLES),
        ),
        FeedbackDescriptor(
            feedback_id="recordingOn",
            name="Recording is ON",
            description="True when Meld is recording",
            styles=RECORDING_STYLES,
            options=_style_options(RECORDING_STYLES),
        ),
        FeedbackDescriptor(
            feedback_id="streamingOn",
            name="Streaming is ON",
            description="True when Meld is streaming",
            styles=STREAMING_STYLES,
            options=_style_options(STREAMING_STYLES),
        ),
    )


def _scene_is_live(state: SessionState, scene_id: Any) -> bool:
    if not scene_id:
        return False
    try:
        scene = state.require_scene(str(scene_id))
    except StaleReferenceError as e:
        log.debug(f"sceneIsLive: {e}")
        return False
    return state.current_scene_id == scene.id


def evaluate_feedback(state: SessionState, feedback_id: str, options: Optional[Mapping[str, Any]] = None) -> bool:
    """Evaluate one boolean feedback; unknown ids and stale scenes are inactive."""
    options = options or {}
    if feedback_id == "sceneIsLive":
        return _scene_is_live(state, options.get("sceneId"))
    if feedback_id == "labelSceneName":
        return bool(options.get("highlightLive", True)) and _scene_is_live(state, options.get("sceneId"))
    if feedback_id == "recordingOn":
        return state.is_recording
    if feedback_id == "streamingOn":
        return state.is_streaming
    log.warning(f"Unknown feedback '{feedback_id}'")
    return False


def _scene_label_style(state: SessionState, options: Mapping[str, Any]) -> Style:
    """Scene name as button text; a stale id shows the raw id. No scene selected leaves the text alone."""
    live, idle = SCENE_LABEL_STYLES.active, SCENE_LABEL_STYLES.inactive
    scene_id = str(options.get("sceneId") or "")
    text = None
    if scene_id:
        scene = state.scene(scene_id)
        text = scene.name if scene else scene_id
    if evaluate_feedback(state, "labelSceneName", options):
        return Style(
            bgcolor=int(options.get("liveBg", live.bgcolor)),
            color=int(options.get("liveFg", live.color)),
            text=text,
        )
    return Style(
        bgcolor=int(options.get("idleBg", idle.bgcolor)),
        color=int(options.get("idleFg", idle.color)),
        text=text,
    )


_STYLE_PAIRS = {
    "sceneIsLive": SCENE_LIVE_STYLES,
    "recordingOn": RECORDING_STYLES,
    "streamingOn": STREAMING_STYLES,
}


def feedback_style(state: SessionState, feedback_id: str, options: Optional[Mapping[str, Any]] = None) -> Style:
    """The style a button should take for this feedback right now."""
    options = options or {}
    if feedback_id == "labelSceneName":
        return _scene_label_style(state, options)
    styles = _STYLE_PAIRS.get(feedback_id, StylePair(active=Style(bgcolor=LIVE_RED)))
    if evaluate_feedback(state, feedback_id, options):
        return Style(
            bgcolor=int(options.get("activeBg", styles.active.bgcolor)),
            color=int(options.get("activeFg", styles.active.color)),
        )
    return Style(
        bgcolor=int(options.get("inactiveBg", styles.inactive.bgcolor)),
        color=int(options.get("inactiveFg", styles.inactive.color)),
    )


# ──────────────────────────────────────────────────────────────────────────────
# Presets & variables
# ──────────────────────────────────────────────────────────────────────────────

def _scene_preset(scene: SceneEntry) -> PresetDescriptor:
    return PresetDescriptor(
        category=SCENE_PRESET_CATEGORY,
        name=f"Scene: {scene.name}",
        style=Style(text=scene.name),
        action=ActionRef(scene_action_id(scene.id)),
        feedbacks=(
            FeedbackRef("sceneIsLive", SCENE_LIVE_STYLES.active, (("sceneId", scene.id),)),
            FeedbackRef(
                "labelSceneName",
                Style(text=scene.name),
                (
                    ("sceneId", scene.id),
                    ("highlightLive", True),
                    ("idleBg", BLACK),
                    ("idleFg", WHITE),
                    ("liveBg", LIVE_RED),
                    ("liveFg", WHITE),
                ),
            ),
        ),
    )


UTILITY_PRESETS: tuple[PresetDescriptor, ...] = (
    PresetDescriptor(
        category=UTILITY_PRESET_CATEGORY,
        name="Toggle Recording",
        style=Style(text="REC"),
        action=ActionRef("toggleRecord"),
        feedbacks=(FeedbackRef("recordingOn", RECORDING_STYLES.active),),
    ),
    PresetDescriptor(
        category=UTILITY_PRESET_CATEGORY,
        name="Toggle Streaming",
        style=Style(text="STREAM"),
        action=ActionRef("toggleStream"),
        feedbacks=(FeedbackRef("streamingOn", STREAMING_STYLES.active),),
    ),
)


def generate_presets(state: SessionState) -> tuple[PresetDescriptor, ...]:
    return tuple(_scene_preset(scene) for scene in state.scenes) + UTILITY_PRESETS


def generate_variables(state: SessionState) -> dict[str, Any]:
    current = state.current_scene
    return {
        "current_scene_name": current.name if current else "",
        "current_scene_id": state.current_scene_id or "",
        "is_recording": "ON" if state.is_recording else "OFF",
        "is_streaming": "ON" if state.is_streaming else "OFF",
        "scene_count": len(state.scenes),
    }


def generate(state: SessionState) -> DerivedDescriptors:
    return DerivedDescriptors(
        actions=generate_actions(state),
        feedbacks=generate_feedbacks(state),
        presets=generate_presets(state),
        variables=generate_variables(state),
    )
