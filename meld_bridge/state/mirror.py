"""
state/mirror.py — Local mirror of the remote Meld session.

The mirror is the only owner of SessionState. Every inbound change replaces
the state value as a whole (SessionState is frozen) and hands the new value
to `on_change`, which regenerates the derived descriptors. Nothing is
batched: scene changes are human-triggered, so a few redundant
regenerations are cheaper than reasoning about partial updates.

Known race: Meld may deliver a current-scene signal before the session
signal that introduces the scene (or after the one that removes it). The
mirror accepts the id either way; until the scene list catches up the
"scene is live" feedback is simply false for every known scene.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterable, Optional

from meld_bridge.errors import ProtocolError, StaleReferenceError

log = logging.getLogger(__name__)

DEFAULT_SCENE_ORDER = 9999

SESSION_SIGNALS = ("sessionChanged",)
CURRENT_SCENE_SIGNALS = ("currentSceneChanged", "sceneChanged")
RECORDING_SIGNALS = ("isRecordingChanged", "recordingChanged")
STREAMING_SIGNALS = ("isStreamingChanged", "streamingChanged")
SCENE_LIST_METHODS = ("getScenes", "listScenes")

_TRAILING_PARENTHETICAL = re.compile(r"\s*\([^()]*\)\s*$")


def clean_scene_name(label: str) -> str:
    """Strip one trailing "(…)" suffix, e.g. "Intro (abc12345)" → "Intro"."""
    cleaned = _TRAILING_PARENTHETICAL.sub("", label)
    return cleaned or label


@dataclass(frozen=True)
class SceneEntry:
    id: str
    name: str
    order: int = DEFAULT_SCENE_ORDER

    @property
    def sort_key(self) -> tuple:
        return (self.order, self.name.casefold(), self.id)


@dataclass(frozen=True)
class SessionState:
    scenes: tuple[SceneEntry, ...] = ()
    current_scene_id: Optional[str] = None
    is_recording: bool = False
    is_streaming: bool = False

    def scene(self, scene_id: Optional[str]) -> Optional[SceneEntry]:
        for entry in self.scenes:
            if entry.id == scene_id:
                return entry
        return None

    def require_scene(self, scene_id: str) -> SceneEntry:
        entry = self.scene(scene_id)
        if entry is None:
            raise StaleReferenceError(scene_id)
        return entry

    @property
    def current_scene(self) -> Optional[SceneEntry]:
        return self.scene(self.current_scene_id)

    def to_dict(self) -> dict:
        return {
            "scenes": [{"id": s.id, "name": s.name, "order": s.order} for s in self.scenes],
            "current_scene_id": self.current_scene_id,
            "is_recording": self.is_recording,
            "is_streaming": self.is_streaming,
        }


def sort_scenes(scenes: Iterable[SceneEntry]) -> tuple[SceneEntry, ...]:
    return tuple(sorted(scenes, key=lambda s: s.sort_key))


def _coerce_order(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return DEFAULT_SCENE_ORDER


def parse_session_items(items: Any) -> tuple[tuple[SceneEntry, ...], Optional[str]]:
    """
    Build the scene set from Meld's `session.items`.

    `items` is either a mapping of id → item or a list of items carrying their
    own `id`. Only items with type "scene" are kept. Returns the sorted scenes
    and the id of the item flagged `current`, if any.
    """
    if isinstance(items, dict):
        pairs = list(items.items())
    elif isinstance(items, (list, tuple)):
        pairs = [(item.get("id"), item) for item in items if isinstance(item, dict)]
    else:
        if items is not None:
            log.warning(f"Unexpected session items payload: {type(items).__name__}")
        pairs = []

    by_id: dict[str, SceneEntry] = {}
    current: Optional[str] = None
    for raw_id, item in pairs:
        if not isinstance(item, dict) or item.get("type") != "scene" or raw_id in (None, ""):
            continue
        scene_id = str(raw_id)
        label = item.get("name") or scene_id
        by_id[scene_id] = SceneEntry(
            id=scene_id,
            name=clean_scene_name(str(label)),
            order=_coerce_order(item.get("index", DEFAULT_SCENE_ORDER)),
        )
        if item.get("current"):
            current = scene_id
    return sort_scenes(by_id.values()), current


def _scene_items(items: Any) -> list:
    if isinstance(items, dict):
        values = items.values()
    elif isinstance(items, (list, tuple)):
        values = items
    else:
        return []
    return [item for item in values if isinstance(item, dict) and item.get("type") == "scene"]


def carries_current_flag(items: Any) -> bool:
    """True when any scene item reports a `current` key, set or not."""
    return any("current" in item for item in _scene_items(items))


def _first_signal(root: Any, names: tuple[str, ...]) -> Optional[Any]:
    for name in names:
        signal = root.signal(name)
        if signal is not None:
            return signal
    return None


def _read_items(session: Any) -> Any:
    if session is None:
        return None
    if isinstance(session, dict):
        return session.get("items")
    return getattr(session, "items", None)


def _as_scene_id(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    obj_id = getattr(value, "id", None)
    return str(obj_id if obj_id is not None else value)


class SessionMirror:
    """
    Keeps SessionState in step with the remote root object.

    Usage:
        mirror = SessionMirror(on_change=lambda state: ...)
        mirror.attach(channel.root)
        ...
        mirror.detach()
    """

    def __init__(self, on_change: Optional[Callable[[SessionState], Any]] = None):
        self._on_change = on_change
        self._state = SessionState()
        self._root: Optional[Any] = None
        self._subscriptions: list[tuple[Any, Callable]] = []

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def attached(self) -> bool:
        return self._root is not None

    # ── State transitions ─────────────────────────────────────────────

    def _commit(self, state: SessionState) -> None:
        self._state = state
        if self._on_change is not None:
            try:
                self._on_change(state)
            except Exception:
                log.exception("Session change handler failed")

    def apply_items(self, items: Any) -> None:
        scenes, flagged_current = parse_session_items(items)
        if carries_current_flag(items):
            current = flagged_current
        else:
            # no scene speaks about `current`: the last known id still holds
            current = self._state.current_scene_id
        if current is not None and not any(s.id == current for s in scenes):
            log.debug(f"Current scene '{current}' is not in the new scene list")
        log.info(f"Session updated: {len(scenes)} scene(s)")
        self._commit(replace(self._state, scenes=scenes, current_scene_id=current))

    def apply_current_scene(self, scene_id: Optional[str]) -> None:
        if scene_id is not None and self._state.scene(scene_id) is None:
            log.debug(f"Current scene '{scene_id}' is not (yet) in the scene list")
        log.info(f"Current scene → {scene_id}")
        self._commit(replace(self._state, current_scene_id=scene_id))

    def apply_recording(self, active: bool) -> None:
        log.info(f"Recording → {'ON' if active else 'OFF'}")
        self._commit(replace(self._state, is_recording=bool(active)))

    def apply_streaming(self, active: bool) -> None:
        log.info(f"Streaming → {'ON' if active else 'OFF'}")
        self._commit(replace(self._state, is_streaming=bool(active)))

    # ── Remote wiring ─────────────────────────────────────────────────

    def attach(self, root: Any) -> None:
        """Seed state from `root` and subscribe to its change signals."""
        self.detach()
        self._root = root

        session = root.property("session")
        items = _read_items(session)
        seeded_scenes, seeded_current = parse_session_items(items)

        current = seeded_current
        if current is None and root.has_property("currentScene"):
            current = _as_scene_id(root.property("currentScene"))

        self._commit(SessionState(
            scenes=seeded_scenes,
            current_scene_id=current,
            is_recording=bool(root.property("isRecording", False)),
            is_streaming=bool(root.property("isStreaming", False)),
        ))
        if items is None:
            self._request_scene_list(root)

        self._subscribe(SESSION_SIGNALS, self._on_session_changed)
        self._subscribe(CURRENT_SCENE_SIGNALS, self._on_current_scene_changed)
        self._subscribe(RECORDING_SIGNALS, self._on_recording_changed)
        self._subscribe(STREAMING_SIGNALS, self._on_streaming_changed)
        self._subscribe(("gainUpdated",), self._on_gain_updated)

    def detach(self) -> None:
        for signal, handler in self._subscriptions:
            # Invalidated proxies have already dropped their listeners.
            if signal.owner.valid:
                signal.disconnect(handler)
        self._subscriptions.clear()
        self._root = None

    def _subscribe(self, names: tuple[str, ...], handler: Callable) -> None:
        signal = _first_signal(self._root, names)
        if signal is None:
            log.debug(f"Remote exposes none of {names}; not subscribing")
            return
        signal.connect(handler)
        self._subscriptions.append((signal, handler))

    def _request_scene_list(self, root: Any) -> None:
        for method in SCENE_LIST_METHODS:
            if root.has_method(method):
                try:
                    root.call(method, callback=self._apply_scene_list)
                except ProtocolError as e:
                    log.error(f"Scene enumeration via {method} failed: {e}")
                return
        log.warning("Remote exposes no scene list (session.items or getScenes)")

    def _apply_scene_list(self, result: Any) -> None:
        # Enumeration methods return scenes only, so the type tag may be absent.
        if isinstance(result, dict):
            result = {k: {"type": "scene", **v} for k, v in result.items() if isinstance(v, dict)}
        elif isinstance(result, (list, tuple)):
            result = [{"type": "scene", **item} for item in result if isinstance(item, dict)]
        self.apply_items(result)

    # ── Signal handlers ───────────────────────────────────────────────

    def _on_session_changed(self, *args: Any) -> None:
        if self._root is None:
            return
        self.apply_items(_read_items(self._root.property("session")))

    def _on_current_scene_changed(self, *args: Any) -> None:
        if args:
            value = args[0]
        elif self._root is not None:
            value = self._root.property("currentScene")
        else:
            return
        self.apply_current_scene(_as_scene_id(value))

    def _on_recording_changed(self, *args: Any) -> None:
        if args:
            value = args[0]
        elif self._root is not None:
            value = self._root.property("isRecording", False)
        else:
            return
        self.apply_recording(bool(value))

    def _on_streaming_changed(self, *args: Any) -> None:
        if args:
            value = args[0]
        elif self._root is not None:
            value = self._root.property("isStreaming", False)
        else:
            return
        self.apply_streaming(bool(value))

    def _on_gain_updated(self, track_id: Any = None, gain: Any = None, muted: Any = None, *_: Any) -> None:
        log.debug(f"gainUpdated track={track_id} gain={gain} muted={muted}")
